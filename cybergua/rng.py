"""Seeded pseudo-random streams. Every stream owns its state; none is shared."""

from __future__ import annotations

from cybergua.bits import U32, mix_seed

XORSHIFT_SCALE = 0.999999999
MULBERRY_STEP = 0x6D2B79F5


class XorShift32:
    """
    32-bit xorshift (13, 17, 5) normalized into [0,1).

    A zero seed is a fixed point of the generator and yields 0.0 forever.
    """

    def __init__(self, seed: int) -> None:
        self.state = seed & U32

    def next_u32(self) -> int:
        x = self.state
        x ^= (x << 13) & U32
        x ^= x >> 17
        x ^= (x << 5) & U32
        self.state = x
        return x

    def __call__(self) -> float:
        return (self.next_u32() / U32) * XORSHIFT_SCALE


class Mulberry32:
    """Mulberry32 stream used by formula synthesis."""

    def __init__(self, seed: int) -> None:
        self.state = seed & U32

    def __call__(self) -> float:
        self.state = (self.state + MULBERRY_STEP) & U32
        x = self.state
        x = ((x ^ (x >> 15)) * (x | 1)) & U32
        x = (x ^ ((x + (((x ^ (x >> 7)) * (x | 61)) & U32)) & U32)) & U32
        return ((x ^ (x >> 14)) & U32) / 4294967296.0


def substream(seed: int, tag: int, other: int) -> XorShift32:
    return XorShift32(mix_seed(seed, tag, other))
