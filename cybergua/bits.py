"""
32-bit hash / mix primitives shared by every stage of the engine.

All integer helpers return unsigned 32-bit values. Float helpers reproduce the
rounding and number-to-text rules of the reference runtime so that canonical
trace payloads hash identically everywhere.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence, Tuple

U32 = 0xFFFFFFFF

FNV_OFFSET = 0x811C9DC5
FNV_PRIME = 0x01000193

MIX_C1 = 0x7FEB352D
MIX_C2 = 0x846CA68B

GOLDEN = 0x9E3779B9


def rotl32(x: int, r: int) -> int:
    x &= U32
    return ((x << r) | (x >> (32 - r))) & U32


def _avalanche(x: int) -> int:
    x = ((x ^ (x >> 16)) * MIX_C1) & U32
    x = ((x ^ (x >> 15)) * MIX_C2) & U32
    return (x ^ (x >> 16)) & U32


def mix32(a: int, b: int) -> int:
    return _avalanche((a ^ b) & U32)


def mix_seed(a: int, b: int, c: int) -> int:
    """Fold three words; b and c are rotated so argument order matters."""
    return _avalanche((a ^ rotl32(b, 11) ^ rotl32(c, 7)) & U32)


def fnv1a32(text: str) -> int:
    h = FNV_OFFSET
    for ch in text:
        h ^= ord(ch)
        h = (h * FNV_PRIME) & U32
    return h


def hash_str_mixed(text: str) -> int:
    h = FNV_OFFSET
    for ch in text:
        h = mix32(h, ord(ch))
    return h


def hex8(n: int) -> str:
    return format(n & U32, "08x")


# =============================================================================
# Float helpers
# =============================================================================

def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def clamp01(n: float) -> float:
    # NaN passes through untouched so callers can still detect it.
    if n < 0:
        return 0.0
    if n > 1:
        return 1.0
    return n


def clamp11(n: float) -> float:
    if n < -1:
        return -1.0
    if n > 1:
        return 1.0
    return n


def clamp_int(n: int, lo: int, hi: int) -> int:
    if n < lo:
        return lo
    if n > hi:
        return hi
    return n


def js_round(x: float) -> int:
    """Round half toward positive infinity."""
    return int(math.floor(x + 0.5))


def round4(n: float) -> float:
    if not math.isfinite(n):
        return n
    return math.floor(n * 10000.0 + 0.5) / 10000.0


def mean_std(values: Sequence[float]) -> Tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    std = math.sqrt(sum((x - mean) * (x - mean) for x in values) / len(values))
    return mean, std


def js_number(x: float) -> str:
    """
    Text form of a number following the ECMAScript Number::toString rules:
    integral values print without a fraction, and exponent notation is only
    used below 1e-6 or from 1e21 upward.
    """
    if isinstance(x, bool):
        return "true" if x else "false"
    if isinstance(x, int):
        return str(x)
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x == 0:
        return "0"
    sign = "-" if x < 0 else ""
    mant, _, exp_part = repr(abs(x)).partition("e")
    exp10 = int(exp_part) if exp_part else 0
    int_part, _, frac_part = mant.partition(".")
    raw = int_part + frac_part
    stripped = raw.lstrip("0")
    point = len(int_part) + exp10 - (len(raw) - len(stripped))
    digits = stripped.rstrip("0")
    k = len(digits)
    n = point
    if k <= n <= 21:
        body = digits + "0" * (n - k)
    elif 0 < n <= 21:
        body = digits[:n] + "." + digits[n:]
    elif -6 < n <= 0:
        body = "0." + "0" * (-n) + digits
    else:
        e = n - 1
        head = digits[0] + ("." + digits[1:] if k > 1 else "")
        body = f"{head}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + body


# =============================================================================
# Vector helpers (16-dim feature vectors, 8-dim fingerprints)
# =============================================================================

def fp8(values: Sequence[float]) -> List[float]:
    """Center, L2-normalize and remap eight values into [0,1] around 0.5."""
    v = [float(values[i]) if i < len(values) else 0.0 for i in range(8)]
    mean = sum(v) / 8.0
    centered = [x - mean for x in v]
    norm = math.sqrt(sum(c * c for c in centered))
    if norm == 0 or math.isnan(norm):
        norm = 1.0
    return [clamp01(0.5 + (c / norm) * 0.65) for c in centered]


def vec_add(a: Sequence[float], b: Sequence[float]) -> List[float]:
    return [x + (b[i] if i < len(b) else 0.0) for i, x in enumerate(a)]


def vec_scale(a: Sequence[float], k: float) -> List[float]:
    return [x * k for x in a]


def vec_mix(a: Sequence[float], b: Sequence[float], t: float) -> List[float]:
    u = clamp01(t)
    return [x * (1 - u) + (b[i] if i < len(b) else 0.0) * u for i, x in enumerate(a)]


def vec_clamp01(a: Iterable[float]) -> List[float]:
    # Non-finite components collapse to the neutral midpoint.
    return [clamp01(x) if math.isfinite(x) else 0.5 for x in a]


def vec_entropy01(a: Sequence[float]) -> float:
    """Shannon entropy of the L1-normalized positive part, scaled to [0,1]."""
    xs = [x if math.isfinite(x) and x > 0 else 0.0 for x in a]
    total = sum(xs) or 1.0
    h = 0.0
    for x in xs:
        p = x / total
        if p > 1e-12:
            h -= p * math.log2(p)
    top = math.log2(len(xs)) if len(xs) > 1 else 1.0
    return clamp01(h / top)
