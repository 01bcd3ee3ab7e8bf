"""
Multidisciplinary factor engine.

A fixed, ordered registry of small simulations. Each factor draws from its own
substream, returns an immutable FactorOutput, and is blended into a shared
16-dim running vector. Registry order is part of the output contract.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple

from cybergua.bits import (
    clamp01,
    fnv1a32,
    fp8,
    hex8,
    js_number,
    js_round,
    mix_seed,
    round4,
    vec_add,
    vec_clamp01,
    vec_entropy01,
    vec_mix,
    vec_scale,
)
from cybergua.dimensions import DimensionScores, Elements
from cybergua.environment import PseudoEnv
from cybergua.rng import XorShift32
from cybergua.trace import DataValue, Phase, TraceLedger

BOLTZMANN = 1.380649e-23
GAS_CONSTANT = 8.314

OUTPUT_MESSAGE = "因子输出"


@dataclass(frozen=True)
class FactorContext:
    seed: int
    question_hash: int
    time_seed: int
    entropy: int
    scores: DimensionScores
    elements: Elements
    env: PseudoEnv
    obs: Tuple[float, ...]
    base: Tuple[float, ...]


@dataclass(frozen=True)
class FactorOutput:
    scalar: float
    vector: Tuple[float, ...]
    fingerprint: Tuple[float, ...]
    signature: str
    detail: str
    detail_data: Dict[str, DataValue]


# (ctx, running vector, private stream, scalars of the factors already run)
FactorFn = Callable[[FactorContext, Tuple[float, ...], XorShift32, Tuple[float, ...]], FactorOutput]


@dataclass(frozen=True)
class FactorSpec:
    key: str
    tag: int
    phase: str
    title: str
    compute: FactorFn


@dataclass(frozen=True)
class FactorAggregate:
    score01: float
    signature: str
    fp8: Tuple[float, ...]
    scalars: Tuple[float, ...]
    coverage: float
    mean_scalar: float
    vector: Tuple[float, ...]


def factor_stream(ctx: FactorContext, tag: int) -> XorShift32:
    return XorShift32(mix_seed(mix_seed(ctx.seed, ctx.question_hash, tag), ctx.time_seed, ctx.entropy ^ tag))


def initial_vectors(elements: Elements, scores: DimensionScores, env: PseudoEnv,
                    obs16: Sequence[float]) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
    """(obs, base): the clamped observation vector and the starting running vector."""
    v0 = vec_clamp01([
        *elements.values(),
        scores.time,
        scores.text,
        scores.iching,
        scores.numerology,
        scores.entropy,
        env.radiation,
        env.mag / 100,
        env.pressure / 110,
        (env.temp + 40) / 90,
        env.humidity,
        env.tide,
    ])
    obs = tuple(vec_clamp01([obs16[i] if i < len(obs16) else 0.5 for i in range(16)]))
    base = tuple(clamp01(x * 0.72 + obs[i] * 0.28) for i, x in enumerate(v0))
    return obs, base


def _sig(*parts: object) -> str:
    return hex8(fnv1a32("|".join(p if isinstance(p, str) else js_number(p) for p in parts)))


def _out(scalar: float, vec: Sequence[float], fp: Sequence[float], sig: str,
         detail: str, data: Dict[str, DataValue]) -> FactorOutput:
    return FactorOutput(scalar, tuple(vec_clamp01(vec)), tuple(fp), sig, detail, data)


# =============================================================================
# Factors
# =============================================================================

def astro(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    phase = (env.solar * 0.6 + env.lunar * 0.4 + r() * 0.08) * math.pi * 2
    tide = env.tide + (r() - 0.5) * 0.06
    resonance = clamp01(0.5 + math.sin(phase * 2.1) * 0.35 + (r() - 0.5) * 0.12)
    scalar = clamp01(0.35 * resonance + 0.35 * tide + 0.3 * env.radiation)
    mixed = vec_add(vec_scale(vec, 0.85), vec_scale(ctx.base, 0.15))
    vec_out = [clamp01(x + math.sin(phase + i * 0.6) * 0.08) for i, x in enumerate(mixed)]
    fp = fp8([scalar, resonance, tide, env.radiation, env.solar, env.lunar, env.lat, env.lon])
    sig = _sig("astro", hex8(ctx.seed), round4(phase), round4(resonance))
    return _out(scalar, vec_out, fp, sig, "潮汐势估计", {"tide": round4(tide), "res": round4(resonance)})


def geo(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    potential = clamp01((env.grav * max(0, env.alt)) / 100000 + 0.18 + (r() - 0.5) * 0.08)
    decl = clamp01(0.5 + (env.mag - 45) / 60 + (r() - 0.5) * 0.18)
    scalar = clamp01(potential * 0.55 + decl * 0.45)
    vec_out = [clamp01(x * (0.92 + r() * 0.06) + (potential * 0.06 if i % 3 == 0 else decl * 0.04))
               for i, x in enumerate(vec)]
    fp = fp8([scalar, potential, decl, env.lat, env.alt / 9000, env.mag / 100, env.grav / 10, env.tz])
    sig = _sig("geo", hex8(ctx.time_seed), js_round(env.lat * 1000), js_round(env.alt))
    return _out(scalar, vec_out, fp, sig, "地磁偏角折算", {"mag": round4(env.mag), "decl": round4(decl)})


def physics(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    kt = (env.temp + 273.15) * BOLTZMANN
    noise = clamp01(0.5 + math.log10(1 + kt * 1e21) * 0.18 + (r() - 0.5) * 0.16)
    x = clamp01(0.5 + (r() - 0.5) * 0.6)
    for _ in range(12):
        x = clamp01(x + (r() - 0.5) * 0.22)
    brown = x
    resonance = clamp01(0.5 + math.sin((env.mag / 60) * math.pi * 2) * 0.28 + (r() - 0.5) * 0.12)
    scalar = clamp01(noise * 0.34 + brown * 0.33 + resonance * 0.33)
    vec_out = [clamp01(v + ((noise - 0.5) * 0.08 if i % 2 == 0 else (resonance - 0.5) * 0.06) + (brown - 0.5) * 0.04)
               for i, v in enumerate(vec)]
    fp = fp8([scalar, noise, brown, resonance, env.temp, env.mag, env.pressure, env.humidity])
    sig = _sig("phys", round4(noise), round4(brown), round4(resonance))
    return _out(scalar, vec_out, fp, sig, "热噪声谱", {"noise": round4(noise), "kT": round4(kt * 1e21)})


def chemistry(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    t = env.temp + 273.15
    ea = 35000 + env.radiation * 22000 + (r() - 0.5) * 8000
    a = 1e12 * (0.6 + r() * 0.9)
    k = a * math.exp(-ea / (GAS_CONSTANT * t))
    rate = clamp01(math.log10(1 + k) / 12)
    barrier = clamp01(1 - ea / 100000)
    scalar = clamp01(rate * 0.62 + (1 - barrier) * 0.38)
    vec_out = [clamp01(v * (0.9 + r() * 0.08) + (rate * 0.07 if i % 4 == 1 else barrier * 0.05))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, rate, barrier, t / 360, ea / 100000, env.radiation, env.humidity, env.salinity])
    sig = _sig("chem", js_round(ea), round4(rate))
    return _out(scalar, vec_out, fp, sig, "Arrhenius 估计", {"Ea": js_round(ea), "k": round4(k), "rate": round4(rate)})


def information(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    src = [clamp01(v + math.sin((i + 1) * 1.7 + r() * 0.3) * 0.05) for i, v in enumerate(vec)]
    h = vec_entropy01(src)
    snr = 0.5 + env.mag / 120 + (r() - 0.5) * 0.2
    cap = clamp01(math.log2(1 + max(0.01, snr)) / 3)
    gain = clamp01(0.4 + (h - 0.5) * 0.35 + (cap - 0.5) * 0.35 + (r() - 0.5) * 0.12)
    scalar = clamp01(0.45 * h + 0.25 * cap + 0.3 * gain)
    vec_out = [clamp01(v * (0.86 + r() * 0.12) + (gain * 0.08 if i % 5 == 0 else cap * 0.05))
               for i, v in enumerate(src)]
    fp = fp8([scalar, h, cap, gain, ctx.scores.text, ctx.scores.entropy, env.mag, env.radiation])
    sig = _sig("info", round4(h), round4(cap), round4(gain))
    return _out(scalar, vec_out, fp, sig, "信道容量映射", {"H": round4(h), "cap": round4(cap), "gain": round4(gain)})


def chaos(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    x = clamp01(0.2 + r() * 0.6)
    rr = 3.57 + r() * 0.4
    for _ in range(24):
        x = clamp01(rr * x * (1 - x))

    lx = 0.1 + (r() - 0.5) * 0.2
    ly = 0.0 + (r() - 0.5) * 0.2
    lz = 0.0 + (r() - 0.5) * 0.2
    dt = 0.01 + r() * 0.008
    sigma = 10
    rho = 28 + (r() - 0.5) * 6
    beta = 8 / 3 + (r() - 0.5) * 0.4
    for _ in range(80):
        dx = sigma * (ly - lx)
        dy = lx * (rho - lz) - ly
        dz = lx * ly - beta * lz
        lx += dx * dt
        ly += dy * dt
        lz += dz * dt

    logistic = clamp01(0.5 + (x - 0.5) * 0.8)
    lor = clamp01(0.5 + (math.tanh(lx) + math.tanh(ly) + math.tanh(lz)) / 6)
    scalar = clamp01(logistic * 0.55 + lor * 0.45)
    vec_out = [clamp01(v + ((logistic - 0.5) * 0.09 if i % 2 == 0 else (lor - 0.5) * 0.08))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, logistic, lor, rr, dt * 100, rho / 40, beta / 3, ctx.scores.numerology])
    sig = _sig("chaos", round4(logistic), round4(lor), round4(rr))
    return _out(scalar, vec_out, fp, sig, "混沌迭代摘要", {"x": round4(x), "rr": round4(rr), "lor": round4(lor)})


def quantum(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    re = (r() - 0.5) * 1.2
    im = (r() - 0.5) * 1.2
    paths = 5 + int(r() * 7)
    interference = 0.0
    for _ in range(paths):
        ang = (r() * 2 - 1) * math.pi
        ar = math.cos(ang)
        ai = math.sin(ang)
        nr = re * ar - im * ai
        ni = re * ai + im * ar
        re = nr + (r() - 0.5) * 0.08
        im = ni + (r() - 0.5) * 0.08
        interference += math.cos(ang + re * 0.7) * 0.1
    amp = clamp01(math.sqrt(re * re + im * im) / 1.2)
    collapse = clamp01(0.5 + (r() - 0.5) * 0.2 + (amp - 0.5) * 0.35)
    scalar = clamp01(0.42 * amp + 0.28 * collapse + 0.3 * clamp01(0.5 + interference))
    vec_out = [clamp01(v * (0.88 + r() * 0.1) + ((amp - 0.5) * 0.09 if i % 3 == 0 else (collapse - 0.5) * 0.07))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, amp, collapse, interference, env.radiation, env.mag, env.tide, ctx.scores.entropy])
    sig = _sig("quant", round4(amp), round4(collapse), paths)
    return _out(scalar, vec_out, fp, sig, "测量坍缩", {"amp": round4(amp), "collapse": round4(collapse), "paths": paths})


def biology(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    s, i_, rec = 0.85, 0.12, 0.03
    beta = 0.18 + r() * 0.22
    gamma = 0.08 + r() * 0.16
    steps = 24
    for _ in range(steps):
        ds = -beta * s * i_
        di = beta * s * i_ - gamma * i_
        dr = gamma * i_
        s = clamp01(s + ds)
        i_ = clamp01(i_ + di)
        rec = clamp01(rec + dr)
    flux = clamp01(0.5 + (i_ - 0.1) * 1.3 + (r() - 0.5) * 0.12)
    threshold = clamp01(0.5 + (ctx.scores.text - 0.5) * 0.35 + (ctx.scores.iching - 0.5) * 0.35
                        + (r() - 0.5) * 0.12)
    scalar = clamp01(0.52 * flux + 0.48 * threshold)
    vec_out = [clamp01(v + ((flux - 0.5) * 0.09 if i % 4 == 2 else (threshold - 0.5) * 0.07))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, flux, threshold, beta, gamma, s, i_, rec])
    sig = _sig("bio", round4(flux), round4(threshold), steps)
    return _out(scalar, vec_out, fp, sig, "SIR 收敛态",
                {"S": round4(s), "I": round4(i_), "R": round4(rec), "flux": round4(flux)})


def computation(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    h1 = fnv1a32(f"{hex8(ctx.seed)}|{hex8(ctx.question_hash)}|{hex8(ctx.time_seed)}")
    h2 = fnv1a32(f"{hex8(ctx.entropy)}|{hex8(h1)}|{hex8(ctx.seed ^ ctx.entropy)}")
    avalanche = clamp01(0.5 + ((h1 ^ h2) % 1000) / 1000 - 0.5 + (r() - 0.5) * 0.12)
    drift = clamp01(0.5 + (ctx.scores.entropy - 0.5) * 0.55 + (r() - 0.5) * 0.18)
    scalar = clamp01(0.55 * avalanche + 0.45 * drift)
    vec_out = [clamp01(v * (0.9 + r() * 0.08) + ((avalanche - 0.5) * 0.1 if i % 3 == 1 else (drift - 0.5) * 0.08))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, avalanche, drift, h1 % 997, h2 % 991, ctx.scores.entropy, ctx.scores.text, ctx.scores.time])
    sig = _sig("comp", hex8(h1), hex8(h2), round4(avalanche))
    return _out(scalar, vec_out, fp, sig, "雪崩系数", {"h1": hex8(h1), "h2": hex8(h2), "av": round4(avalanche)})


def pagerank(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    n = 8
    damp = 0.78 + r() * 0.12
    adj = [[0.0 if i == j else clamp01(0.15 + vec[(i * 2 + j) % len(vec)] * 0.75 + (r() - 0.5) * 0.06)
            for j in range(n)] for i in range(n)]
    out_sum = [sum(row) or 1.0 for row in adj]
    pr = [1 / n] * n
    for _ in range(28):
        nxt = [(1 - damp) / n] * n
        for i in range(n):
            for j in range(n):
                nxt[j] += damp * pr[i] * (adj[i][j] / out_sum[i])
        pr = nxt
    total = sum(pr) or 1.0
    pr = [clamp01(x / total) for x in pr]
    h = -sum(p * math.log2(p) for p in pr if p > 0) / math.log2(n)
    peak = max(pr)
    scalar = clamp01(0.55 * (1 - h) + 0.45 * peak)
    vec_out = [clamp01(v * (0.9 + r() * 0.08) + ((peak - 0.5) * 0.08 if i % 4 == 0 else (h - 0.5) * 0.06))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, h, peak, damp, pr[0], pr[1], pr[2], pr[3]])
    sig = _sig("pr", round4(h), round4(peak), round4(damp))
    return _out(scalar, vec_out, fp, sig, "稳态分布摘要", {"H": round4(h), "peak": round4(peak), "d": round4(damp)})


def kalman(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    x = (r() - 0.5) * 2
    p = 1.0
    q = 0.02 + r() * 0.08
    rn = 0.05 + r() * 0.22 + ctx.env.radiation * 0.12
    k = 0.0
    for _ in range(26):
        z = x + (r() - 0.5) * math.sqrt(rn) * 2
        p = p + q
        k = p / (p + rn)
        x = x + k * (z - x)
        p = (1 - k) * p
    conf = clamp01(1 - min(1.0, math.sqrt(p)))
    gain = clamp01(k)
    scalar = clamp01(0.58 * conf + 0.42 * gain)
    vec_out = [clamp01(v * (0.9 + r() * 0.06) + ((conf - 0.5) * 0.09 if i % 5 == 2 else (gain - 0.5) * 0.07))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, conf, gain, q, rn, x, p, ctx.scores.entropy])
    sig = _sig("kf", round4(conf), round4(gain), round4(rn))
    return _out(scalar, vec_out, fp, sig, "滤波收敛态", {"conf": round4(conf), "K": round4(k), "P": round4(p)})


def spectral(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    n = 6
    obs = ctx.obs
    a = [[((vec[(i * n + j) % len(vec)] * 0.7 + obs[(i + j) % len(obs)] * 0.3) - 0.5) * (0.8 + r() * 0.4)
          for j in range(n)] for i in range(n)]

    def matvec(x: List[float]) -> List[float]:
        return [sum(a[i][j] * x[j] for j in range(n)) for i in range(n)]

    x = [1 / math.sqrt(n)] * n
    for _ in range(28):
        y = matvec(x)
        norm = math.sqrt(sum(v * v for v in y)) or 1.0
        x = [v / norm for v in y]
    ax = matvec(x)
    num = sum(v * x[i] for i, v in enumerate(ax))
    den = sum(v * v for v in x) or 1.0
    lam = num / den
    rho = abs(lam)
    scalar = clamp01(math.log10(1 + rho * 9) / 1.4)
    vec_out = [clamp01(v + ((scalar - 0.5) * 0.08 if i % 3 == 0 else (rho - 0.5) * 0.05))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, clamp01(rho), lam, n, x[0], x[1], x[2], x[3]])
    sig = _sig("lin", round4(rho), round4(lam), n)
    return _out(scalar, vec_out, fp, sig, "谱半径估计", {"rho": round4(rho), "lambda": round4(lam)})


def robust_stats(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    xs = [clamp01(x + (r() - 0.5) * 0.02) for x in (*vec, *ctx.obs)]
    ordered = sorted(xs)
    median = ordered[len(ordered) // 2]
    dev = sorted(abs(x - median) for x in xs)
    mad = dev[len(dev) // 2]
    q1 = ordered[int(len(ordered) * 0.25)]
    q3 = ordered[int(len(ordered) * 0.75)]
    iqr = max(0.0, q3 - q1)
    robust = clamp01(1 - mad * 2.2)
    spread = clamp01(iqr * 1.4)
    scalar = clamp01(robust * 0.62 + spread * 0.38)
    vec_out = [clamp01(v * (0.9 + r() * 0.06) + ((robust - 0.5) * 0.08 if i % 4 == 1 else (spread - 0.5) * 0.06))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, robust, spread, median, mad, q1, q3, iqr])
    sig = _sig("stat", round4(robust), round4(spread), round4(mad))
    return _out(scalar, vec_out, fp, sig, "稳健统计摘要", {"med": round4(median), "mad": round4(mad), "iqr": round4(iqr)})


def dft(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    n = 32
    obs = ctx.obs
    signal = []
    for i in range(n):
        base = vec[i % len(vec)] * 0.6 + obs[i % len(obs)] * 0.4
        wiggle = math.sin((i + 1) * 0.23 + obs[0] * math.pi * 2) * 0.08
        signal.append(base + wiggle + (r() - 0.5) * 0.02)
    mean = sum(signal) / n
    x = [v - mean for v in signal]
    mags = []
    for k in range(1, 9):
        re = 0.0
        im = 0.0
        for i in range(n):
            ang = (-2 * math.pi * k * i) / n
            re += x[i] * math.cos(ang)
            im += x[i] * math.sin(ang)
        mags.append(math.sqrt(re * re + im * im))
    a_mean = sum(mags) / len(mags) or 1.0
    g_mean = math.exp(sum(math.log(max(1e-9, m)) for m in mags) / len(mags))
    flat = clamp01(g_mean / a_mean)
    peak_n = clamp01(max(mags) / (a_mean * 3.2))
    scalar = clamp01(peak_n * 0.62 + (1 - flat) * 0.38)
    vec_out = [clamp01(v + ((peak_n - 0.5) * 0.08 if i % 5 == 0 else (flat - 0.5) * 0.06))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, peak_n, flat, a_mean, g_mean, mags[0], mags[1], mags[2]])
    sig = _sig("dft", round4(peak_n), round4(flat), round4(a_mean))
    return _out(scalar, vec_out, fp, sig, "频谱摘要", {"peak": round4(peak_n), "flat": round4(flat)})


def fluid(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    env = ctx.env
    obs = ctx.obs
    t = env.temp + 273.15
    p = max(20000.0, env.pressure * 1000)
    rho = p / (287.05 * t)
    v = 0.5 + obs[1] * 22
    length = 0.03 + obs[2] * 0.9
    mu = 1.716e-5 * math.pow(t / 273.15, 1.5) * (273.15 + 111) / (t + 111)
    re = (rho * v * length) / max(1e-9, mu)
    log_re = math.log10(max(1.0, re))
    turbulence = clamp01((log_re - 3) / 4)
    scalar = clamp01(0.55 * turbulence + 0.45 * clamp01(env.radiation))
    vec_out = [clamp01(x * (0.9 + r() * 0.06) + ((turbulence - 0.5) * 0.09 if i % 3 == 2 else (log_re / 7 - 0.5) * 0.06))
               for i, x in enumerate(vec)]
    fp = fp8([scalar, turbulence, log_re / 7, rho / 2, v / 25, length, mu * 1e5, env.radiation])
    sig = _sig("re", round4(turbulence), js_round(log_re * 100), js_round(v * 10))
    return _out(scalar, vec_out, fp, sig, "雷诺域折算",
                {"Re": js_round(re), "logRe": round4(log_re), "turb": round4(turbulence)})


def rosenbrock(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    obs = ctx.obs
    x = obs[6] * 3 - 1.5
    y = obs[7] * 3 - 1.5
    a, b = 1.0, 100.0
    lr = 0.0025 + r() * 0.002
    for _ in range(90):
        dx = -2 * (a - x) - 4 * b * x * (y - x * x)
        dy = 2 * b * (y - x * x)
        x -= dx * lr
        y -= dy * lr
        lr *= 0.995
    # Steep starts can diverge to inf/NaN; the scalar then reports not-ok.
    f = (a - x) * (a - x) + b * (y - x * x) * (y - x * x)
    quality = 1 / (1 + math.log1p(f)) if not math.isnan(f) else math.nan
    scalar = clamp01(quality)
    vec_out = [clamp01(v + ((quality - 0.5) * 0.1 if i % 4 == 0 else (x - 0.5) * 0.02))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, quality, x, y, math.log10(f + 1) if f > 0 else 0, lr * 1000, ctx.scores.time, ctx.scores.text])
    sig = _sig("opt", round4(quality), round4(x), round4(y))
    return _out(scalar, vec_out, fp, sig, "收敛指标", {"q": round4(quality), "x": round4(x), "y": round4(y)})


def queueing(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    obs = ctx.obs
    lam = 0.4 + obs[9] * 8
    mu = 3.5 + obs[10] * 10
    rho = clamp01(min(0.98, lam / max(0.1, mu)))
    w = 1 / max(0.02, mu - lam)
    length = lam * w
    scalar = clamp01((1 - rho) * 0.55 + clamp01(1 / (1 + math.log1p(length))) * 0.45)
    vec_out = [clamp01(v * (0.9 + r() * 0.07) + ((scalar - 0.5) * 0.09 if i % 5 == 3 else (rho - 0.5) * 0.06))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, rho, lam / 10, mu / 14, w / 6, length / 20, ctx.scores.entropy, ctx.env.pressure / 110])
    sig = _sig("q", round4(rho), round4(lam), round4(mu))
    return _out(scalar, vec_out, fp, sig, "稳态排队量", {"rho": round4(rho), "W": round4(w), "L": round4(length)})


def bayes(ctx: FactorContext, vec: Tuple[float, ...], r: XorShift32, prior: Tuple[float, ...]) -> FactorOutput:
    sc = ctx.scores
    a = 2 + (sc.time + sc.text) * 2
    b = 2 + (1 - sc.iching + 1 - sc.numerology) * 1.5
    k = 0.6 + r() * 0.9
    for s in prior:
        a += s * k
        b += (1 - s) * k
    post = a / (a + b)
    sharp = clamp01(1 - 4 * post * (1 - post))
    scalar = clamp01(post * 0.78 + sharp * 0.22)
    vec_out = [clamp01(v + ((post - 0.5) * 0.08 if i % 2 == 1 else (sharp - 0.5) * 0.06))
               for i, v in enumerate(vec)]
    fp = fp8([scalar, post, sharp, a / 20, b / 20, k, sc.time, sc.entropy])
    sig = _sig("bayes", round4(post), round4(sharp), round4(k))
    return _out(scalar, vec_out, fp, sig, "后验摘要", {"post": round4(post), "sharp": round4(sharp), "k": round4(k)})


FACTORS: Tuple[FactorSpec, ...] = (
    FactorSpec("astro", 0x01A11CE, Phase.TIME, "天文/潮汐/共振", astro),
    FactorSpec("geo", 0x02B00B1E, Phase.TIME, "地理/地磁/地形势能", geo),
    FactorSpec("physics", 0x03C0FFEE, Phase.OMEN, "物理/热噪声/布朗/谐振", physics),
    FactorSpec("chemistry", 0x04D15EA5, Phase.OMEN, "化学/反应速率/能垒穿越", chemistry),
    FactorSpec("information", 0x05123456, Phase.TEXT, "信息论/熵/互信息/编码增益", information),
    FactorSpec("chaos", 0x06CA0500, Phase.NUMEROLOGY, "混沌/Logistic/Lorenz", chaos),
    FactorSpec("quantum", 0x0715C0DE, Phase.OMEN, "量子/振幅/坍缩/干涉", quantum),
    FactorSpec("biology", 0x081EAF00, Phase.NUMEROLOGY, "生物/动力学/阈值/代谢通量", biology),
    FactorSpec("computation", 0x09C0DE00, Phase.FUSION, "计算机/哈希雪崩/误差传播", computation),
    FactorSpec("pagerank", 0x0A9E0001, Phase.FUSION, "图论/PageRank/稳态分布", pagerank),
    FactorSpec("kalman", 0x0B9E0002, Phase.FUSION, "估计/Kalman/状态收敛", kalman),
    FactorSpec("spectral", 0x0C1A0003, Phase.NUMEROLOGY, "线代/谱半径/幂迭代", spectral),
    FactorSpec("robust_stats", 0x0D570004, Phase.NUMEROLOGY, "统计/稳健/MAD/分位数", robust_stats),
    FactorSpec("dft", 0x0E770005, Phase.TEXT, "信号/DFT/谱峰/平坦度", dft),
    FactorSpec("fluid", 0x0F1D0006, Phase.OMEN, "流体/雷诺数/湍流域", fluid),
    FactorSpec("rosenbrock", 0x10110007, Phase.FUSION, "优化/Rosenbrock/收敛特征", rosenbrock),
    FactorSpec("queueing", 0x111E0008, Phase.FUSION, "队列论/M-M-1/等待时间", queueing),
    FactorSpec("bayes", 0x121E0009, Phase.FUSION, "贝叶斯/后验一致性", bayes),
)


# =============================================================================
# Engine
# =============================================================================

def run_factors(ledger: TraceLedger, ctx: FactorContext,
                registry: Sequence[FactorSpec] = FACTORS) -> FactorAggregate:
    vec: List[float] = list(ctx.base)
    scalars: List[float] = []
    oks: List[int] = []
    sig_acc = fnv1a32(hex8(ctx.seed))
    radiation = ctx.env.radiation

    for spec in registry:
        r = factor_stream(ctx, spec.tag)
        ledger.group_start(spec.phase, spec.title, {"tag": hex8(spec.tag)})
        out = spec.compute(ctx, tuple(vec), r, tuple(scalars))
        ledger.emit(spec.phase, out.detail, out.detail_data, out.fingerprint)
        ok = math.isfinite(out.scalar)
        s = clamp01(out.scalar) if ok else 0.0
        scalars.append(s)
        oks.append(1 if ok else 0)
        ledger.emit(spec.phase, OUTPUT_MESSAGE, {"s": round4(s), "sig": out.signature}, out.fingerprint)
        ledger.group_end(spec.phase, "因子封箱", {"s": round4(s), "sig": out.signature}, out.fingerprint)
        vec = vec_mix(vec, out.vector, 0.35 + radiation * 0.25 + r() * 0.1)
        sig_acc = fnv1a32(f"{hex8(sig_acc)}|{out.signature}")

    n = max(1, len(scalars))
    mean_scalar = sum(scalars) / n
    coverage = sum(oks) / n
    e_vec = vec_entropy01(vec)
    e_obs = vec_entropy01(ctx.obs)
    score01 = clamp01((mean_scalar * 0.64 + e_vec * 0.22 + e_obs * 0.14) * (0.7 + coverage * 0.3))
    signature = hex8(fnv1a32(f"{hex8(sig_acc)}|{hex8(ctx.seed)}|{js_number(round4(score01))}"))
    fp_out = fp8([score01, e_vec, mean_scalar, coverage, e_obs, ctx.scores.time, ctx.scores.text, radiation])

    ledger.group_start(Phase.FUSION, "多学科汇总",
                       {"n": n, "cov": round4(coverage), "m": round4(mean_scalar),
                        "score01": round4(score01), "sig": signature}, fp_out)
    ledger.emit(Phase.FUSION, "多学科指纹", {"sig": signature, "e": round4(e_vec), "o": round4(e_obs)}, fp_out)
    ledger.group_end(Phase.FUSION, "汇总封箱", {"score01": round4(score01), "sig": signature}, fp_out)

    return FactorAggregate(
        score01=score01,
        signature=signature,
        fp8=tuple(fp_out),
        scalars=tuple(scalars),
        coverage=coverage,
        mean_scalar=mean_scalar,
        vector=tuple(vec),
    )
