"""Score combination: model-adapted weights, sigmoid sharpening, factor gate, remap."""

from __future__ import annotations

import math
from typing import Callable, Dict, Optional, Sequence

from cybergua.bits import clamp01, clamp_int, fp8, hex8, js_round, mix_seed, round4
from cybergua.config import WEIGHT_KEYS, DimensionWeights
from cybergua.dimensions import DimensionScores
from cybergua.trace import Phase, TraceLedger

# theta16 indices feeding each dimension weight, in WEIGHT_KEYS order
WEIGHT_THETA_INDEX = (4, 5, 6, 7, 8)
WEIGHT_NUDGE = 0.08

SIGMOID_K = 6.2
SIGMOID_SHARE = 0.92
LINEAR_SHARE = 0.08
JITTER_SPAN = 0.06


def theta_at(theta16: Sequence[float], i: int) -> float:
    """Missing or non-finite components read as the neutral 0.5."""
    if i >= len(theta16):
        return 0.5
    v = theta16[i]
    if not math.isfinite(v):
        return 0.5
    return clamp01(v)


def effective_weights(weights: DimensionWeights, theta16: Sequence[float]) -> Dict[str, float]:
    base = weights.as_dict()
    nudged = {
        k: clamp01(base[k] + (theta_at(theta16, idx) - 0.5) * WEIGHT_NUDGE)
        for k, idx in zip(WEIGHT_KEYS, WEIGHT_THETA_INDEX)
    }
    total = sum(nudged.values()) or 1.0
    return {k: v / total for k, v in nudged.items()}


def sigmoid(x: float) -> float:
    return 1 / (1 + math.exp(-x))


def nonlinear_combine(scores: DimensionScores, weights: Dict[str, float]) -> float:
    total = sum(weights[k] for k in WEIGHT_KEYS) or 1.0
    s = scores.as_dict()
    lin = sum(s[k] * (weights[k] / total) for k in WEIGHT_KEYS)
    return clamp01(sigmoid(SIGMOID_K * (lin - 0.5)) * SIGMOID_SHARE + lin * LINEAR_SHARE)


def factor_gate(radiation: float, entropy_score: float, noise: float,
                theta16: Sequence[float], obs_fp0: Optional[float]) -> float:
    o = obs_fp0 if obs_fp0 is not None and not math.isnan(obs_fp0) else 0.5
    return clamp01(
        0.23
        + radiation * 0.28
        + entropy_score * 0.2
        + noise * 0.12
        + (theta_at(theta16, 2) - 0.5) * 0.22
        + (o - 0.5) * 0.1
    )


def remap_to_100(score01: float, jitter: float) -> int:
    s = clamp01(score01) if math.isfinite(score01) else 0.5
    j = jitter if math.isfinite(jitter) else 0.5
    return clamp_int(js_round(clamp01(s + (j - 0.5) * JITTER_SPAN) * 100), 0, 100)


def fusion_iterations(noise: float, theta16: Sequence[float], run_count: int) -> int:
    return clamp_int(
        18 + int(math.floor(noise * 9)) + js_round((theta_at(theta16, 3) - 0.5) * 8) + js_round(run_count / 42),
        12,
        34,
    )


def fuse(
    ledger: TraceLedger,
    scores: DimensionScores,
    weights: DimensionWeights,
    theta16: Sequence[float],
    factor_score: float,
    factor_fp: Sequence[float],
    radiation: float,
    obs_fp0: Optional[float],
    run_count: int,
    seed: int,
    question_hash: int,
    time_seed: int,
) -> float:
    """Blend the dimension scores with the factor score; emits the 融合 group."""
    noise: Callable[[], float] = ledger.noise
    gate = factor_gate(radiation, scores.entropy, noise(), theta16, obs_fp0)
    eff = effective_weights(weights, theta16)
    base = nonlinear_combine(scores, eff)
    combined = clamp01(base * (1 - gate) + factor_score * gate)
    s = scores.as_dict()

    ledger.group_start(Phase.FUSION, "融合维度", {"mode": "nonlinear"})
    ledger.emit(Phase.FUSION, "权重归一", {
        "wTime": round4(eff["time"]),
        "wText": round4(eff["text"]),
        "wI": round4(eff["iching"]),
        "wN": round4(eff["numerology"]),
        "wE": round4(eff["entropy"]),
    })
    ledger.emit(Phase.FUSION, "多学科因子注入",
                {"factor": round4(factor_score), "gate": round4(gate), "base": round4(base)}, factor_fp)
    ledger.emit(Phase.FUSION, "分量叠加", {
        "pT": round4(s["time"] * eff["time"]),
        "pX": round4(s["text"] * eff["text"]),
        "pI": round4(s["iching"] * eff["iching"]),
        "pN": round4(s["numerology"] * eff["numerology"]),
        "pE": round4(s["entropy"] * eff["entropy"]),
    })

    iters = fusion_iterations(noise(), theta16, run_count)
    ledger.group_start(Phase.FUSION, "非线性映射迭代", {"n": iters})
    for i in range(iters):
        sv = noise()
        a = 0.65 + noise() * 1.15
        b = 0.12 + noise() * 0.72
        c = -0.25 + noise() * 0.5
        ledger.emit(Phase.FUSION, "迭代步",
                    {"i": i + 1, "s": round4(sv), "a": round4(a), "b": round4(b), "c": round4(c)},
                    fp8([sv, a, b, c, factor_score, gate, base, scores.entropy]))
    ledger.group_end(Phase.FUSION, "迭代收束", {"h": ledger.head})
    ledger.emit(Phase.FUSION, "融合评分(0..1)",
                {"score01": round4(combined), "checksum": hex8(mix_seed(seed, question_hash, time_seed))})
    ledger.group_end(Phase.FUSION, "融合完毕", {"score01": round4(combined), "tail": ledger.head})
    return combined
