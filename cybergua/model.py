"""
Per-install "universe model": salt, run count, 16-dim preference vector and
the formula policy derived from it.

The engine only ever reads a ModelSnapshot; every mutation here returns a new
UniverseModel and is driven by the caller between runs.
"""

from __future__ import annotations

import logging
import math
import secrets
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cybergua.bits import (
    FNV_OFFSET,
    GOLDEN,
    U32,
    clamp,
    clamp01,
    clamp11,
    hash_str_mixed,
    hex8,
    js_round,
    mean_std,
    mix32,
)
from cybergua.combiner import theta_at
from cybergua.config import ConfigError, FormulaPolicy, ModelSnapshot, Observation, build_formula_policy
from cybergua.formula import INFINITY
from cybergua.trace import Phase, TraceEvent

logger = logging.getLogger(__name__)

THETA_DIM = 16
HISTORY_WINDOW = 20
PRIOR_EVERY = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class UniverseModel:
    salt: int
    run_count: int
    theta16: Tuple[float, ...]
    policy: FormulaPolicy
    likes_total: int = 0
    likes_liked: int = 0
    updated_at: int = 0

    @property
    def liked_ratio(self) -> float:
        return self.likes_liked / self.likes_total if self.likes_total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": 1,
            "salt": self.salt,
            "runCount": self.run_count,
            "theta16": list(self.theta16),
            "policy": self.policy.to_dict(),
            "likes": {"total": self.likes_total, "liked": self.likes_liked},
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class HistoryRecord:
    score: int
    omega: str
    features16: Tuple[float, ...]
    feedback: int = 0
    signature: str = ""
    root: str = ""

    @property
    def omega_finite(self) -> bool:
        return bool(self.omega) and INFINITY not in self.omega and "∞" not in self.omega


# =============================================================================
# Construction
# =============================================================================

def default_policy_from_theta(theta16: Sequence[float], run_count: int, liked_ratio: float) -> FormulaPolicy:
    def t(i: int) -> float:
        return theta_at(theta16, i)

    settle = clamp01(run_count / 80)
    like = clamp01(liked_ratio)
    p_frac = clamp01(0.22 - settle * 0.1 + (t(9) - 0.5) * 0.06)
    p_pow = clamp01(0.2 - settle * 0.06 + (t(10) - 0.5) * 0.06)
    p_func = clamp01(0.2 - settle * 0.08 + (t(11) - 0.5) * 0.06)
    p_op = clamp01(1 - (p_frac + p_pow + p_func))
    shuffle_p = clamp01(0.38 - settle * 0.22 - like * 0.12 + (t(12) - 0.5) * 0.08)

    ops_w = tuple(clamp01(0.9 + (t(i) - 0.5) * 0.5) for i in (13, 14, 15))
    funcs_w = tuple(clamp01(0.9 + (t(i) - 0.5) * 0.6) for i in range(5))

    const_min = max(1, js_round(2 - settle + (t(5) - 0.5) * 2))
    const_max = max(const_min, js_round(6 - settle * 2 + (t(6) - 0.5) * 3))

    return FormulaPolicy(
        p_op=p_op,
        p_frac=p_frac,
        p_pow=p_pow,
        p_func=p_func,
        ops_w=ops_w,
        funcs_w=funcs_w,
        const_min=const_min,
        const_max=const_max,
        shuffle_p=shuffle_p,
    )


def init_model(salt: Optional[int] = None, now_ms: Optional[int] = None) -> UniverseModel:
    theta = (0.5,) * THETA_DIM
    return UniverseModel(
        salt=(secrets.randbits(32) if salt is None else salt) & U32,
        run_count=0,
        theta16=theta,
        policy=default_policy_from_theta(theta, 0, 0.0),
        updated_at=_now_ms() if now_ms is None else now_ms,
    )


def build_model(cfg: Mapping[str, Any]) -> UniverseModel:
    """Rebuild a persisted model; a missing policy is re-derived from theta16."""
    if not isinstance(cfg, Mapping):
        raise ConfigError(f"Universe model must be an object, got {type(cfg).__name__}")
    likes = cfg.get("likes") or {}
    if not isinstance(likes, Mapping):
        raise ConfigError(f"likes must be an object, got {type(likes).__name__}")
    raw_theta = cfg.get("theta16")
    if not isinstance(raw_theta, (list, tuple)):
        raise ConfigError("theta16 must be a list of numbers")
    try:
        salt = int(cfg["salt"]) & U32
        run_count = max(0, int(cfg.get("runCount", 0)))
        theta = tuple(clamp01(float(x)) for x in raw_theta)
        likes_total = max(0, int(likes.get("total", 0)))
        likes_liked = min(likes_total, max(0, int(likes.get("liked", 0))))
        updated_at = int(cfg.get("updated_at", 0) or 0)
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"Malformed model: {exc}") from exc
    if len(theta) != THETA_DIM:
        raise ConfigError(f"theta16 must hold {THETA_DIM} values, got {len(theta)}")
    liked_ratio = likes_liked / likes_total if likes_total else 0.0

    raw_policy = cfg.get("policy")
    policy = (build_formula_policy(raw_policy) if raw_policy
              else default_policy_from_theta(theta, run_count, liked_ratio))
    return UniverseModel(
        salt=salt,
        run_count=run_count,
        theta16=theta,
        policy=policy,
        likes_total=likes_total,
        likes_liked=likes_liked,
        updated_at=updated_at,
    )


def snapshot(model: UniverseModel, theta16: Optional[Sequence[float]] = None) -> ModelSnapshot:
    return ModelSnapshot(
        salt=model.salt,
        run_count=model.run_count,
        theta16=tuple(model.theta16 if theta16 is None else theta16),
    )


# =============================================================================
# Seeds and features
# =============================================================================

def _theta_word(v: float, i: int) -> int:
    q = 0 if math.isnan(v) else js_round(clamp01(v) * 1e6)
    return (q ^ (i * 131)) & U32


def derive_formula_seed(entropy: int, model: UniverseModel, obs_hash: int) -> int:
    """Formula seed drifts in run-count buckets that widen as the model settles."""
    settle = clamp01(model.run_count / 96)
    bucket = max(1, int(math.floor(1 + settle * 9)))
    drift = mix32(model.salt, model.run_count // bucket)
    theta_hash = GOLDEN
    for i, v in enumerate(model.theta16):
        theta_hash = mix32(theta_hash, _theta_word(v, i))
    return mix32(mix32(entropy & U32, obs_hash & U32), mix32(drift, theta_hash))


def features16(trace: Sequence[TraceEvent], obs_fp8: Sequence[float]) -> List[float]:
    """Factor fingerprint of the run followed by the observation fingerprint."""
    fp = None
    for message in ("多学科指纹", "多学科因子注入"):
        fp = next((e.fp for e in trace if e.phase == Phase.FUSION and e.message == message and e.fp), None)
        if fp is not None:
            break
    head = [clamp01(float(x)) for x in fp[:8]] if fp is not None and len(fp) >= 8 else [0.5] * 8
    tail = [clamp01(float(x)) for x in obs_fp8[:8]]
    tail += [0.5] * (8 - len(tail))
    return [x if not math.isnan(x) else 0.5 for x in head + tail]


def history_prior16(history: Sequence[HistoryRecord]) -> Optional[List[float]]:
    """Quality-weighted mean of past feature vectors; liked runs count more."""
    acc = [0.0] * THETA_DIM
    total_w = 0.0
    for item in history:
        score01 = clamp01(item.score / 100)
        quality = clamp01(0.15 + score01 * 0.65 + (0.2 if item.omega_finite else 0.0))
        w = 0.08 + quality * 0.92
        if item.feedback == 1:
            w *= 1.25
        if item.feedback == -1:
            w *= 0.55
        w = max(0.02, min(1.5, w))
        if len(item.features16) != THETA_DIM:
            continue
        total_w += w
        for i, x in enumerate(item.features16):
            acc[i] += clamp01(x) * w
    if total_w <= 0:
        return None
    return [clamp01(x / total_w) for x in acc]


def _blend(theta: Sequence[float], target: Sequence[float], influence: float) -> Tuple[float, ...]:
    return tuple(clamp01(v * (1 - influence) + target[i] * influence) for i, v in enumerate(theta))


def effective_theta16(model: UniverseModel, history: Sequence[HistoryRecord]) -> Tuple[float, ...]:
    prior = history_prior16(history)
    if prior is None:
        return tuple(model.theta16)
    influence = max(0.08, 0.2 - clamp01(model.run_count / 120) * 0.12)
    return _blend(model.theta16, prior, influence)


# =============================================================================
# Learning
# =============================================================================

def compute_reward(score: int, omega_finite: bool, prev_scores: Sequence[float]) -> float:
    prev = list(prev_scores)[:HISTORY_WINDOW]
    _, prev_std = mean_std(prev)
    _, next_std = mean_std(([score] + prev)[:HISTORY_WINDOW])
    stability = clamp11((prev_std - next_std) / 12)
    score_norm = clamp11(clamp01(score / 100) * 2 - 1)
    omega_sign = 1.0 if omega_finite else -1.0
    return clamp11(score_norm * 0.65 + omega_sign * 0.2 + stability * 0.15)


def evolve_model(
    model: UniverseModel,
    record: HistoryRecord,
    history: Sequence[HistoryRecord],
    now_ms: Optional[int] = None,
) -> UniverseModel:
    """
    Post-run update. Positive reward pulls theta toward the run's features;
    negative reward pushes it away, weakly. Every PRIOR_EVERY runs theta is
    also blended toward the history prior. `history` is newest first and
    excludes `record`.
    """
    reward = compute_reward(record.score, record.omega_finite, [h.score for h in history])
    next_run = max(0, model.run_count) + 1
    settle = clamp01(next_run / 120)
    eta = clamp(0.04 - settle * 0.022, 0.008, 0.042)
    gain = clamp01(0.2 + 0.8 * reward) if reward >= 0 else 0.12
    direction = 1.0 if reward >= 0 else -0.06
    fv = record.features16
    theta = tuple(clamp01(v + (fv[i] - v) * eta * gain * direction) for i, v in enumerate(model.theta16))

    if next_run % PRIOR_EVERY == 0:
        prior = history_prior16([record, *history])
        if prior is not None:
            theta = _blend(theta, prior, max(0.05, 0.14 - settle * 0.08))

    logger.debug("model evolve run=%d reward=%.4f eta=%.4f", next_run, reward, eta)
    return replace(
        model,
        run_count=next_run,
        theta16=theta,
        policy=default_policy_from_theta(theta, next_run, model.liked_ratio),
        updated_at=_now_ms() if now_ms is None else now_ms,
    )


def apply_like(model: UniverseModel, features: Sequence[float], now_ms: Optional[int] = None) -> UniverseModel:
    """A like is a stronger pull toward the liked run than ordinary evolution."""
    total = model.likes_total + 1
    liked = model.likes_liked + 1
    eta = clamp(0.065 - clamp01(model.run_count / 120) * 0.04, 0.012, 0.09)
    theta = tuple(clamp01(v + (features[i] - v) * eta) for i, v in enumerate(model.theta16))
    return replace(
        model,
        likes_total=total,
        likes_liked=liked,
        theta16=theta,
        policy=default_policy_from_theta(theta, model.run_count, liked / total),
        updated_at=_now_ms() if now_ms is None else now_ms,
    )


# =============================================================================
# Dashboard
# =============================================================================

PROGRESS_RUNS = 120


@dataclass(frozen=True)
class DashboardMetrics:
    run_count: int
    progress01: float
    likes_ratio01: float
    score_mean: float
    score_std: float
    omega_finite_ratio01: float
    feedback_bias: float
    liked: int
    disliked: int
    recent: int
    theta_stability01: float
    recent_signature: str


def theta_stability(theta16: Sequence[float]) -> float:
    """1 - normalized Shannon entropy of theta16 read as a distribution; uniform theta scores 0."""
    if len(theta16) == THETA_DIM:
        theta = [0.5 if math.isnan(x) else clamp01(x) for x in theta16]
    else:
        theta = [0.5] * THETA_DIM
    total = sum(theta) or 1.0
    p = [x / total for x in theta]
    h = -sum(pi * math.log2(pi) for pi in p if pi > 1e-12)
    return clamp01(1 - clamp01(h / math.log2(len(p))))


def dashboard_metrics(model: UniverseModel, history: Sequence[HistoryRecord]) -> DashboardMetrics:
    """Summary of the model and its last HISTORY_WINDOW runs (`history` newest first)."""
    recent = list(history[:HISTORY_WINDOW])
    score_mean, score_std = mean_std([float(h.score) for h in recent])
    liked = sum(1 for h in recent if h.feedback == 1)
    disliked = sum(1 for h in recent if h.feedback == -1)
    rated = sum(1 for h in recent if h.feedback != 0)

    # Without explicit likes the ratio falls back to per-run feedback.
    if model.likes_total:
        likes_ratio = model.liked_ratio
    else:
        likes_ratio = liked / rated if rated else 0.0

    n = len(recent)
    return DashboardMetrics(
        run_count=model.run_count,
        progress01=clamp01(model.run_count / PROGRESS_RUNS),
        likes_ratio01=clamp01(likes_ratio),
        score_mean=score_mean,
        score_std=score_std,
        omega_finite_ratio01=sum(1 for h in recent if h.omega_finite) / n if n else 0.0,
        feedback_bias=clamp11(sum(h.feedback for h in recent) / n) if n else 0.0,
        liked=liked,
        disliked=disliked,
        recent=n,
        theta_stability01=theta_stability(model.theta16),
        recent_signature=(history[0].signature if history and history[0].signature else hex8(model.salt)),
    )


# =============================================================================
# Passive observation
# =============================================================================

def _effective_type_level(effective_type: str) -> float:
    return {"4g": 0.9, "3g": 0.65, "2g": 0.45}.get(effective_type, 0.55)


def observation_from_signals(
    tz_hours: float = 0.0,
    hardware_concurrency: int = 4,
    device_memory: float = 4.0,
    screen_w: int = 0,
    screen_h: int = 0,
    dpr: float = 1.0,
    prefers_dark: bool = False,
    prefers_reduced_motion: bool = False,
    effective_type: str = "unknown",
    rtt: float = 0.0,
    downlink: float = 0.0,
    language: str = "unknown",
    enhanced: int = 0,
) -> Observation:
    """Fold ambient host signals into an 8-float fingerprint plus a 32-bit hash."""
    fp = (
        clamp01((tz_hours + 12) / 26),
        clamp01(math.log2(max(1, hardware_concurrency)) / 6),
        clamp01(max(0.0, min(16.0, device_memory)) / 16),
        clamp01(math.log2(max(1, screen_w * screen_h)) / 24),
        clamp01(max(0.5, min(3.0, dpr)) / 3),
        0.78 if prefers_dark else 0.22,
        0.78 if prefers_reduced_motion else 0.22,
        _effective_type_level(effective_type),
    )

    h = FNV_OFFSET
    for word in (
        js_round(tz_hours * 1000),
        js_round(dpr * 1000),
        hardware_concurrency,
        js_round(device_memory * 1000),
        (screen_w << 16) ^ screen_h,
        1 if prefers_dark else 0,
        1 if prefers_reduced_motion else 0,
        hash_str_mixed(effective_type),
        js_round(rtt * 10),
        js_round(downlink * 100),
        hash_str_mixed(language),
    ):
        h = mix32(h, word & U32)
    return Observation(hash=h, fp8=fp, enhanced=enhanced)
