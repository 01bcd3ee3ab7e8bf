"""
Fully resolved configuration records.

Callers hand in plain dicts (sidebar state, capsules, persisted models); the
build_* functions merge them onto the defaults once, at the boundary, and raise
ConfigError for anything malformed. Everything downstream receives frozen
dataclasses and never re-validates.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from cybergua.bits import U32, clamp01
from cybergua.canon import sha256_json

OPS = ("+", "-", "\\cdot")
FUNCS = ("\\log", "\\exp", "\\sin", "\\cos", "\\tanh")

WEIGHT_KEYS = ("time", "text", "iching", "numerology", "entropy")


class ConfigError(ValueError):
    pass


# =============================================================================
# Dimension weights
# =============================================================================

@dataclass(frozen=True)
class DimensionWeights:
    time: float = 0.28
    text: float = 0.22
    iching: float = 0.24
    numerology: float = 0.16
    entropy: float = 0.10

    def as_dict(self) -> Dict[str, float]:
        return {k: getattr(self, k) for k in WEIGHT_KEYS}


DEFAULT_WEIGHTS_DICT: Dict[str, float] = {
    "time": 0.28,
    "text": 0.22,
    "iching": 0.24,
    "numerology": 0.16,
    "entropy": 0.10,
}


def _mapping(name: str, cfg: Optional[Any]) -> Mapping[str, Any]:
    if cfg is None:
        return {}
    if not isinstance(cfg, Mapping):
        raise ConfigError(f"{name} must be an object, got {type(cfg).__name__}")
    return cfg


def _finite(name: str, v: Any) -> float:
    try:
        x = float(v)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {v!r}") from exc
    if not math.isfinite(x):
        raise ConfigError(f"{name} must be finite, got {v!r}")
    return x


def build_weights(cfg: Optional[Mapping[str, Any]] = None) -> DimensionWeights:
    """Weights need not sum to one; they are renormalized after model adaptation."""
    merged = dict(DEFAULT_WEIGHTS_DICT)
    for k, v in _mapping("weights", cfg).items():
        if k not in merged:
            raise ConfigError(f"Unknown weight: {k}")
        x = _finite(k, v)
        if x < 0:
            raise ConfigError(f"Weight {k} must be >= 0, got {x}")
        merged[k] = x
    return DimensionWeights(**merged)


# =============================================================================
# Formula policy
# =============================================================================

@dataclass(frozen=True)
class FormulaPolicy:
    p_op: float = 0.4
    p_frac: float = 0.2
    p_pow: float = 0.2
    p_func: float = 0.2
    ops_w: Tuple[float, ...] = (1.0, 1.0, 1.0)
    funcs_w: Tuple[float, ...] = (1.0, 1.0, 1.0, 1.0, 1.0)
    const_min: int = 2
    const_max: int = 5
    shuffle_p: float = 0.35

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pOp": self.p_op,
            "pFrac": self.p_frac,
            "pPow": self.p_pow,
            "pFunc": self.p_func,
            "opsW": list(self.ops_w),
            "funcsW": list(self.funcs_w),
            "constMin": self.const_min,
            "constMax": self.const_max,
            "shuffleP": self.shuffle_p,
        }


DEFAULT_POLICY_DICT: Dict[str, Any] = {
    "pOp": 0.4,
    "pFrac": 0.2,
    "pPow": 0.2,
    "pFunc": 0.2,
    "opsW": [1, 1, 1],
    "funcsW": [1, 1, 1, 1, 1],
    "constMin": 2,
    "constMax": 5,
    "shuffleP": 0.35,
}


def normalize_weights(weights: Optional[Sequence[float]], expected_len: int) -> Optional[Tuple[float, ...]]:
    """L1-normalize the non-negative finite part; None when unusable."""
    if weights is None or len(weights) != expected_len:
        return None
    cleaned = [max(0.0, float(w)) if math.isfinite(float(w)) else 0.0 for w in weights]
    s = sum(cleaned)
    if s <= 0:
        return None
    return tuple(w / s for w in cleaned)


def _clamp_count(v: Any, lo: int, hi: int) -> int:
    x = _finite("count", v)
    return max(lo, min(hi, int(x)))


def build_formula_policy(cfg: Optional[Mapping[str, Any]] = None) -> FormulaPolicy:
    """
    Merge a partial policy onto DEFAULT_POLICY_DICT. Probabilities are clamped
    to [0,1], weight lists normalized (falling back to uniform), constant
    counts truncated into [0,12] / [0,16].
    """
    merged = dict(DEFAULT_POLICY_DICT)
    for k, v in _mapping("formula policy", cfg).items():
        if k not in merged:
            raise ConfigError(f"Unknown formula policy key: {k}")
        if v is not None:
            merged[k] = v

    for k in ("opsW", "funcsW"):
        if not isinstance(merged[k], (list, tuple)):
            raise ConfigError(f"{k} must be a list of numbers")
        for w in merged[k]:
            _finite(k, w)

    ops_w = normalize_weights(merged["opsW"], len(OPS)) or (1.0,) * len(OPS)
    funcs_w = normalize_weights(merged["funcsW"], len(FUNCS)) or (1.0,) * len(FUNCS)

    return FormulaPolicy(
        p_op=clamp01(_finite("pOp", merged["pOp"])),
        p_frac=clamp01(_finite("pFrac", merged["pFrac"])),
        p_pow=clamp01(_finite("pPow", merged["pPow"])),
        p_func=clamp01(_finite("pFunc", merged["pFunc"])),
        ops_w=ops_w,
        funcs_w=funcs_w,
        const_min=_clamp_count(merged["constMin"], 0, 12),
        const_max=_clamp_count(merged["constMax"], 0, 16),
        shuffle_p=clamp01(_finite("shuffleP", merged["shuffleP"])),
    )


# =============================================================================
# Per-run extras (observation + model snapshot)
# =============================================================================

@dataclass(frozen=True)
class Observation:
    hash: int
    fp8: Tuple[float, ...] = ()
    enhanced: int = 0


@dataclass(frozen=True)
class ModelSnapshot:
    salt: int
    run_count: int
    theta16: Tuple[float, ...] = ()


@dataclass(frozen=True)
class Extras:
    obs: Optional[Observation] = None
    model: Optional[ModelSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.obs is not None:
            out["obs"] = {"hash": self.obs.hash, "fp8": list(self.obs.fp8), "enhanced": self.obs.enhanced}
        if self.model is not None:
            out["model"] = {"salt": self.model.salt, "runCount": self.model.run_count,
                            "theta16": list(self.model.theta16)}
        return out


def _u32_field(name: str, v: Any) -> int:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ConfigError(f"{name} must be an integer, got {v!r}")
    if isinstance(v, float) and not v.is_integer():
        raise ConfigError(f"{name} must be an integer, got {v!r}")
    return int(v) & U32


def _float_tuple(name: str, v: Any, max_len: int) -> Tuple[float, ...]:
    if v is None:
        return ()
    if not isinstance(v, (list, tuple)):
        raise ConfigError(f"{name} must be a list of numbers")
    if len(v) > max_len:
        raise ConfigError(f"{name} holds at most {max_len} values, got {len(v)}")
    try:
        return tuple(float(x) for x in v)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a list of numbers") from exc


def build_extras(cfg: Optional[Mapping[str, Any]] = None) -> Extras:
    cfg = _mapping("extras", cfg)
    if not cfg:
        return Extras()
    unknown = set(cfg) - {"obs", "model"}
    if unknown:
        raise ConfigError(f"Unknown extras keys: {sorted(unknown)}")

    obs = None
    raw_obs = cfg.get("obs")
    if raw_obs is not None:
        raw_obs = _mapping("obs", raw_obs)
        if "hash" not in raw_obs:
            raise ConfigError("obs missing hash")
        enhanced = int(_finite("obs.enhanced", raw_obs.get("enhanced", 0) or 0))
        if enhanced not in (0, 1):
            raise ConfigError(f"obs.enhanced must be 0 or 1, got {enhanced}")
        obs = Observation(
            hash=_u32_field("obs.hash", raw_obs["hash"]),
            fp8=_float_tuple("obs.fp8", raw_obs.get("fp8"), 8),
            enhanced=enhanced,
        )

    model = None
    raw_model = cfg.get("model")
    if raw_model is not None:
        raw_model = _mapping("model", raw_model)
        if "salt" not in raw_model:
            raise ConfigError("model missing salt")
        run_count = _u32_field("model.runCount", raw_model.get("runCount", 0))
        model = ModelSnapshot(
            salt=_u32_field("model.salt", raw_model["salt"]),
            run_count=run_count,
            theta16=_float_tuple("model.theta16", raw_model.get("theta16"), 16),
        )
    return Extras(obs=obs, model=model)


# =============================================================================
# Fingerprints
# =============================================================================

@dataclass(frozen=True)
class RunConfig:
    """Weights plus formula policy, hashed together for capsules."""
    weights: DimensionWeights = field(default_factory=DimensionWeights)
    policy: FormulaPolicy = field(default_factory=FormulaPolicy)

    @property
    def source_hash(self) -> str:
        return config_hash({"weights": asdict(self.weights), "policy": self.policy.to_dict()})


def config_hash(obj: Any) -> str:
    return sha256_json(obj)
