"""
Run capsules: the JSON-ready record of one divination, plus replay and the
determinism self-test built on it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from cybergua.almanac import PillarProvider
from cybergua.canon import HASH_EXCLUDED_FIELDS, capsule_body, sha256_json
from cybergua.config import (
    ConfigError,
    DimensionWeights,
    Extras,
    FormulaPolicy,
    RunConfig,
    build_extras,
    build_formula_policy,
    build_weights,
)
from cybergua.engine import DivinationInput, DivinationRun, divine_with_trace
from cybergua.formula import FormulaData, build_formula_data
from cybergua.trace import TraceEvent, event_to_dict, verify_integrity

logger = logging.getLogger(__name__)

ENGINE_VERSION = "CyberGua/1"
CAPSULE_SCHEMA_VERSION = 1


class CapsuleError(ValueError):
    """A capsule is missing fields or carries values that cannot be replayed."""


@dataclass
class DeterminismCheckResult:
    ok: bool
    mismatch: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class RunInputs:
    inp: DivinationInput
    entropy: int
    weights: DimensionWeights
    extras: Extras
    formula_seed: Optional[int]
    policy: FormulaPolicy
    phases: List[str]


# =============================================================================
# Build
# =============================================================================

def build_run_capsule(
    hid: str,
    inp: DivinationInput,
    entropy: int,
    run: DivinationRun,
    extras: Extras,
    formula: Optional[FormulaData] = None,
    formula_seed: Optional[int] = None,
    policy: Optional[FormulaPolicy] = None,
    phases: Sequence[str] = (),
    features16: Sequence[float] = (),
    weights: Optional[DimensionWeights] = None,
    created_at: Optional[int] = None,
) -> Dict[str, Any]:
    """
    One record per run. `extras` must be the exact extras the run was made
    with (effective theta16 included) so that replay reproduces the trace.
    """
    run_config = RunConfig(weights=weights or DimensionWeights(), policy=policy or FormulaPolicy())
    r = run.result
    ex = extras.to_dict()
    model = dict(ex["model"]) if "model" in ex else None
    if model is not None:
        model["policy"] = run_config.policy.to_dict()

    capsule: Dict[str, Any] = {
        "v": CAPSULE_SCHEMA_VERSION,
        "version": ENGINE_VERSION,
        "hid": hid,
        "createdAt": int(time.time() * 1000) if created_at is None else created_at,
        "input": {
            "question": inp.question,
            "nickname": inp.nickname,
            "datetimeISO": inp.when.isoformat(),
        },
        "result": {
            "score": r.score,
            "signature": r.signature,
            "omega": formula.omega if formula is not None else "",
            "formulaLatex": formula.latex if formula is not None else "",
        },
        "carry": r.to_dict()["carry"],
        "model": model,
        "obs": ex.get("obs"),
        "config": {
            "weights": asdict(run_config.weights),
            "policy": run_config.policy.to_dict(),
            "source_hash": run_config.source_hash,
        },
        "trace": [event_to_dict(e) for e in run.trace],
        "extra": {
            "entropy": entropy,
            "rootDigest": run.root_digest,
            "phases": list(phases),
            "formulaSeed": formula_seed,
            "formula": ({"steps": list(formula.steps), "params": formula.to_dict()["params"]}
                        if formula is not None else None),
            "features16": list(features16),
        },
        "integrity_boundary": {"excluded_fields": sorted(HASH_EXCLUDED_FIELDS)},
    }
    capsule["capsule_hash"] = capsule_hash(capsule)
    return capsule


def capsule_hash(capsule: Mapping[str, Any]) -> str:
    return sha256_json(capsule_body(capsule))


# =============================================================================
# Load + replay
# =============================================================================

def _section(capsule: Mapping[str, Any], key: str, required: bool = True) -> Mapping[str, Any]:
    value = capsule.get(key)
    if value is None and not required:
        return {}
    if not isinstance(value, Mapping):
        raise CapsuleError(f"Capsule {key} must be an object, got {type(value).__name__}")
    return value


def load_run_inputs(capsule: Mapping[str, Any]) -> RunInputs:
    if not isinstance(capsule, Mapping):
        raise CapsuleError(f"Capsule must be an object, got {type(capsule).__name__}")
    raw_in = _section(capsule, "input")
    extra = _section(capsule, "extra")
    cfg = _section(capsule, "config", required=False)
    model = _section(capsule, "model", required=False)
    try:
        inp = DivinationInput(
            question=str(raw_in["question"]),
            when=datetime.fromisoformat(str(raw_in["datetimeISO"])),
            nickname=raw_in.get("nickname"),
        )
        extras_cfg: Dict[str, Any] = {}
        if capsule.get("obs") is not None:
            extras_cfg["obs"] = capsule["obs"]
        if model:
            extras_cfg["model"] = {"salt": model["salt"], "runCount": model.get("runCount", 0),
                                   "theta16": model.get("theta16")}
        seed = extra.get("formulaSeed")
        return RunInputs(
            inp=inp,
            entropy=int(extra["entropy"]),
            weights=build_weights(cfg.get("weights")),
            extras=build_extras(extras_cfg),
            formula_seed=int(seed) if seed is not None else None,
            policy=build_formula_policy(cfg.get("policy")),
            phases=[str(p) for p in extra.get("phases") or []],
        )
    except ConfigError as exc:
        raise CapsuleError(f"Capsule config rejected: {exc}") from exc
    except (KeyError, TypeError, ValueError) as exc:
        raise CapsuleError(f"Malformed capsule: {exc}") from exc


def _first_hash_mismatch(expected: Sequence[Mapping[str, Any]], got: Sequence[TraceEvent]) -> Optional[int]:
    for i, (e, g) in enumerate(zip(expected, got)):
        if not isinstance(e, Mapping) or e.get("hash") != g.hash:
            return i
    return None


def replay_capsule(capsule: Mapping[str, Any], calendar: Optional[PillarProvider] = None) -> DeterminismCheckResult:
    """Re-run a capsule's inputs and compare score, signature and every event hash."""
    ri = load_run_inputs(capsule)
    run = divine_with_trace(ri.inp, ri.entropy, ri.weights, ri.extras, calendar)
    expected_trace = capsule.get("trace") or []
    if not isinstance(expected_trace, list):
        raise CapsuleError("Capsule trace must be a list of events")
    result = _section(capsule, "result", required=False)

    mismatch: Optional[Dict[str, Any]] = None
    if run.result.score != result.get("score"):
        mismatch = {"reason": "score_mismatch", "expected": result.get("score"), "got": run.result.score}
    elif run.result.signature != result.get("signature"):
        mismatch = {"reason": "signature_mismatch", "expected": result.get("signature"),
                    "got": run.result.signature}
    elif len(run.trace) != len(expected_trace):
        mismatch = {"reason": "trace_length_mismatch", "expected": len(expected_trace), "got": len(run.trace)}
    else:
        idx = _first_hash_mismatch(expected_trace, run.trace)
        if idx is not None:
            mismatch = {"reason": "event_hash_mismatch", "event_index": idx}
        elif ri.formula_seed is not None and result.get("formulaLatex"):
            formula = build_formula_data(ri.formula_seed, ri.phases, ri.policy)
            if formula.latex != result["formulaLatex"] or formula.omega != result.get("omega"):
                mismatch = {"reason": "formula_mismatch", "expected": result.get("omega"), "got": formula.omega}

    if mismatch is not None:
        logger.warning("capsule replay mismatch hid=%s %s", capsule.get("hid"), mismatch)
        return DeterminismCheckResult(False, mismatch)

    integrity = verify_integrity(run.trace)
    if not (integrity["chain_ok"] and integrity["groups_ok"] and integrity["root_ok"]):
        logger.warning("capsule replay integrity failure hid=%s %s", capsule.get("hid"), integrity)
        return DeterminismCheckResult(False, {"reason": "integrity_failure", **integrity})
    return DeterminismCheckResult(True, None)


def determinism_self_test(
    inp: DivinationInput,
    entropy: int,
    config: Optional[DimensionWeights] = None,
    extras: Optional[Extras] = None,
    calendar: Optional[PillarProvider] = None,
) -> DeterminismCheckResult:
    a = divine_with_trace(inp, entropy, config, extras, calendar)
    b = divine_with_trace(inp, entropy, config, extras, calendar)

    if (a.result.score, a.result.signature) != (b.result.score, b.result.signature):
        return DeterminismCheckResult(False, {"reason": "result_mismatch",
                                              "a": [a.result.score, a.result.signature],
                                              "b": [b.result.score, b.result.signature]})
    if len(a.trace) != len(b.trace):
        return DeterminismCheckResult(False, {"reason": "trace_length_mismatch",
                                              "a": len(a.trace), "b": len(b.trace)})
    for i, (ea, eb) in enumerate(zip(a.trace, b.trace)):
        if ea.hash != eb.hash:
            return DeterminismCheckResult(False, {"event_index": i, "reason": "event_hash_mismatch"})
    return DeterminismCheckResult(True, None)
