"""
Divination orchestration: seeds, dimension scorers, environment, factors,
fusion and the sealing group, all written into one hash-chained ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from cybergua.almanac import LunarCalendar, PillarProvider, Pillars, time_signature
from cybergua.bits import U32, clamp01, fnv1a32, fp8, hex8, mix_seed, round4
from cybergua.combiner import fuse, remap_to_100
from cybergua.config import DimensionWeights, Extras
from cybergua.dimensions import (
    DimensionScores,
    Elements,
    Hexagram,
    normalize_question,
    score_divinatory,
    score_entropic,
    score_numerological,
    score_temporal,
    score_textual,
)
from cybergua.environment import derive_pseudo_env, emit_environment
from cybergua.factors import FactorContext, initial_vectors, run_factors
from cybergua.rng import XorShift32
from cybergua.trace import Phase, TraceEvent, TraceLedger

logger = logging.getLogger(__name__)

TRACE_SALT = 0x9E3779B9


@dataclass(frozen=True)
class DivinationInput:
    question: str
    when: datetime
    nickname: Optional[str] = None


@dataclass(frozen=True)
class Carry:
    seed: int
    pillars: Pillars
    elements: Elements
    hexagram: Hexagram


@dataclass(frozen=True)
class DivinationResult:
    score: int
    signature: str
    carry: Carry

    def to_dict(self) -> Dict[str, Any]:
        c = self.carry
        return {
            "score": self.score,
            "signature": self.signature,
            "carry": {
                "seed": c.seed,
                "pillars": {"year": c.pillars.year, "month": c.pillars.month,
                            "day": c.pillars.day, "time": c.pillars.time},
                "elements": {"wood": c.elements.wood, "fire": c.elements.fire, "earth": c.elements.earth,
                             "metal": c.elements.metal, "water": c.elements.water},
                "hexagram": {"upper": c.hexagram.upper, "lower": c.hexagram.lower,
                             "name": c.hexagram.name, "changingLine": c.hexagram.changing_line},
            },
        }


@dataclass(frozen=True)
class DivinationRun:
    result: DivinationResult
    trace: Tuple[TraceEvent, ...]

    @property
    def root_digest(self) -> Optional[str]:
        return self.trace[-1].root_digest if self.trace else None


@dataclass(frozen=True)
class Seeds:
    question: str
    question_hash: int
    time_seed: int
    base_seed: int
    seed: int

    @property
    def genesis(self) -> str:
        return hex8(mix_seed(self.seed, self.question_hash, self.time_seed))


def derive_seeds(inp: DivinationInput, entropy: int, extras: Extras) -> Seeds:
    question = normalize_question(inp.question)
    qh = fnv1a32(question)
    ts = time_signature(inp.when)
    base = mix_seed(qh, ts, entropy)
    salt = extras.model.salt if extras.model is not None else 0
    obs_hash = extras.obs.hash if extras.obs is not None else 0
    return Seeds(question, qh, ts, base, mix_seed(base, salt, obs_hash))


def observation16(extras: Extras, seed: int) -> List[float]:
    """Eight observed components, then eight derived from the observation hash nibbles."""
    raw = extras.obs.fp8 if extras.obs is not None else ()
    obs8 = [clamp01(float(raw[i])) if i < len(raw) else 0.5 for i in range(8)]
    source = extras.obs.hash if extras.obs is not None else seed
    derived = [clamp01((((source >> (i * 4)) & 0xF) / 15) * 0.62 + obs8[i] * 0.38) for i in range(8)]
    return obs8 + derived


def _emit_observation(ledger: TraceLedger, extras: Extras) -> None:
    obs, model = extras.obs, extras.model
    obs_fp = obs.fp8 if obs is not None and obs.fp8 else None
    ledger.group_start(Phase.OBSERVE, "观测封装",
                       {"oh": hex8(obs.hash if obs else 0), "x": obs.enhanced if obs else 0}, obs_fp)
    if model is not None:
        ledger.emit(Phase.MODEL, "本机宇宙常量", {"m": hex8(model.salt), "n": model.run_count},
                    fp8(list(model.theta16[:8])))
    ledger.group_end(Phase.OBSERVE, "封装完毕", {"h": ledger.head}, obs_fp)


def _emit_opening(ledger: TraceLedger, seeds: Seeds, entropy: int) -> None:
    noise = ledger.noise
    seed, qh = seeds.seed, seeds.question_hash
    ledger.group_start(Phase.OMEN, "启封", {"seed": hex8(seed), "qh": hex8(qh), "ts": hex8(seeds.time_seed),
                                          "e": hex8(entropy)})
    ledger.emit(Phase.OMEN, "启封问事，落符入盘", {"q": len(seeds.question), "qh": hex8(qh)})
    ledger.emit(Phase.OMEN, "构建天机种子", {"seed": hex8(seed), "drift": round4(noise())})
    ledger.emit(Phase.OMEN, "编排扰动门限", {"gate": round4(0.35 + noise() * 0.55), "bias": round4((noise() - 0.5) * 0.12)})
    ledger.emit(Phase.OMEN, "噪声谱拟合", {"n1": round4(noise()), "n2": round4(noise()), "n3": round4(noise()),
                                         "h": hex8(mix_seed(seed, entropy, qh))})
    ledger.group_end(Phase.OMEN, "启封完毕", {"head": ledger.head})


def divine_with_trace(
    inp: DivinationInput,
    entropy: int,
    config: Optional[DimensionWeights] = None,
    extras: Optional[Extras] = None,
    calendar: Optional[PillarProvider] = None,
) -> DivinationRun:
    weights = config or DimensionWeights()
    extras = extras or Extras()
    calendar = calendar or LunarCalendar()
    entropy &= U32

    seeds = derive_seeds(inp, entropy, extras)
    seed = seeds.seed
    rng = XorShift32(seed)
    ledger = TraceLedger(seed ^ TRACE_SALT, seeds.genesis)
    theta16 = extras.model.theta16 if extras.model is not None else ()
    run_count = extras.model.run_count if extras.model is not None else 0

    if extras.obs is not None or extras.model is not None:
        _emit_observation(ledger, extras)
    _emit_opening(ledger, seeds, entropy)

    pillars = calendar.pillars_for(inp.when)
    time_score, elements = score_temporal(ledger, pillars)
    text_score, _ = score_textual(ledger, seeds.question, seeds.question_hash)
    iching_score, hexagram = score_divinatory(ledger, rng, seed, seeds.time_seed, seeds.question_hash, entropy)
    numerology_score, _ = score_numerological(ledger, inp.when, seeds.question, inp.nickname or "")
    entropy_score = score_entropic(ledger, entropy, seed)
    scores = DimensionScores(time_score, text_score, iching_score, numerology_score, entropy_score)

    env = derive_pseudo_env(seed, seeds.time_seed, entropy, inp.when)
    emit_environment(ledger, env)

    obs, base = initial_vectors(elements, scores, env, observation16(extras, seed))
    ctx = FactorContext(seed, seeds.question_hash, seeds.time_seed, entropy, scores, elements, env, obs, base)
    factors = run_factors(ledger, ctx)

    obs_fp0 = extras.obs.fp8[0] if extras.obs is not None and extras.obs.fp8 else None
    combined = fuse(ledger, scores, weights, theta16, clamp01(factors.score01), factors.fp8, env.radiation,
                    obs_fp0, run_count, seed, seeds.question_hash, seeds.time_seed)

    score = remap_to_100(combined, ledger.noise())
    first_hash = ledger.events[0].hash
    ledger.group_start(Phase.SEAL, "归一封存", {"score": score})
    ledger.emit(Phase.SEAL, "归一输出", {"score": score, "head": first_hash, "tail": ledger.head,
                                        "sig": factors.signature})
    ledger.group_end(Phase.SEAL, "封存完毕", {"tail": ledger.head})
    trace = ledger.finalize()

    logger.debug("divination seed=%s score=%d factor=%.4f events=%d root=%s",
                 hex8(seed), score, factors.score01, len(trace), ledger.root_digest)

    result = DivinationResult(
        score=score,
        signature=factors.signature,
        carry=Carry(seed=seed, pillars=pillars, elements=elements, hexagram=hexagram),
    )
    return DivinationRun(result=result, trace=tuple(trace))


def divine(
    inp: DivinationInput,
    entropy: int,
    config: Optional[DimensionWeights] = None,
    extras: Optional[Extras] = None,
    calendar: Optional[PillarProvider] = None,
) -> DivinationResult:
    return divine_with_trace(inp, entropy, config, extras, calendar).result
