"""CyberGua: deterministic, hash-chained divination engine."""

from cybergua.almanac import LunarCalendar, PillarProvider, Pillars
from cybergua.config import (
    ConfigError,
    DimensionWeights,
    Extras,
    FormulaPolicy,
    ModelSnapshot,
    Observation,
    build_extras,
    build_formula_policy,
    build_weights,
)
from cybergua.engine import DivinationInput, DivinationResult, DivinationRun, divine, divine_with_trace
from cybergua.formula import FormulaData, FormulaParam, build_formula_data
from cybergua.trace import TraceEvent, verify_chain, verify_integrity

__version__ = "1.0.0"

__all__ = [
    "ConfigError",
    "DimensionWeights",
    "DivinationInput",
    "DivinationResult",
    "DivinationRun",
    "Extras",
    "FormulaData",
    "FormulaParam",
    "FormulaPolicy",
    "LunarCalendar",
    "ModelSnapshot",
    "Observation",
    "PillarProvider",
    "Pillars",
    "TraceEvent",
    "build_extras",
    "build_formula_data",
    "build_formula_policy",
    "build_weights",
    "divine",
    "divine_with_trace",
    "verify_chain",
    "verify_integrity",
]
