"""
Formula synthesizer.

Builds a random expression tree from a seeded Mulberry32 stream, renders it to
LaTeX (in full and depth-limited) and evaluates it under numeric guards. The
guarded evaluation never raises: non-finite results become the \\infty token.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from cybergua.bits import U32
from cybergua.config import FUNCS, OPS, FormulaPolicy, build_formula_policy, normalize_weights
from cybergua.rng import Mulberry32

logger = logging.getLogger(__name__)

FORMULA_SALT = 0x9E3779B1

PLACEHOLDER = "\\square"
INFINITY = "\\infty"
LIMIT_LITERAL = "\\lim_{x \\to 0} \\frac{\\sin x}{x}"

Rng = Callable[[], float]


# =============================================================================
# Tree
# =============================================================================

@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class Const:
    value: str


@dataclass(frozen=True)
class BinOp:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Frac:
    num: "Node"
    den: "Node"


@dataclass(frozen=True)
class Pow:
    base: "Node"
    exp: "Node"


@dataclass(frozen=True)
class Func:
    name: str
    arg: "Node"


Node = Union[Var, Const, BinOp, Frac, Pow, Func]


@dataclass(frozen=True)
class FormulaParam:
    key: str
    latex: str
    value: str
    desc: str


@dataclass(frozen=True)
class FormulaData:
    latex: str
    steps: Tuple[str, ...]
    params: Tuple[FormulaParam, ...]

    def param(self, key: str) -> Optional[FormulaParam]:
        return next((p for p in self.params if p.key == key), None)

    @property
    def omega(self) -> str:
        p = self.param("Ω")
        return p.value if p else ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "latex": self.latex,
            "steps": list(self.steps),
            "params": [{"key": p.key, "latex": p.latex, "value": p.value, "desc": p.desc} for p in self.params],
        }


BASE_PARAMS: Tuple[Tuple[str, str, str], ...] = (
    ("Ω", "\\Omega", "归一输出"),
    ("σ", "\\sigma", "归一化算子"),
    ("Q", "Q", "问题向量"),
    ("T", "T", "时间基准"),
    ("N", "N", "称呼扰动"),
    ("ε", "\\epsilon", "微熵扰动"),
    ("α", "\\alpha", "权重系数"),
    ("β", "\\beta", "权重系数"),
    ("γ", "\\gamma", "权重系数"),
)

# Keys excluded from the leaf set and from evaluation bindings.
NON_LEAF_KEYS = ("Ω", "σ")


# =============================================================================
# Random literals
# =============================================================================

def rand_range(rng: Rng, lo: float, hi: float) -> float:
    return lo + (hi - lo) * rng()


def rand_int(rng: Rng, lo: int, hi: int) -> int:
    return int(math.floor(rand_range(rng, lo, hi + 1)))


def format_decimal(rng: Rng, lo: float, hi: float, digits: Optional[int] = None) -> str:
    value = rand_range(rng, lo, hi)
    places = digits if digits is not None else 1 + int(rng() * 4)
    return f"{value:.{places}f}"


def format_value(rng: Rng) -> str:
    choice = rng()
    if choice < 0.14:
        return format_decimal(rng, 0.01, 9.99, 1)
    if choice < 0.28:
        return format_decimal(rng, 10, 99.99, 2)
    if choice < 0.4:
        return format_decimal(rng, 100, 999.99, 3)
    if choice < 0.52:
        return format_decimal(rng, 1000, 9999.99, 4)
    if choice < 0.62:
        return f"\\frac{{{rand_int(rng, 1, 99)}}}{{{rand_int(rng, 2, 99)}}}"
    if choice < 0.7:
        return f"\\sqrt{{{rand_int(rng, 2, 99)}}}"
    if choice < 0.76:
        return f"\\left({rand_int(rng, 2, 19)}\\right)^{{2}}"
    if choice < 0.82:
        return LIMIT_LITERAL
    if choice < 0.88:
        return "\\pi"
    if choice < 0.94:
        return "e"
    return format_decimal(rng, 120, 12000, 2)


def pick_weighted(items: Sequence[str], weights: Sequence[float], rng: Rng) -> str:
    w = normalize_weights(weights, len(items))
    if w is None:
        return items[int(rng() * len(items))]
    x = rng()
    for item, wi in zip(items, w):
        x -= wi
        if x <= 0:
            return item
    return items[-1]


def shuffle(items: List[Node], rng: Rng) -> None:
    """In-place Fisher-Yates driven by the given stream."""
    for i in range(len(items) - 1, 0, -1):
        j = int(rng() * (i + 1))
        items[i], items[j] = items[j], items[i]


# =============================================================================
# Literal parsing
# =============================================================================

_FRAC_RE = re.compile(r"^\\frac\{(\d+)\}\{(\d+)\}$")
_SQRT_RE = re.compile(r"^\\sqrt\{(\d+)\}$")
_SQUARE_RE = re.compile(r"^\\left\((\d+)\\right\)\^\{2\}$")
_FLOAT_PREFIX_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_literal(value: str) -> float:
    """Numeric value of a rendered literal; NaN when unrecognized."""
    s = value.strip()
    if s == "\\pi":
        return math.pi
    if s == "e":
        return math.e
    if s == INFINITY:
        return 10000.0
    if s == LIMIT_LITERAL:
        return 1.0
    m = _FRAC_RE.match(s)
    if m:
        return float(m.group(1)) / float(m.group(2))
    m = _SQRT_RE.match(s)
    if m:
        return math.sqrt(float(m.group(1)))
    m = _SQUARE_RE.match(s)
    if m:
        n = float(m.group(1))
        return n * n
    m = _FLOAT_PREFIX_RE.match(s)
    if m:
        return float(m.group(0))
    return math.nan


# =============================================================================
# Guarded evaluation
# =============================================================================

@dataclass(frozen=True)
class Guard:
    eps: float
    clamp: float
    exp_max: float
    pow_exp_max: float
    log_min: float


STRICT_GUARD = Guard(eps=1e-6, clamp=1e6, exp_max=7.5, pow_exp_max=6.5, log_min=1e-6)
RELAXED_GUARD = Guard(eps=1e-4, clamp=5e4, exp_max=6.0, pow_exp_max=5.0, log_min=1e-4)

TRIG_BOUND = 1e4
TANH_BOUND = 8.0


def _clamp_range(n: float, lo: float, hi: float) -> float:
    # NaN stays NaN
    if n < lo:
        return lo
    if n > hi:
        return hi
    return n


def clamp_finite(n: float, bound: float) -> float:
    if not math.isfinite(n):
        return math.nan
    return _clamp_range(n, -bound, bound)


def safe_pow(base: float, exp: float, guard: Guard) -> float:
    if math.isnan(base) or math.isnan(exp):
        return math.nan
    e = _clamp_range(exp, -guard.pow_exp_max, guard.pow_exp_max)
    b = _clamp_range(base, -guard.clamp, guard.clamp)
    if abs(b) < guard.eps:
        return 0.0
    rounded = math.floor(e + 0.5)
    if b < 0 and abs(e - rounded) > 1e-6:
        return math.nan
    out = math.exp(e * math.log(max(guard.log_min, abs(b))))
    return -out if b < 0 and rounded % 2 == 1 else out


def evaluate(node: Node, bindings: Mapping[str, float], guard: Guard = STRICT_GUARD) -> float:
    if isinstance(node, Var):
        return clamp_finite(bindings.get(node.name, math.nan), guard.clamp)
    if isinstance(node, Const):
        return clamp_finite(parse_literal(node.value), guard.clamp)
    if isinstance(node, BinOp):
        left = evaluate(node.left, bindings, guard)
        right = evaluate(node.right, bindings, guard)
        if node.op == "+":
            return clamp_finite(left + right, guard.clamp)
        if node.op == "-":
            return clamp_finite(left - right, guard.clamp)
        return clamp_finite(left * right, guard.clamp)
    if isinstance(node, Frac):
        num = evaluate(node.num, bindings, guard)
        den = evaluate(node.den, bindings, guard)
        if not math.isfinite(den):
            den = guard.eps
        if abs(den) < guard.eps:
            den = guard.eps if den >= 0 else -guard.eps
        return clamp_finite(num / den, guard.clamp)
    if isinstance(node, Pow):
        base = evaluate(node.base, bindings, guard)
        exp = evaluate(node.exp, bindings, guard)
        return clamp_finite(safe_pow(base, exp, guard), guard.clamp)
    if isinstance(node, Func):
        arg = evaluate(node.arg, bindings, guard)
        if math.isnan(arg):
            return math.nan
        if node.name == "\\log":
            return clamp_finite(math.log(max(guard.log_min, abs(arg))), guard.clamp)
        if node.name == "\\exp":
            return clamp_finite(math.exp(_clamp_range(arg, -guard.exp_max, guard.exp_max)), guard.clamp)
        if node.name == "\\sin":
            return clamp_finite(math.sin(_clamp_range(arg, -TRIG_BOUND, TRIG_BOUND)), guard.clamp)
        if node.name == "\\cos":
            return clamp_finite(math.cos(_clamp_range(arg, -TRIG_BOUND, TRIG_BOUND)), guard.clamp)
        return clamp_finite(math.tanh(_clamp_range(arg, -TANH_BOUND, TANH_BOUND)), guard.clamp)
    raise TypeError(f"not a formula node: {node!r}")


def format_result(value: float) -> str:
    if not math.isfinite(value):
        return INFINITY
    a = abs(value)
    if a != 0 and (a >= 100000 or a < 0.0001):
        exp = int(math.floor(math.log10(a)))
        # 10**exp underflows to zero for subnormal magnitudes
        mantissa = value / 10.0 ** exp if exp > -300 else value * 1e300 / 10.0 ** (exp + 300)
        return f"{mantissa:.4f}\\times 10^{{{exp}}}"
    return re.sub(r"\.?0+$", "", f"{value:.4f}")


def compute_omega(core: Node, params: Sequence[FormulaParam]) -> str:
    bindings = {p.latex: parse_literal(p.value) for p in params if p.key not in NON_LEAF_KEYS}
    value = evaluate(core, bindings, STRICT_GUARD)
    if not math.isfinite(value):
        logger.debug("formula retry with relaxed guards")
        value = evaluate(core, bindings, RELAXED_GUARD)
    return format_result(value)


# =============================================================================
# Rendering
# =============================================================================

def _wrap(node: Node, content: str) -> str:
    if isinstance(node, (BinOp, Frac, Pow)):
        return f"\\left({content}\\right)"
    return content


def render(node: Node, limit: Optional[int] = None, depth: int = 1) -> str:
    if limit is not None and depth > limit:
        return PLACEHOLDER
    if isinstance(node, Var):
        return node.name
    if isinstance(node, Const):
        return node.value
    if isinstance(node, BinOp):
        left = render(node.left, limit, depth + 1)
        right = render(node.right, limit, depth + 1)
        return f"{_wrap(node.left, left)} {node.op} {_wrap(node.right, right)}"
    if isinstance(node, Frac):
        return f"\\frac{{{render(node.num, limit, depth + 1)}}}{{{render(node.den, limit, depth + 1)}}}"
    if isinstance(node, Pow):
        base = render(node.base, limit, depth + 1)
        return f"{_wrap(node.base, base)}^{{{render(node.exp, limit, depth + 1)}}}"
    if isinstance(node, Func):
        return f"{node.name}\\left({render(node.arg, limit, depth + 1)}\\right)"
    raise TypeError(f"not a formula node: {node!r}")


def node_depth(node: Node) -> int:
    if isinstance(node, BinOp):
        return 1 + max(node_depth(node.left), node_depth(node.right))
    if isinstance(node, Frac):
        return 1 + max(node_depth(node.num), node_depth(node.den))
    if isinstance(node, Pow):
        return 1 + max(node_depth(node.base), node_depth(node.exp))
    if isinstance(node, Func):
        return 1 + node_depth(node.arg)
    return 1


# =============================================================================
# Synthesis
# =============================================================================

def build_params(rng: Rng, phase_terms: Sequence[str]) -> List[FormulaParam]:
    phases = list(phase_terms) or ["归一"]
    specs = list(BASE_PARAMS) + [
        (f"Φ{i + 1}", f"\\Phi_{{{i + 1}}}", f"阶段因子 · {term}") for i, term in enumerate(phases)
    ]
    return [FormulaParam(key, latex, format_value(rng), desc) for key, latex, desc in specs]


def synthesize(rng: Rng, params: Sequence[FormulaParam], policy: FormulaPolicy) -> Node:
    p_sum = (policy.p_op + policy.p_frac + policy.p_pow + policy.p_func) or 1.0
    p_op = policy.p_op / p_sum
    p_frac = policy.p_frac / p_sum
    p_pow = policy.p_pow / p_sum

    nodes: List[Node] = [Var(p.latex) for p in params if p.key not in NON_LEAF_KEYS]
    lo = min(policy.const_min, policy.const_max)
    hi = max(policy.const_min, policy.const_max)
    const_count = lo + int(rng() * (hi - lo + 1))
    for _ in range(const_count):
        nodes.append(Const(format_decimal(rng, 0.3, 6.8)))

    shuffle(nodes, rng)

    while len(nodes) > 1:
        right = nodes.pop()
        left = nodes.pop()
        choice = rng()
        node: Node
        if choice < p_op:
            node = BinOp(pick_weighted(OPS, policy.ops_w, rng), left, right)
        elif choice < p_op + p_frac:
            node = Frac(left, right)
        elif choice < p_op + p_frac + p_pow:
            node = Pow(left, right)
        else:
            op = pick_weighted(OPS, policy.ops_w, rng)
            node = BinOp(op, Func(pick_weighted(FUNCS, policy.funcs_w, rng), left), right)
        nodes.append(node)
        if rng() < policy.shuffle_p and len(nodes) > 1:
            shuffle(nodes, rng)

    return nodes[0] if nodes else Var("Q")


def build_formula_data(
    seed: int,
    phase_terms: Sequence[str],
    policy: Union[FormulaPolicy, Mapping[str, object], None] = None,
) -> FormulaData:
    if isinstance(policy, FormulaPolicy):
        policy = policy.to_dict()
    policy = build_formula_policy(policy)
    rng = Mulberry32((seed & U32) ^ FORMULA_SALT)

    params = build_params(rng, phase_terms)
    core = synthesize(rng, params, policy)
    omega = compute_omega(core, params)
    params = [replace(p, value=omega) if p.key == "Ω" else p for p in params]

    latex = f"\\Omega = {render(core)}"
    steps = tuple(f"\\Omega = {render(core, limit)}" for limit in range(1, node_depth(core) + 1))
    return FormulaData(latex=latex, steps=steps, params=tuple(params))
