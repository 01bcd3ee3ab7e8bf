import math

import pytest

from cybergua.config import FormulaPolicy
from cybergua.formula import (
    INFINITY,
    LIMIT_LITERAL,
    PLACEHOLDER,
    RELAXED_GUARD,
    BinOp,
    Const,
    FormulaParam,
    Frac,
    Func,
    Pow,
    Var,
    build_formula_data,
    compute_omega,
    evaluate,
    format_result,
    node_depth,
    parse_literal,
    render,
    safe_pow,
    STRICT_GUARD,
)


def test_same_seed_same_formula():
    a = build_formula_data(42, ["归一"])
    b = build_formula_data(42, ["归一"])
    assert a.latex == b.latex
    assert a.steps == b.steps
    assert a.params == b.params


def test_different_seed_different_formula():
    assert build_formula_data(42, ["归一"]).latex != build_formula_data(43, ["归一"]).latex


def test_params_shape():
    data = build_formula_data(7, ["易经", "融合"])
    keys = [p.key for p in data.params]
    assert keys.count("Ω") == 1
    assert "Φ1" in keys and "Φ2" in keys
    assert data.param("Φ2").desc.endswith("融合")
    assert data.omega == data.param("Ω").value
    assert data.omega


def test_empty_phase_terms_fall_back():
    keys = [p.key for p in build_formula_data(7, []).params]
    assert "Φ1" in keys


def test_steps_reveal_progressively():
    data = build_formula_data(1234, ["归一"])
    assert data.steps[-1] == data.latex
    assert all(s.startswith("\\Omega = ") for s in data.steps)
    if len(data.steps) > 1:
        assert PLACEHOLDER in data.steps[0]


def test_policy_object_and_dict_agree():
    a = build_formula_data(99, ["归一"], FormulaPolicy())
    b = build_formula_data(99, ["归一"], None)
    c = build_formula_data(99, ["归一"], FormulaPolicy().to_dict())
    assert a == b == c


def test_policy_changes_structure():
    only_frac = {"pOp": 0, "pFrac": 1, "pPow": 0, "pFunc": 0, "constMin": 0, "constMax": 0}
    data = build_formula_data(5, ["归一"], only_frac)
    assert "\\frac" in data.latex
    assert "\\cdot" not in data.latex


@pytest.mark.parametrize("literal, expected", [
    ("\\frac{3}{4}", 0.75),
    ("\\sqrt{16}", 4.0),
    ("\\left(3\\right)^{2}", 9.0),
    ("\\pi", math.pi),
    ("e", math.e),
    (LIMIT_LITERAL, 1.0),
    (INFINITY, 10000.0),
    ("12.5", 12.5),
    ("3.25abc", 3.25),
])
def test_parse_literal(literal, expected):
    assert parse_literal(literal) == pytest.approx(expected)


def test_parse_literal_unknown_is_nan():
    assert math.isnan(parse_literal("\\alpha"))


def test_zero_denominator_is_guarded():
    node = Frac(Var("Q"), BinOp("-", Var("Q"), Var("Q")))
    value = evaluate(node, {"Q": 3.0})
    assert math.isfinite(value)
    assert value == STRICT_GUARD.clamp
    assert evaluate(Frac(Const("1"), Const("0")), {}, RELAXED_GUARD) == pytest.approx(1e4)


def test_omega_for_zero_denominator_is_finite_text():
    params = [FormulaParam("Q", "Q", "0", "问题向量")]
    omega = compute_omega(Frac(Const("1"), Var("Q")), params)
    assert omega != INFINITY
    assert "10^{6}" in omega


def test_guarded_functions():
    assert evaluate(Func("\\log", Const("0")), {}) == pytest.approx(math.log(1e-6))
    assert evaluate(Func("\\exp", Const("1000")), {}) == pytest.approx(math.exp(7.5))
    assert evaluate(Func("\\tanh", Const("50")), {}) == pytest.approx(math.tanh(8))
    assert math.isnan(evaluate(Var("missing"), {}))


def test_safe_pow():
    assert safe_pow(-2.0, 3.0, STRICT_GUARD) == pytest.approx(-8.0)
    assert safe_pow(-2.0, 2.0, STRICT_GUARD) == pytest.approx(4.0)
    assert math.isnan(safe_pow(-2.0, 0.5, STRICT_GUARD))
    assert safe_pow(0.0, 3.0, STRICT_GUARD) == 0.0
    assert safe_pow(10.0, 100.0, STRICT_GUARD) == pytest.approx(10.0 ** 6.5)


def test_evaluate_rejects_non_nodes():
    with pytest.raises(TypeError):
        evaluate("Q", {})


@pytest.mark.parametrize("value, text", [
    (float("nan"), INFINITY),
    (float("inf"), INFINITY),
    (0.0, "0"),
    (1.5, "1.5"),
    (2.0, "2"),
    (10.0, "10"),
    (-0.25, "-0.25"),
    (123456.0, "1.2346\\times 10^{5}"),
    (0.00001234, "1.2340\\times 10^{-5}"),
])
def test_format_result(value, text):
    assert format_result(value) == text


def test_format_result_subnormal():
    assert format_result(5e-320).endswith("10^{-320}")


def test_render_and_depth():
    node = BinOp("+", Var("Q"), Frac(Var("T"), Const("2")))
    assert node_depth(node) == 3
    assert render(node) == "Q + \\left(\\frac{T}{2}\\right)"
    assert render(node, 1) == f"{PLACEHOLDER} + \\left({PLACEHOLDER}\\right)"
    assert render(Pow(Var("N"), Const("2"))) == "N^{2}"
    assert render(Func("\\sin", Var("Q"))) == "\\sin\\left(Q\\right)"
