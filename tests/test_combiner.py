import pytest

from cybergua.combiner import (
    effective_weights,
    factor_gate,
    fuse,
    fusion_iterations,
    nonlinear_combine,
    remap_to_100,
    sigmoid,
    theta_at,
)
from cybergua.config import DimensionWeights
from cybergua.dimensions import DimensionScores
from cybergua.trace import Kind, Phase, TraceLedger, verify_group_digests


def test_theta_at_defaults_to_neutral():
    assert theta_at((), 3) == 0.5
    assert theta_at((float("nan"),), 0) == 0.5
    assert theta_at((2.0,), 0) == 1.0


def test_effective_weights_neutral_theta_is_normalized_base():
    eff = effective_weights(DimensionWeights(), ())
    assert sum(eff.values()) == pytest.approx(1.0)
    assert eff["time"] == pytest.approx(0.28)
    assert eff["entropy"] == pytest.approx(0.10)


def test_effective_weights_follow_theta():
    theta = [0.5] * 16
    theta[4] = 1.0
    eff = effective_weights(DimensionWeights(), theta)
    assert eff["time"] > 0.28


def test_effective_weights_all_zero_does_not_divide_by_zero():
    eff = effective_weights(DimensionWeights(0, 0, 0, 0, 0), ())
    assert all(v == 0 for v in eff.values())


def test_nonlinear_combine_midpoint():
    assert sigmoid(0) == 0.5
    scores = DimensionScores(0.5, 0.5, 0.5, 0.5, 0.5)
    assert nonlinear_combine(scores, effective_weights(DimensionWeights(), ())) == pytest.approx(0.5)


def test_nonlinear_combine_is_monotone():
    w = effective_weights(DimensionWeights(), ())
    low = nonlinear_combine(DimensionScores(0.2, 0.2, 0.2, 0.2, 0.2), w)
    high = nonlinear_combine(DimensionScores(0.8, 0.8, 0.8, 0.8, 0.8), w)
    assert 0.0 <= low < 0.5 < high <= 1.0


def test_factor_gate_missing_observation_is_neutral():
    base = factor_gate(0.4, 0.6, 0.3, (), 0.5)
    assert factor_gate(0.4, 0.6, 0.3, (), None) == base
    assert factor_gate(0.4, 0.6, 0.3, (), float("nan")) == base
    assert base == pytest.approx(0.23 + 0.4 * 0.28 + 0.6 * 0.2 + 0.3 * 0.12)


@pytest.mark.parametrize("score01, jitter, expected", [
    (0.0, 0.0, 0),
    (1.0, 1.0, 100),
    (0.5, 0.5, 50),
    (float("nan"), 0.5, 50),
    (-4.0, 0.9, 2),
    (7.0, 0.1, 98),
])
def test_remap_to_100_bounds(score01, jitter, expected):
    assert remap_to_100(score01, jitter) == expected


def test_fusion_iterations_range():
    assert fusion_iterations(0.0, (), 0) == 18
    assert fusion_iterations(0.99, [1.0] * 16, 10_000) == 34
    assert fusion_iterations(0.0, [0.0] * 16, 0) >= 12


def test_fuse_emits_closed_fusion_group():
    ledger = TraceLedger(3, "00000000")
    scores = DimensionScores(0.6, 0.5, 0.7, 0.55, 0.4)
    combined = fuse(ledger, scores, DimensionWeights(), (), 0.6, [0.5] * 8, 0.3, None, 0, 1, 2, 3)
    trace = ledger.finalize()
    assert 0.0 <= combined <= 1.0
    assert trace[0].kind == Kind.GROUP_START and trace[0].phase == Phase.FUSION
    assert trace[-1].message == "融合完毕"
    assert any(e.message == "融合评分(0..1)" for e in trace)
    assert verify_group_digests(trace) == (True, None)
