import math
from dataclasses import replace

import pytest

from cybergua.bits import hex8
from cybergua.config import ConfigError, FormulaPolicy, Observation
from cybergua.model import (
    THETA_DIM,
    HistoryRecord,
    UniverseModel,
    apply_like,
    build_model,
    compute_reward,
    dashboard_metrics,
    default_policy_from_theta,
    derive_formula_seed,
    effective_theta16,
    evolve_model,
    features16,
    history_prior16,
    init_model,
    observation_from_signals,
    snapshot,
    theta_stability,
)


def record(score=80, omega="1.5", feats=None, feedback=0):
    return HistoryRecord(score=score, omega=omega, features16=tuple(feats or [0.5] * THETA_DIM),
                         feedback=feedback)


def test_init_model():
    m = init_model(salt=2 ** 32 + 3, now_ms=5)
    assert m.salt == 3
    assert m.run_count == 0
    assert m.theta16 == (0.5,) * THETA_DIM
    assert m.updated_at == 5
    assert m.liked_ratio == 0.0
    assert m.policy == default_policy_from_theta(m.theta16, 0, 0.0)


def test_fresh_salt_is_u32():
    assert 0 <= init_model().salt <= 0xFFFFFFFF


def test_default_policy_neutral_theta():
    p = default_policy_from_theta((0.5,) * THETA_DIM, 0, 0.0)
    assert p.p_frac == pytest.approx(0.22)
    assert p.p_pow == pytest.approx(0.2)
    assert p.p_func == pytest.approx(0.2)
    assert p.p_op == pytest.approx(0.38)
    assert p.shuffle_p == pytest.approx(0.38)
    assert (p.const_min, p.const_max) == (2, 6)
    assert p.ops_w == pytest.approx((0.9, 0.9, 0.9))


def test_default_policy_settles():
    fresh = default_policy_from_theta((0.5,) * THETA_DIM, 0, 0.0)
    settled = default_policy_from_theta((0.5,) * THETA_DIM, 500, 1.0)
    assert settled.shuffle_p < fresh.shuffle_p
    assert settled.p_frac < fresh.p_frac
    assert settled.const_min >= 1
    assert settled.const_max >= settled.const_min


def test_default_policy_tolerates_short_or_nan_theta():
    assert default_policy_from_theta([], 0, 0.0) == default_policy_from_theta((0.5,) * THETA_DIM, 0, 0.0)
    assert default_policy_from_theta([math.nan] * THETA_DIM, 0, 0.0) == \
        default_policy_from_theta((0.5,) * THETA_DIM, 0, 0.0)


def test_build_model_from_persisted_dict():
    m = build_model({"salt": 9, "runCount": 4, "theta16": [0.25] * THETA_DIM,
                     "likes": {"total": 2, "liked": 1}, "updated_at": 77})
    assert (m.salt, m.run_count, m.likes_total, m.likes_liked, m.updated_at) == (9, 4, 2, 1, 77)
    assert m.liked_ratio == 0.5
    assert m.policy == default_policy_from_theta(m.theta16, 4, 0.5)


def test_build_model_uses_stored_policy():
    m = build_model({"salt": 1, "theta16": [0.5] * THETA_DIM, "policy": {"pOp": 1, "pFrac": 0}})
    assert isinstance(m.policy, FormulaPolicy)
    assert m.policy.p_op == 1.0
    assert m.policy.p_frac == 0.0


def test_build_model_round_trip_keeps_identity():
    m = init_model(salt=42, now_ms=1)
    back = build_model(m.to_dict())
    assert (back.salt, back.run_count, back.theta16) == (m.salt, m.run_count, m.theta16)


@pytest.mark.parametrize("cfg", [
    {"theta16": [0.5] * THETA_DIM},
    {"salt": 1},
    {"salt": "abc", "theta16": [0.5] * THETA_DIM},
    {"salt": 1, "theta16": [0.5] * 15},
    {"salt": 1, "theta16": ["x"] * THETA_DIM},
    {"salt": 1, "theta16": [0.5] * THETA_DIM, "policy": [1]},
    {"salt": 1, "theta16": [0.5] * THETA_DIM, "likes": [1]},
    {"salt": 1, "theta16": [0.5] * THETA_DIM, "likes": {"total": "many"}},
    {"salt": 1, "theta16": "0.5"},
    [1, 2, 3],
    "model",
])
def test_build_model_rejects_malformed(cfg):
    with pytest.raises(ConfigError):
        build_model(cfg)


def test_snapshot():
    m = init_model(salt=5, now_ms=0)
    assert snapshot(m).theta16 == m.theta16
    s = snapshot(m, [0.1] * THETA_DIM)
    assert (s.salt, s.run_count, s.theta16) == (5, 0, (0.1,) * THETA_DIM)


def test_formula_seed_is_deterministic():
    m = init_model(salt=11, now_ms=0)
    a = derive_formula_seed(123, m, 456)
    assert a == derive_formula_seed(123, m, 456)
    assert 0 <= a <= 0xFFFFFFFF
    assert a != derive_formula_seed(124, m, 456)
    assert a != derive_formula_seed(123, m, 457)


def test_formula_seed_ignores_nan_theta_words():
    m = init_model(salt=11, now_ms=0)
    zeroed = build_model({"salt": 11, "theta16": [0.0] * THETA_DIM})
    nan_theta = UniverseModel(salt=11, run_count=0, theta16=(math.nan,) * THETA_DIM, policy=m.policy)
    assert derive_formula_seed(1, nan_theta, 2) == derive_formula_seed(1, zeroed, 2)


def test_features16_without_fusion_events():
    feats = features16([], (0.1, 0.2))
    assert len(feats) == THETA_DIM
    assert feats[:8] == [0.5] * 8
    assert feats[8:10] == [0.1, 0.2]
    assert feats[10:] == [0.5] * 6


def test_features16_from_run(engine_run):
    feats = features16(engine_run.trace, (0.3,) * 8)
    assert len(feats) == THETA_DIM
    assert all(0.0 <= x <= 1.0 for x in feats)
    assert feats[8:] == [0.3] * 8


def test_history_prior():
    assert history_prior16([]) is None
    assert history_prior16([record(feats=[0.5] * 3)]) is None
    prior = history_prior16([record(feats=[0.3] * THETA_DIM)])
    assert prior == pytest.approx([0.3] * THETA_DIM)


def test_history_prior_weights_liked_runs():
    liked = record(score=50, feats=[1.0] * THETA_DIM, feedback=1)
    disliked = record(score=50, feats=[0.0] * THETA_DIM, feedback=-1)
    prior = history_prior16([liked, disliked])
    assert prior[0] > 0.5


def test_effective_theta():
    m = init_model(salt=1, now_ms=0)
    assert effective_theta16(m, []) == m.theta16
    pulled = effective_theta16(m, [record(feats=[1.0] * THETA_DIM)])
    assert all(0.5 < x < 1.0 for x in pulled)


def test_reward_bounds():
    high = compute_reward(100, True, [50, 60, 70])
    low = compute_reward(0, False, [50, 60, 70])
    assert -1.0 <= low < high <= 1.0
    assert compute_reward(100, True, []) == pytest.approx(0.85)


def test_evolve_pulls_toward_good_run():
    m = init_model(salt=1, now_ms=0)
    nxt = evolve_model(m, record(score=100, feats=[1.0] * THETA_DIM), [], now_ms=10)
    assert nxt.run_count == 1
    assert nxt.updated_at == 10
    assert all(x > 0.5 for x in nxt.theta16)
    assert nxt.salt == m.salt
    assert m.run_count == 0


def test_evolve_pushes_away_from_bad_run():
    m = init_model(salt=1, now_ms=0)
    nxt = evolve_model(m, record(score=0, omega="\\infty", feats=[1.0] * THETA_DIM), [], now_ms=10)
    assert all(x < 0.5 for x in nxt.theta16)


def test_evolve_blends_history_prior_every_twenty_runs():
    base = init_model(salt=1, now_ms=0)
    m = UniverseModel(salt=1, run_count=19, theta16=base.theta16, policy=base.policy)
    hist = [record(score=90, feats=[0.9] * THETA_DIM) for _ in range(5)]
    rec = record(score=90, feats=[0.9] * THETA_DIM)
    at_twenty = evolve_model(m, rec, hist, now_ms=0)
    m2 = UniverseModel(salt=1, run_count=20, theta16=base.theta16, policy=base.policy)
    at_twenty_one = evolve_model(m2, rec, hist, now_ms=0)
    assert at_twenty.run_count == 20
    assert at_twenty.theta16[0] > at_twenty_one.theta16[0]


def test_apply_like():
    m = init_model(salt=1, now_ms=0)
    liked = apply_like(m, [1.0] * THETA_DIM, now_ms=3)
    assert (liked.likes_total, liked.likes_liked) == (1, 1)
    assert liked.liked_ratio == 1.0
    assert liked.run_count == m.run_count
    assert all(x == pytest.approx(0.5 + 0.5 * 0.065) for x in liked.theta16)
    assert liked.policy == default_policy_from_theta(liked.theta16, 0, 1.0)


def test_omega_finite():
    assert record(omega="1.5").omega_finite
    assert not record(omega="\\infty").omega_finite
    assert not record(omega="").omega_finite


def test_observation_from_signals():
    a = observation_from_signals(tz_hours=8, hardware_concurrency=8, language="zh-CN")
    b = observation_from_signals(tz_hours=8, hardware_concurrency=8, language="zh-CN")
    c = observation_from_signals(tz_hours=8, hardware_concurrency=8, language="en-US")
    assert isinstance(a, Observation)
    assert a == b
    assert a.hash != c.hash
    assert a.fp8 == c.fp8
    assert len(a.fp8) == 8
    assert all(0.0 <= x <= 1.0 for x in a.fp8)
    assert a.fp8[0] == pytest.approx(20 / 26)
    assert a.fp8[1] == pytest.approx(0.5)


@pytest.mark.parametrize("theta, expected", [
    ([0.5] * THETA_DIM, 0.0),
    ([1.0] + [0.0] * (THETA_DIM - 1), 1.0),
    ([0.5] * 8 + [0.0] * 8, 0.25),
    ([0.0] * THETA_DIM, 1.0),
    ([0.9, 0.1] * 3, 0.0),
    ([math.nan] * THETA_DIM, 0.0),
])
def test_theta_stability(theta, expected):
    assert theta_stability(theta) == pytest.approx(expected, abs=1e-12)


def test_dashboard_empty_history():
    m = init_model(salt=0xABC, now_ms=0)
    dash = dashboard_metrics(m, [])
    assert dash.recent == 0
    assert (dash.score_mean, dash.score_std) == (0.0, 0.0)
    assert dash.likes_ratio01 == 0.0
    assert dash.omega_finite_ratio01 == 0.0
    assert dash.feedback_bias == 0.0
    assert dash.progress01 == 0.0
    assert dash.recent_signature == hex8(0xABC)


def test_dashboard_likes_fall_back_to_history_feedback():
    m = init_model(salt=1, now_ms=0)
    assert m.likes_total == 0
    history = [record(feedback=1), record(feedback=-1), record(feedback=1), record(feedback=0)]
    dash = dashboard_metrics(m, history)
    assert dash.likes_ratio01 == pytest.approx(2 / 3)
    assert (dash.liked, dash.disliked) == (2, 1)
    assert dash.feedback_bias == pytest.approx(1 / 4)


def test_dashboard_model_likes_take_precedence():
    m = replace(init_model(salt=1, now_ms=0), likes_total=4, likes_liked=1)
    dash = dashboard_metrics(m, [record(feedback=1), record(feedback=1)])
    assert dash.likes_ratio01 == pytest.approx(0.25)


def test_dashboard_scores_and_omega():
    history = [record(score=60, omega="\\infty", feedback=-1), record(score=80, feedback=-1),
               record(score=100)]
    history[0] = replace(history[0], signature="beef")
    dash = dashboard_metrics(init_model(salt=1, now_ms=0), history)
    assert dash.score_mean == pytest.approx(80.0)
    assert dash.score_std == pytest.approx(math.sqrt(800 / 3))
    assert dash.omega_finite_ratio01 == pytest.approx(2 / 3)
    assert dash.feedback_bias == pytest.approx(-2 / 3)
    assert dash.recent_signature == "beef"


def test_dashboard_window_and_progress():
    m = replace(init_model(salt=1, now_ms=0), run_count=300)
    history = [record(score=100)] * 20 + [record(score=0)] * 5
    dash = dashboard_metrics(m, history)
    assert dash.recent == 20
    assert dash.score_mean == 100.0
    assert dash.progress01 == 1.0
    assert dashboard_metrics(replace(m, run_count=30), []).progress01 == pytest.approx(0.25)
