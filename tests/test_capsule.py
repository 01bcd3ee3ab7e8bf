import copy
import json

import pytest

from cybergua.almanac import Pillars
from cybergua.capsule import (
    CAPSULE_SCHEMA_VERSION,
    ENGINE_VERSION,
    CapsuleError,
    build_run_capsule,
    capsule_hash,
    determinism_self_test,
    load_run_inputs,
    replay_capsule,
)
from cybergua.config import Extras
from cybergua.engine import DivinationInput, divine_with_trace
from cybergua.formula import build_formula_data
from cybergua.model import derive_formula_seed, init_model, observation_from_signals, snapshot
from cybergua.presentation import phase_terms

from conftest import FixedCalendar

ENTROPY = 999


@pytest.fixture
def capsule(when, calendar):
    inp = DivinationInput(question="项目上线顺利吗", when=when, nickname="阿青")
    model = init_model(salt=7, now_ms=0)
    extras = Extras(obs=observation_from_signals(tz_hours=8, language="zh-CN"), model=snapshot(model))
    run = divine_with_trace(inp, ENTROPY, None, extras, calendar)
    seed = derive_formula_seed(ENTROPY, model, extras.obs.hash)
    phases = phase_terms(run.trace)
    formula = build_formula_data(seed, phases, model.policy)
    built = build_run_capsule("abcd1234", inp, ENTROPY, run, extras, formula=formula, formula_seed=seed,
                              policy=model.policy, phases=phases, created_at=1)
    # as if written to disk and read back
    return json.loads(json.dumps(built, ensure_ascii=False))


def test_capsule_shape(capsule):
    assert capsule["v"] == CAPSULE_SCHEMA_VERSION
    assert capsule["version"] == ENGINE_VERSION
    assert capsule["hid"] == "abcd1234"
    assert capsule["createdAt"] == 1
    assert capsule["input"]["nickname"] == "阿青"
    assert capsule["input"]["datetimeISO"] == "2024-03-15T10:30:00"
    assert capsule["extra"]["entropy"] == ENTROPY
    assert capsule["extra"]["rootDigest"] == capsule["trace"][-1]["root_digest"]
    assert capsule["result"]["formulaLatex"].startswith("\\Omega = ")
    assert capsule["model"]["salt"] == 7
    assert "policy" in capsule["model"]
    assert len(capsule["config"]["source_hash"]) == 64


def test_capsule_hash_covers_content_not_bookkeeping(capsule):
    h = capsule["capsule_hash"]
    assert capsule_hash(capsule) == h
    assert capsule_hash(dict(capsule, createdAt=2)) == h
    assert capsule_hash(dict(capsule, capsule_hash="0" * 64)) == h
    assert capsule_hash(dict(capsule, hid="ffffffff")) != h
    assert capsule["integrity_boundary"]["excluded_fields"] == ["capsule_hash", "createdAt"]


def test_load_run_inputs(capsule, when):
    ri = load_run_inputs(capsule)
    assert ri.inp == DivinationInput(question="项目上线顺利吗", when=when, nickname="阿青")
    assert ri.entropy == ENTROPY
    assert ri.extras.model.salt == 7
    assert ri.formula_seed == capsule["extra"]["formulaSeed"]
    assert ri.phases == capsule["extra"]["phases"]


def test_replay_ok(capsule, pillars):
    res = replay_capsule(capsule, FixedCalendar(pillars))
    assert res.ok
    assert res.mismatch is None


def test_replay_detects_other_calendar(capsule):
    other = FixedCalendar(Pillars(year="乙巳", month="丁亥", day="己未", time="辛酉"))
    assert not replay_capsule(capsule, other).ok


def test_replay_detects_tampered_score(capsule, calendar):
    capsule["result"]["score"] = (capsule["result"]["score"] + 1) % 101
    res = replay_capsule(capsule, calendar)
    assert not res.ok
    assert res.mismatch["reason"] == "score_mismatch"


def test_replay_detects_tampered_event(capsule, calendar):
    capsule["trace"][3]["hash"] = "deadbeef"
    res = replay_capsule(capsule, calendar)
    assert res.mismatch == {"reason": "event_hash_mismatch", "event_index": 3}


def test_replay_detects_dropped_event(capsule, calendar):
    del capsule["trace"][-1]
    res = replay_capsule(capsule, calendar)
    assert res.mismatch["reason"] == "trace_length_mismatch"


def test_replay_detects_tampered_formula(capsule, calendar):
    capsule["result"]["formulaLatex"] = "\\Omega = Q"
    res = replay_capsule(capsule, calendar)
    assert res.mismatch["reason"] == "formula_mismatch"


@pytest.mark.parametrize("mutate", [
    lambda c: c.pop("input"),
    lambda c: c.pop("extra"),
    lambda c: c["extra"].update(entropy="lots"),
    lambda c: c["input"].update(datetimeISO="yesterday"),
    lambda c: c["config"].update(weights={"luck": 1}),
    lambda c: c["model"].pop("salt"),
    lambda c: c["config"].update(policy=[1]),
    lambda c: c["config"].update(weights=[0.2, 0.2]),
    lambda c: c.update(config="weights"),
    lambda c: c.update(model=[7]),
    lambda c: c.update(input="项目上线顺利吗"),
    lambda c: c["obs"].update(fp8="0.1"),
    lambda c: c.update(obs=[1, 2]),
    lambda c: c.update(result=[1]),
    lambda c: c.update(trace="E0001"),
])
def test_malformed_capsule_rejected(capsule, calendar, mutate):
    bad = copy.deepcopy(capsule)
    mutate(bad)
    with pytest.raises(CapsuleError):
        replay_capsule(bad, calendar)


def test_capsule_error_is_value_error():
    with pytest.raises(ValueError):
        load_run_inputs({})


@pytest.mark.parametrize("capsule_json", [[], "capsule", 7, None])
def test_non_object_capsule_rejected(capsule_json):
    with pytest.raises(CapsuleError):
        load_run_inputs(capsule_json)


def test_determinism_self_test(when, calendar):
    inp = DivinationInput(question="test", when=when)
    res = determinism_self_test(inp, 5, None, None, calendar)
    assert res.ok
    assert calendar.calls == 2
