from dataclasses import replace

import pytest

from cybergua.trace import (
    Kind,
    Phase,
    TraceLedger,
    event_from_dict,
    event_to_dict,
    fold_root,
    stable_data,
    verify_chain,
    verify_group_digests,
    verify_integrity,
    verify_root_digest,
)

GENESIS = "0badf00d"


def _ledger_trace():
    ledger = TraceLedger(12345, GENESIS)
    ledger.group_start(Phase.OMEN, "outer", {"n": 2})
    ledger.emit(Phase.OMEN, "first", {"x": 0.5})
    ledger.group_start(Phase.OMEN, "inner")
    ledger.emit(Phase.OMEN, "second", fp=[0.1] * 8)
    ledger.group_end(Phase.OMEN, "inner done")
    ledger.group_end(Phase.OMEN, "outer done", {"h": ledger.head})
    ledger.emit(Phase.SEAL, "tail")
    return ledger, ledger.finalize()


def test_stable_data_collation_and_fingerprint():
    assert stable_data({"b": 1, "A": 2, "a": 3}, None) == "a=3|A=2|b=1"
    assert stable_data(None, [0.5, 0.25]) == "fp=0.5,0.25"
    assert stable_data({"k": "v"}, [1.0]) == "k=v|fp=1"
    assert stable_data(None, None) == ""


def test_ids_depth_and_clock():
    _, trace = _ledger_trace()
    assert [e.id for e in trace] == [f"E{i:04d}" for i in range(1, 8)]
    assert [e.depth for e in trace] == [0, 1, 1, 2, 1, 0, 0]
    assert all(b.t > a.t for a, b in zip(trace, trace[1:]))
    assert trace[0].prev == GENESIS


def test_chain_group_and_root_verify():
    ledger, trace = _ledger_trace()
    assert verify_chain(trace) == (True, None)
    assert verify_chain(trace, GENESIS) == (True, None)
    assert verify_group_digests(trace) == (True, None)
    assert verify_root_digest(trace)
    assert trace[0].root_digest == trace[-1].root_digest == ledger.root_digest == fold_root(trace)
    assert trace[0].group_digest is not None and trace[0].group_digest == trace[5].group_digest
    assert trace[2].group_digest == trace[4].group_digest != trace[0].group_digest


def test_digests_never_enter_event_data():
    _, trace = _ledger_trace()
    for e in trace:
        assert "group_digest" not in (e.data or {})
        assert "root_digest" not in (e.data or {})


def test_tampering_is_located():
    _, trace = _ledger_trace()
    tampered = list(trace)
    tampered[3] = replace(tampered[3], message="forged")
    assert verify_chain(tampered) == (False, 3)
    assert not verify_integrity(tampered)["chain_ok"]


def test_group_digest_mismatch_detected():
    _, trace = _ledger_trace()
    tampered = list(trace)
    tampered[2] = replace(tampered[2], group_digest="00000000")
    ok, idx = verify_group_digests(tampered)
    assert not ok and idx == 2


def test_group_end_never_goes_negative():
    ledger = TraceLedger(1, GENESIS)
    ledger.group_end(Phase.SEAL, "stray")
    ledger.emit(Phase.SEAL, "after")
    trace = ledger.finalize()
    assert [e.depth for e in trace] == [0, 0]
    assert trace[0].group_digest is None


def test_finalized_ledger_rejects_events():
    ledger, _ = _ledger_trace()
    with pytest.raises(RuntimeError):
        ledger.emit(Phase.SEAL, "late")


def test_same_seed_same_trace():
    _, a = _ledger_trace()
    _, b = _ledger_trace()
    assert [e.hash for e in a] == [e.hash for e in b]


def test_event_dict_roundtrip_keeps_hashes():
    _, trace = _ledger_trace()
    back = [event_from_dict(event_to_dict(e)) for e in trace]
    assert back == trace
    assert back[3].kind == Kind.EVENT
    assert verify_integrity(back) == {
        "chain_ok": True,
        "chain_first_bad_index": None,
        "groups_ok": True,
        "group_first_bad_index": None,
        "root_ok": True,
    }
