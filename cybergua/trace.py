"""
Hash-chained trace ledger.

Every event hash is fnv1a32(prev | own canonical payload), so each event can be
re-derived on its own. Groups carry a digest over their boundary hashes and
every hash sealed inside them; the first and last events carry a root digest
folding the whole log in emission order.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from cybergua.bits import fnv1a32, hex8, js_number, round4
from cybergua.rng import XorShift32

DataValue = Union[str, int, float]


class Phase:
    OBSERVE = "观测"
    MODEL = "模型"
    TIME = "时间"
    TEXT = "文字"
    ICHING = "易经"
    NUMEROLOGY = "数理"
    OMEN = "天机"
    FUSION = "融合"
    SEAL = "归一"

    ALL = (OBSERVE, MODEL, TIME, TEXT, ICHING, NUMEROLOGY, OMEN, FUSION, SEAL)


class Kind:
    GROUP_START = "group_start"
    GROUP_END = "group_end"
    EVENT = "event"


EVENT_STEP = (80, 220)
GROUP_STEP = (160, 360)


@dataclass(frozen=True)
class TraceEvent:
    id: str
    t: int
    depth: int
    kind: str
    phase: str
    message: str
    data: Optional[Dict[str, DataValue]]
    fp: Optional[Tuple[float, ...]]
    prev: str
    hash: str
    group_digest: Optional[str] = None
    root_digest: Optional[str] = None


@dataclass
class _Frame:
    depth: int
    start_index: int
    start_hash: str
    acc: int


def collate_key(key: str) -> Tuple[str, str]:
    # Case-insensitive order, lowercase first on ties.
    return key.casefold(), key.swapcase()


def stable_data(data: Optional[Mapping[str, DataValue]], fp: Optional[Sequence[float]]) -> str:
    base = ""
    if data:
        base = "|".join(f"{k}={value_text(data[k])}" for k in sorted(data, key=collate_key))
    fp_str = ""
    if fp:
        fp_str = "fp=" + ",".join(js_number(round4(float(n))) for n in fp)
    if not base:
        return fp_str
    if not fp_str:
        return base
    return f"{base}|{fp_str}"


def value_text(v: DataValue) -> str:
    if isinstance(v, str):
        return v
    return js_number(v)


def canonical_payload(prev: str, t: int, depth: int, kind: str, phase: str, message: str,
                      data: Optional[Mapping[str, DataValue]], fp: Optional[Sequence[float]]) -> str:
    return f"{prev}|t={t}|d={depth}|k={kind}|p={phase}|m={message}|{stable_data(data, fp)}"


def event_hash(e: TraceEvent, prev: Optional[str] = None) -> str:
    p = e.prev if prev is None else prev
    return hex8(fnv1a32(canonical_payload(p, e.t, e.depth, e.kind, e.phase, e.message, e.data, e.fp)))


def fold(acc: int, h: str) -> int:
    return fnv1a32(f"{hex8(acc)}|{h}")


def group_digest(start_hash: str, acc: int, end_hash: str) -> str:
    return hex8(fnv1a32(f"{start_hash}|{hex8(acc)}|{end_hash}"))


class TraceLedger:
    """
    Append-only builder. Open groups live on an owned stack of frames that
    index into the event list; digests are attached by replacing the frozen
    boundary records.
    """

    def __init__(self, trace_seed: int, genesis: str) -> None:
        self.genesis = genesis
        self._rng = XorShift32(trace_seed)
        self._events: List[TraceEvent] = []
        self._stack: List[_Frame] = []
        self._depth = 0
        self._t = 0
        self._seq = 0
        self._prev = genesis
        self._root_acc = fnv1a32(genesis)
        self._sealed = False

    @property
    def head(self) -> str:
        return self._prev

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def events(self) -> List[TraceEvent]:
        return list(self._events)

    def noise(self) -> float:
        """Draw from the trace stream (timing and decoration only)."""
        return self._rng()

    def group_start(self, phase: str, title: str, data: Optional[Dict[str, DataValue]] = None,
                    fp: Optional[Sequence[float]] = None) -> TraceEvent:
        return self._push(Kind.GROUP_START, phase, title, data, fp)

    def group_end(self, phase: str, title: str, data: Optional[Dict[str, DataValue]] = None,
                  fp: Optional[Sequence[float]] = None) -> TraceEvent:
        return self._push(Kind.GROUP_END, phase, title, data, fp)

    def emit(self, phase: str, message: str, data: Optional[Dict[str, DataValue]] = None,
             fp: Optional[Sequence[float]] = None) -> TraceEvent:
        return self._push(Kind.EVENT, phase, message, data, fp)

    def _push(self, kind: str, phase: str, message: str, data: Optional[Dict[str, DataValue]],
              fp: Optional[Sequence[float]]) -> TraceEvent:
        if self._sealed:
            raise RuntimeError("trace ledger already finalized")
        if kind == Kind.GROUP_END:
            self._depth = max(0, self._depth - 1)

        lo, span = EVENT_STEP if kind == Kind.EVENT else GROUP_STEP
        self._t += lo + int(self._rng() * span)
        self._seq += 1

        fp_t = tuple(float(x) for x in fp) if fp is not None else None
        data_c = dict(data) if data is not None else None
        prev = self._prev
        h = hex8(fnv1a32(canonical_payload(prev, self._t, self._depth, kind, phase, message, data_c, fp_t)))
        self._prev = h

        index = len(self._events)
        evt = TraceEvent(
            id=f"E{self._seq:04d}",
            t=self._t,
            depth=self._depth,
            kind=kind,
            phase=phase,
            message=message,
            data=data_c,
            fp=fp_t,
            prev=prev,
            hash=h,
        )
        self._events.append(evt)

        self._root_acc = fold(self._root_acc, h)
        for frame in self._stack:
            frame.acc = fold(frame.acc, h)

        if kind == Kind.GROUP_START:
            self._stack.append(_Frame(self._depth, index, h, fnv1a32(h)))
            self._depth += 1
        elif kind == Kind.GROUP_END:
            for i in range(len(self._stack) - 1, -1, -1):
                frame = self._stack[i]
                if frame.depth == self._depth:
                    del self._stack[i]
                    digest = group_digest(frame.start_hash, frame.acc, h)
                    self._events[frame.start_index] = replace(self._events[frame.start_index], group_digest=digest)
                    self._events[index] = replace(self._events[index], group_digest=digest)
                    break
        return self._events[index]

    @property
    def root_digest(self) -> str:
        return hex8(self._root_acc)

    def finalize(self) -> List[TraceEvent]:
        if not self._sealed and self._events:
            root = self.root_digest
            self._events[0] = replace(self._events[0], root_digest=root)
            self._events[-1] = replace(self._events[-1], root_digest=root)
        self._sealed = True
        return list(self._events)


# =============================================================================
# Verification
# =============================================================================

def verify_chain(trace: Sequence[TraceEvent], genesis: Optional[str] = None) -> Tuple[bool, Optional[int]]:
    if not trace:
        return True, None
    prev = trace[0].prev if genesis is None else genesis
    for idx, e in enumerate(trace):
        if e.prev != prev or e.hash != event_hash(e, prev):
            return False, idx
        prev = e.hash
    return True, None


def group_spans(trace: Sequence[TraceEvent]) -> List[Tuple[int, int]]:
    """Matched (start, end) index pairs, resolved the way the ledger nests them."""
    spans: List[Tuple[int, int]] = []
    open_: List[Tuple[int, int]] = []
    for idx, e in enumerate(trace):
        if e.kind == Kind.GROUP_START:
            open_.append((e.depth, idx))
        elif e.kind == Kind.GROUP_END:
            for i in range(len(open_) - 1, -1, -1):
                if open_[i][0] == e.depth:
                    spans.append((open_.pop(i)[1], idx))
                    break
    return spans


def verify_group_digests(trace: Sequence[TraceEvent]) -> Tuple[bool, Optional[int]]:
    for start, end in group_spans(trace):
        acc = fnv1a32(trace[start].hash)
        for e in trace[start + 1:end + 1]:
            acc = fold(acc, e.hash)
        expected = group_digest(trace[start].hash, acc, trace[end].hash)
        if trace[start].group_digest != expected or trace[end].group_digest != expected:
            return False, start
    return True, None


def fold_root(trace: Sequence[TraceEvent], genesis: Optional[str] = None) -> str:
    if not trace:
        return hex8(fnv1a32(genesis or ""))
    g = trace[0].prev if genesis is None else genesis
    acc = fnv1a32(g)
    for e in trace:
        acc = fold(acc, e.hash)
    return hex8(acc)


def verify_root_digest(trace: Sequence[TraceEvent]) -> bool:
    if not trace:
        return True
    root = fold_root(trace)
    return trace[0].root_digest == root and trace[-1].root_digest == root


def verify_integrity(trace: Sequence[TraceEvent]) -> Dict[str, Any]:
    chain_ok, chain_idx = verify_chain(trace)
    groups_ok, group_idx = verify_group_digests(trace)
    return {
        "chain_ok": chain_ok,
        "chain_first_bad_index": chain_idx,
        "groups_ok": groups_ok,
        "group_first_bad_index": group_idx,
        "root_ok": verify_root_digest(trace),
    }


def event_to_dict(e: TraceEvent) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": e.id,
        "t": e.t,
        "depth": e.depth,
        "kind": e.kind,
        "phase": e.phase,
        "message": e.message,
        "prev": e.prev,
        "hash": e.hash,
    }
    if e.data is not None:
        out["data"] = dict(e.data)
    if e.fp is not None:
        out["fp"] = list(e.fp)
    if e.group_digest is not None:
        out["group_digest"] = e.group_digest
    if e.root_digest is not None:
        out["root_digest"] = e.root_digest
    return out


def event_from_dict(d: Mapping[str, Any]) -> TraceEvent:
    fp = d.get("fp")
    return TraceEvent(
        id=str(d["id"]),
        t=int(d["t"]),
        depth=int(d["depth"]),
        kind=str(d["kind"]),
        phase=str(d["phase"]),
        message=str(d["message"]),
        data=dict(d["data"]) if d.get("data") is not None else None,
        fp=tuple(float(x) for x in fp) if fp is not None else None,
        prev=str(d["prev"]),
        hash=str(d["hash"]),
        group_digest=d.get("group_digest"),
        root_digest=d.get("root_digest"),
    )
