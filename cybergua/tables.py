"""pandas views over a finished trace and formula, for the dashboard and for export."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from cybergua.factors import OUTPUT_MESSAGE
from cybergua.formula import FormulaData
from cybergua.trace import Kind, TraceEvent

TRACE_COLUMNS = ["id", "t", "depth", "kind", "phase", "message", "data", "hash", "prev", "group_digest"]
FACTOR_COLUMNS = ["factor", "phase", "tag", "detail", "s", "sig"]
PHASE_COLUMNS = ["phase", "events", "groups", "first_t", "last_t", "span"]
PARAM_COLUMNS = ["key", "latex", "value", "desc"]


def _short(h: Optional[str], n: int = 8) -> Optional[str]:
    return h[:n] if h else h


def trace_frame(trace: Sequence[TraceEvent]) -> pd.DataFrame:
    rows = [{
        "id": e.id,
        "t": e.t,
        "depth": e.depth,
        "kind": e.kind,
        "phase": e.phase,
        "message": e.message,
        "data": " · ".join(f"{k}={v}" for k, v in (e.data or {}).items()),
        "hash": e.hash,
        "prev": e.prev,
        "group_digest": e.group_digest,
    } for e in trace]
    return pd.DataFrame(rows, columns=TRACE_COLUMNS)


def factor_frame(trace: Sequence[TraceEvent]) -> pd.DataFrame:
    """One row per factor: its group title, detail line, scalar and signature."""
    rows: List[Dict[str, Any]] = []
    group: Optional[TraceEvent] = None
    prev: Optional[TraceEvent] = None
    for e in trace:
        if e.kind == Kind.GROUP_START:
            group = e
        elif e.kind == Kind.EVENT and e.message == OUTPUT_MESSAGE and group is not None:
            data = e.data or {}
            rows.append({
                "factor": group.message,
                "phase": e.phase,
                "tag": (group.data or {}).get("tag"),
                "detail": prev.message if prev is not None and prev is not group else "",
                "s": data.get("s"),
                "sig": data.get("sig"),
            })
        prev = e
    return pd.DataFrame(rows, columns=FACTOR_COLUMNS)


def phase_summary(trace: Sequence[TraceEvent]) -> pd.DataFrame:
    """Per phase: plain event count, group count and logical-clock span, in first-seen order."""
    df = trace_frame(trace)
    if df.empty:
        return pd.DataFrame(columns=PHASE_COLUMNS)
    out = (
        df.assign(
            is_event=df["kind"].eq(Kind.EVENT).astype(int),
            is_group=df["kind"].eq(Kind.GROUP_START).astype(int),
        )
        .groupby("phase", sort=False)
        .agg(events=("is_event", "sum"), groups=("is_group", "sum"),
             first_t=("t", "min"), last_t=("t", "max"))
        .reset_index()
    )
    out["span"] = out["last_t"] - out["first_t"]
    return out[PHASE_COLUMNS]


def params_frame(formula: Optional[FormulaData]) -> pd.DataFrame:
    if formula is None:
        return pd.DataFrame(columns=PARAM_COLUMNS)
    return pd.DataFrame([{"key": p.key, "latex": p.latex, "value": p.value, "desc": p.desc}
                         for p in formula.params], columns=PARAM_COLUMNS)


def integrity_frame(trace: Sequence[TraceEvent], n: int = 12) -> pd.DataFrame:
    """Tail of the chain with shortened hashes, like an audit tail."""
    return pd.DataFrame([{
        "id": e.id,
        "kind": e.kind,
        "hash": _short(e.hash),
        "prev": _short(e.prev),
        "group_digest": _short(e.group_digest),
        "root_digest": _short(e.root_digest),
    } for e in list(trace)[-n:]])
