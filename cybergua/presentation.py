"""Markdown/LaTeX views used while a run is streamed and once it has settled."""

from __future__ import annotations

import itertools
import json
import re
from typing import Any, List, Mapping, Optional, Sequence

from cybergua.formula import PLACEHOLDER, FormulaData, FormulaParam
from cybergua.trace import Kind, TraceEvent, collate_key, value_text

COMPUTING = "computing"
RESULT = "result"

DEFAULT_PHASE_TERMS = ("易经", "融合", "归一")
WAITING_SCIENCE = "## 现代块\n\n等待推演信号..."
MAX_VALUE_CHARS = 160

_NUMBER_RE = re.compile(r"\d+(\.\d+)?")


def _ratio(visible: int, total: int) -> float:
    return visible / total if total > 0 else 0.0


def _display_block(latex: str) -> str:
    return "\n".join(["", "", "$$", latex, "$$"])


def mask_numbers(latex: str) -> str:
    """Replace every numeric literal with c_{1}, c_{2}, ... in reading order."""
    counter = itertools.count(1)
    return _NUMBER_RE.sub(lambda _m: f"c_{{{next(counter)}}}", latex)


def phase_terms(trace: Sequence[TraceEvent]) -> List[str]:
    """Distinct trace phases in first-seen order."""
    terms = list(dict.fromkeys(e.phase for e in trace if e.phase))
    return terms or list(DEFAULT_PHASE_TERMS)


def formula_markdown(data: Optional[FormulaData], visible: int, total: int, phase: str) -> str:
    if data is None:
        return _display_block(PLACEHOLDER)
    if phase != COMPUTING:
        return _display_block(data.latex)
    step = 0
    if total > 0:
        step = min(len(data.steps) - 1, int(_ratio(visible, total) * len(data.steps)))
    raw = data.steps[max(0, step)] if data.steps else data.latex
    return _display_block(mask_numbers(raw))


def result_latex(data: Optional[FormulaData]) -> Optional[str]:
    """The synthesized right-hand side with every parameter substituted, `= Ω`."""
    if data is None or not data.omega:
        return None
    right = "=".join(data.latex.split("=")[1:]).strip()
    if not right:
        return None
    expr = right
    for p in data.params:
        if not p.latex or not p.value or p.key == "Ω":
            continue
        expr = expr.replace(p.latex, f"\\left({p.value}\\right)")
    return f"{expr} = {data.omega}"


def result_markdown(data: Optional[FormulaData]) -> str:
    return _display_block(result_latex(data) or PLACEHOLDER)


def progressive_params(params: Sequence[FormulaParam], phase: str, visible: int, total: int) -> List[FormulaParam]:
    """Reveal non-Ω params in proportion to trace progress; Ω stays hidden until the result."""
    if not params:
        return []
    if phase == RESULT:
        return list(params)
    base = [p for p in params if p.key != "Ω"]
    reveal = max(0, min(len(base), int(_ratio(visible, total) * len(base))))
    out: List[FormulaParam] = []
    revealed = 0
    for p in params:
        if p.key != "Ω" and revealed < reveal:
            revealed += 1
            out.append(p)
        else:
            out.append(FormulaParam(p.key, p.latex, PLACEHOLDER, p.desc))
    return out


def format_event_data(data: Optional[Mapping[str, Any]]) -> str:
    if not data:
        return ""
    payload = " · ".join(f"{k}={value_text(data[k])}" for k in sorted(data, key=collate_key))
    return f" `{payload}`"


def science_markdown(events: Sequence[TraceEvent]) -> str:
    """Trace as markdown: one header per phase run, bold group openers, plain events."""
    if not events:
        return WAITING_SCIENCE
    lines = ["", ""]
    current = ""
    for e in events:
        if e.phase != current:
            current = e.phase
            lines.append(f"### {current}")
        if e.kind == Kind.GROUP_START:
            lines.append(f"- **{e.message}**{format_event_data(e.data)}")
        elif e.kind == Kind.EVENT:
            lines.append(f"- {e.message}{format_event_data(e.data)}")
    return "\n".join(lines)


def _format_almanac_value(value: Any) -> str:
    if isinstance(value, bool):
        return f"`{str(value).lower()}`"
    if isinstance(value, (str, int, float)):
        return f"`{value}`"
    text = json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > MAX_VALUE_CHARS:
        text = text[:MAX_VALUE_CHARS] + "…"
    return f"`{text}`"


def almanac_lines(fields: Mapping[str, Mapping[str, Any]]) -> List[str]:
    lines = ["", ""]
    for i, (title, values) in enumerate(fields.items()):
        if i:
            lines.append("")
        lines.append(f"### {title}")
        for key in sorted(values, key=collate_key):
            lines.append(f"- **{key}**: {_format_almanac_value(values[key])}")
    return lines


def stream_lines(lines: Sequence[str], visible: int, total: int, phase: str) -> str:
    if phase == RESULT:
        return "\n".join(lines)
    if not lines:
        return ""
    count = max(1, int(len(lines) * _ratio(visible, total)))
    return "\n".join(lines[:count])
