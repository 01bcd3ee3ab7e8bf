from cybergua.formula import PLACEHOLDER, FormulaData, FormulaParam, build_formula_data
from cybergua.presentation import (
    COMPUTING,
    DEFAULT_PHASE_TERMS,
    MAX_VALUE_CHARS,
    RESULT,
    WAITING_SCIENCE,
    almanac_lines,
    formula_markdown,
    mask_numbers,
    phase_terms,
    progressive_params,
    result_latex,
    result_markdown,
    science_markdown,
    stream_lines,
)
from cybergua.trace import Kind, Phase, TraceEvent


def ev(kind, phase, message, data=None):
    return TraceEvent(id="x", t=0, depth=0, kind=kind, phase=phase, message=message,
                      data=data, fp=None, prev="00000000", hash="00000000")


def small_formula():
    return FormulaData(
        latex="\\Omega = Q + T",
        steps=("\\Omega = \\square + \\square", "\\Omega = Q + T"),
        params=(
            FormulaParam("Ω", "\\Omega", "3", "归一输出"),
            FormulaParam("Q", "Q", "1", "问题向量"),
            FormulaParam("T", "T", "2", "时间基准"),
        ),
    )


def test_mask_numbers():
    assert mask_numbers("3.14 + 2") == "c_{1} + c_{2}"
    assert mask_numbers("\\frac{12}{7}") == "\\frac{c_{1}}{c_{2}}"
    assert mask_numbers("Q") == "Q"


def test_phase_terms(engine_run):
    assert phase_terms([]) == list(DEFAULT_PHASE_TERMS)
    terms = phase_terms(engine_run.trace)
    assert len(terms) == len(set(terms))
    assert set(terms) <= set(Phase.ALL)
    assert terms[0] == engine_run.trace[0].phase


def test_formula_markdown():
    data = build_formula_data(42, ["归一"])
    assert formula_markdown(None, 0, 10, COMPUTING) == "\n\n$$\n\\square\n$$"
    assert formula_markdown(data, 10, 10, RESULT) == f"\n\n$$\n{data.latex}\n$$"
    early = formula_markdown(data, 0, 10, COMPUTING)
    assert early == f"\n\n$$\n{mask_numbers(data.steps[0])}\n$$"
    late = formula_markdown(data, 10, 10, COMPUTING)
    assert late == f"\n\n$$\n{mask_numbers(data.steps[-1])}\n$$"


def test_result_latex():
    assert result_latex(small_formula()) == "\\left(1\\right) + \\left(2\\right) = 3"
    assert result_latex(None) is None
    no_omega = FormulaData(latex="\\Omega = Q", steps=(), params=(FormulaParam("Q", "Q", "1", ""),))
    assert result_latex(no_omega) is None
    assert result_markdown(None) == f"\n\n$$\n{PLACEHOLDER}\n$$"


def test_progressive_params():
    params = small_formula().params
    assert progressive_params([], COMPUTING, 0, 10) == []
    assert progressive_params(params, RESULT, 0, 10) == list(params)
    hidden = progressive_params(params, COMPUTING, 0, 10)
    assert [p.value for p in hidden] == [PLACEHOLDER] * 3
    half = progressive_params(params, COMPUTING, 5, 10)
    assert [p.value for p in half] == [PLACEHOLDER, "1", PLACEHOLDER]
    full = progressive_params(params, COMPUTING, 10, 10)
    assert [p.value for p in full] == [PLACEHOLDER, "1", "2"]
    assert [p.key for p in full] == ["Ω", "Q", "T"]


def test_science_markdown():
    assert science_markdown([]) == WAITING_SCIENCE
    events = [
        ev(Kind.GROUP_START, Phase.ICHING, "卦象", {"b": 2, "A": 1}),
        ev(Kind.EVENT, Phase.ICHING, "变爻"),
        ev(Kind.GROUP_END, Phase.ICHING, "卦象"),
        ev(Kind.EVENT, Phase.FUSION, "汇总", {"s": 0.5}),
    ]
    assert science_markdown(events).split("\n") == [
        "", "",
        "### 易经",
        "- **卦象** `A=1 · b=2`",
        "- 变爻",
        "### 融合",
        "- 汇总 `s=0.5`",
    ]


def test_almanac_lines():
    lines = almanac_lines({"阴历": {"b": "甲子", "A": True}, "阳历": {"k": [1, 2]}})
    assert lines == ["", "", "### 阴历", "- **A**: `true`", "- **b**: `甲子`",
                     "", "### 阳历", "- **k**: `[1, 2]`"]


def test_almanac_long_values_are_cut():
    line = almanac_lines({"阴历": {"宜": ["祭祀"] * 100}})[-1]
    assert line.endswith("…`")
    assert len(line) < MAX_VALUE_CHARS + 20


def test_stream_lines():
    lines = ["a", "b", "c", "d"]
    assert stream_lines(lines, 1, 2, COMPUTING) == "a\nb"
    assert stream_lines(lines, 0, 2, COMPUTING) == "a"
    assert stream_lines(lines, 0, 2, RESULT) == "a\nb\nc\nd"
    assert stream_lines([], 1, 2, COMPUTING) == ""
