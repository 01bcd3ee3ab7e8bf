"""
The five dimension scorers.

Each scorer is pure given its inputs and the RNG it is handed, returns a score
in [0,1] plus the intermediate record it derived, and writes one group of
events into the ledger.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Tuple

from cybergua.almanac import Pillars
from cybergua.bits import U32, clamp01, fnv1a32, hex8, js_number, mix_seed, rotl32, round4
from cybergua.trace import Phase, TraceLedger

ELEMENT_NAMES = ("wood", "fire", "earth", "metal", "water")

STEM_ELEMENT: Dict[str, str] = {
    "甲": "wood", "乙": "wood",
    "丙": "fire", "丁": "fire",
    "戊": "earth", "己": "earth",
    "庚": "metal", "辛": "metal",
    "壬": "water", "癸": "water",
}

BRANCH_ELEMENT: Dict[str, str] = {
    "子": "water", "丑": "earth", "寅": "wood", "卯": "wood",
    "辰": "earth", "巳": "fire", "午": "fire", "未": "earth",
    "申": "metal", "酉": "metal", "戌": "earth", "亥": "water",
}

STEM_WEIGHT = 1.35
BRANCH_WEIGHT = 1.0

# Per-element flow weighting, in ELEMENT_NAMES order.
ELEMENT_FLOW = (0.9, 1.05, 0.85, 1.0, 0.95)

# index 1..8
TRIGRAM_NAMES = ("乾", "兑", "离", "震", "巽", "坎", "艮", "坤")

HEXAGRAM_NAMES = (
    "乾为天", "坤为地", "水雷屯", "山水蒙", "水天需", "天水讼", "地水师", "水地比",
    "风天小畜", "天泽履", "地天泰", "天地否", "天火同人", "火天大有", "地山谦", "雷地豫",
    "泽雷随", "山风蛊", "地泽临", "风地观", "火雷噬嗑", "山火贲", "山地剥", "地雷复",
    "天雷无妄", "山天大畜", "山雷颐", "泽风大过", "坎为水", "离为火", "泽山咸", "雷风恒",
    "天山遁", "雷天大壮", "火地晋", "地火明夷", "风火家人", "火泽睽", "水山蹇", "雷水解",
    "山泽损", "风雷益", "泽天夬", "天风姤", "泽地萃", "地风升", "泽水困", "水风井",
    "泽火革", "火风鼎", "震为雷", "艮为山", "风山渐", "雷泽归妹", "雷火丰", "火山旅",
    "巽为风", "兑为泽", "风水涣", "水泽节", "风泽中孚", "雷山小过", "水火既济", "火水未济",
)

FAVORABLE_HEXAGRAMS = ("乾为天", "坤为地", "地天泰", "风天小畜", "风雷益", "水火既济")
UNFAVORABLE_HEXAGRAMS = ("天地否", "泽天夬", "泽水困", "水山蹇", "火水未济")

LIFE_TABLE = (0.5, 0.68, 0.62, 0.72, 0.58, 0.66, 0.7, 0.6, 0.74, 0.64)
INQUIRY_TABLE = (0.5, 0.7, 0.6, 0.76, 0.58, 0.64, 0.72, 0.62, 0.74, 0.66)
BRIDGE_TABLE = (0.5, 0.66, 0.6, 0.7, 0.58, 0.64, 0.72, 0.62, 0.76, 0.68)

ENTROPY_FOLD = 100000

_WS = re.compile(r"\s+")


@dataclass(frozen=True)
class Elements:
    wood: float
    fire: float
    earth: float
    metal: float
    water: float

    def values(self) -> Tuple[float, float, float, float, float]:
        return self.wood, self.fire, self.earth, self.metal, self.water


@dataclass(frozen=True)
class TextNumbers:
    length: int
    unicode_sum: int
    pseudo_strokes: int
    chaos: int


@dataclass(frozen=True)
class Hexagram:
    upper: str
    lower: str
    name: str
    changing_line: int


@dataclass(frozen=True)
class Numerology:
    life: int
    inquiry: int
    bridge: int


@dataclass(frozen=True)
class DimensionScores:
    time: float
    text: float
    iching: float
    numerology: float
    entropy: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "time": self.time,
            "text": self.text,
            "iching": self.iching,
            "numerology": self.numerology,
            "entropy": self.entropy,
        }


def normalize_question(question: str) -> str:
    return _WS.sub(" ", question.strip())[:120]


# =============================================================================
# Temporal
# =============================================================================

def elements_from_pillars(pillars: Pillars) -> Elements:
    acc = dict.fromkeys(ELEMENT_NAMES, 0.0)
    for token in pillars.joined():
        stem = STEM_ELEMENT.get(token)
        if stem:
            acc[stem] += STEM_WEIGHT
        branch = BRANCH_ELEMENT.get(token)
        if branch:
            acc[branch] += BRANCH_WEIGHT
    total = sum(acc.values()) or 1.0
    return Elements(**{k: v / total for k, v in acc.items()})


def temporal_score(elements: Elements) -> float:
    vals = elements.values()
    balance = 1 - sum(abs(v - 0.2) for v in vals) / 2
    flow = clamp01(sum(v * w for v, w in zip(vals, ELEMENT_FLOW)))
    return clamp01(balance * 0.62 + flow * 0.38)


def score_temporal(ledger: TraceLedger, pillars: Pillars) -> Tuple[float, Elements]:
    elements = elements_from_pillars(pillars)
    score = temporal_score(elements)
    noise = ledger.noise

    ledger.group_start(Phase.TIME, "时序维度", {"y": pillars.year, "m": pillars.month, "d": pillars.day, "h": pillars.time})
    ledger.emit(Phase.TIME, "推四柱干支", {"year": pillars.year, "month": pillars.month, "day": pillars.day, "time": pillars.time})
    matrix = [round4(noise()) for _ in range(9)]
    ledger.emit(Phase.TIME, "时序映射矩阵", {"m": ",".join(js_number(n) for n in matrix)})
    ledger.emit(Phase.TIME, "节律折叠 / 相位校正", {"phi": round4(noise()), "psi": round4(noise()), "omega": round4(noise())})
    ledger.emit(Phase.TIME, "五行向量归一", {k: round4(v) for k, v in zip(ELEMENT_NAMES, elements.values())})
    ledger.emit(Phase.TIME, "平衡度 / 流转度合成", {"score": round4(score), "k": round4(0.85 + noise() * 0.3)})
    ledger.group_end(Phase.TIME, "时序完毕", {"score": round4(score), "tail": ledger.head})
    return score, elements


# =============================================================================
# Textual
# =============================================================================

def pseudo_stroke(code_point: int) -> int:
    a = ((code_point >> 3) ^ ((code_point * 1315423911) & U32)) & U32
    b = (a ^ (a >> 11) ^ ((a << 7) & U32)) & U32
    return 5 + b % 23


def text_numbers(question: str) -> TextNumbers:
    unicode_sum = 0
    strokes = 0
    chaos = 0
    count = 0
    for ch in question:
        cp = ord(ch)
        unicode_sum = (unicode_sum + cp) & U32
        st = pseudo_stroke(cp)
        strokes += st
        chaos = (chaos + (((cp ^ st) * 2654435761) & U32)) & U32
        count += 1
    return TextNumbers(length=max(1, count), unicode_sum=unicode_sum, pseudo_strokes=strokes, chaos=chaos)


def text_score(nums: TextNumbers) -> float:
    density = clamp01(nums.pseudo_strokes / (nums.length * 22))
    focus = clamp01(1 - abs((nums.unicode_sum % 97) / 97 - 0.5) * 1.9)
    omen = clamp01(((nums.chaos ^ (nums.chaos >> 13)) % 1000) / 1000)
    return clamp01(density * 0.44 + focus * 0.36 + omen * 0.2)


def score_textual(ledger: TraceLedger, question: str, question_hash: int) -> Tuple[float, TextNumbers]:
    nums = text_numbers(question)
    score = text_score(nums)
    noise = ledger.noise

    ledger.group_start(Phase.TEXT, "文字外应", {"len": nums.length, "u": hex8(nums.unicode_sum), "c": hex8(nums.chaos)})
    ledger.emit(Phase.TEXT, "外应数取象", {"len": nums.length, "u": hex8(nums.unicode_sum),
                                          "s": nums.pseudo_strokes, "c": hex8(nums.chaos)})
    windows = min(7, max(3, len(question) // 6))
    ledger.group_start(Phase.TEXT, "切片/频域/噪声", {"w": windows})
    for i in range(windows):
        a = (question_hash + i * 131) & U32
        ledger.emit(Phase.TEXT, "字相切片 / 频域折算", {"i": i + 1, "w": hex8(a), "p": round4(noise()), "t": round4(noise())})
    ledger.group_end(Phase.TEXT, "切片收束", {"h": ledger.head})
    ledger.emit(Phase.TEXT, "外应归一评分", {"score": round4(score), "sigma": round4(0.18 + noise() * 0.22)})
    ledger.group_end(Phase.TEXT, "外应完毕", {"score": round4(score), "tail": ledger.head})
    return score, nums


# =============================================================================
# Divinatory
# =============================================================================

def hexagram_name(upper_index: int, lower_index: int) -> str:
    return HEXAGRAM_NAMES[(upper_index - 1) * 8 + (lower_index - 1)]


def cast_hexagram(time_seed: int, question_hash: int, entropy: int, rng: Callable[[], float]) -> Hexagram:
    base = (time_seed + rotl32(question_hash, 5) + rotl32(entropy, 9)) & U32
    upper = base % 8 + 1
    lower = ((base >> 3) + question_hash % 37) % 8 + 1
    line = 1 + int(rng() * 6)
    return Hexagram(
        upper=TRIGRAM_NAMES[upper - 1],
        lower=TRIGRAM_NAMES[lower - 1],
        name=hexagram_name(upper, lower),
        changing_line=line,
    )


def hexagram_harmony(name: str) -> float:
    if any(n in name for n in FAVORABLE_HEXAGRAMS):
        return 1.0
    if any(n in name for n in UNFAVORABLE_HEXAGRAMS):
        return 0.18
    return 0.6


def hexagram_score(hexagram: Hexagram) -> float:
    agitation = clamp01(abs(3.5 - hexagram.changing_line) / 3.5)
    omen = clamp01(1 - agitation * 0.55)
    return clamp01(omen * 0.64 + hexagram_harmony(hexagram.name) * 0.36)


def score_divinatory(ledger: TraceLedger, rng: Callable[[], float], seed: int, time_seed: int,
                     question_hash: int, entropy: int) -> Tuple[float, Hexagram]:
    hexagram = cast_hexagram(time_seed, question_hash, entropy, rng)
    score = hexagram_score(hexagram)
    noise = ledger.noise
    upper_index = TRIGRAM_NAMES.index(hexagram.upper) + 1
    lower_index = TRIGRAM_NAMES.index(hexagram.lower) + 1
    line = hexagram.changing_line

    ledger.group_start(Phase.ICHING, "易经维度", {"name": hexagram.name, "line": line})
    ledger.emit(Phase.ICHING, "梅花起卦", {
        "upper": f"{hexagram.upper}({upper_index})",
        "lower": f"{hexagram.lower}({lower_index})",
        "name": hexagram.name,
        "line": line,
    })
    ledger.emit(Phase.ICHING, "动爻触发 / 爻位偏置", {"line": line, "bias": round4((line - 3.5) / 7),
                                                   "h": hex8(mix_seed(seed, line, entropy))})
    ledger.group_start(Phase.ICHING, "六爻采样", {"n": 6})
    for i in range(6):
        ledger.emit(Phase.ICHING, "爻象采样", {"i": i + 1, "v": round4(noise()),
                                             "z": hex8(mix_seed(question_hash, time_seed, i + 1))})
    ledger.group_end(Phase.ICHING, "六爻收束", {"h": ledger.head})
    ledger.emit(Phase.ICHING, "卦势评分", {"score": round4(score), "mu": round4(0.4 + noise() * 0.3)})
    ledger.group_end(Phase.ICHING, "易经完毕", {"score": round4(score), "tail": ledger.head})
    return score, hexagram


# =============================================================================
# Numerological
# =============================================================================

def sum_digits(n: int) -> int:
    return sum(int(ch) for ch in str(abs(n)))


def digital_root(n: int) -> int:
    x = n
    while x >= 10:
        x = sum_digits(x)
    return x


def numerology(when: datetime, question: str, nickname: str) -> Numerology:
    y, m, d = when.year, when.month, when.day
    life = digital_root(sum_digits(y) + sum_digits(m) + sum_digits(d))
    inquiry = digital_root(sum_digits(fnv1a32(question)) + sum_digits(fnv1a32(nickname)))
    bridge = digital_root(life * 7 + inquiry * 3 + (y + m + d) % 9)
    return Numerology(life=life, inquiry=inquiry, bridge=bridge)


def numerology_score(n: Numerology) -> float:
    return clamp01(LIFE_TABLE[n.life] * 0.45 + INQUIRY_TABLE[n.inquiry] * 0.35 + BRIDGE_TABLE[n.bridge] * 0.2)


def score_numerological(ledger: TraceLedger, when: datetime, question: str,
                        nickname: str) -> Tuple[float, Numerology]:
    nums = numerology(when, question, nickname)
    score = numerology_score(nums)
    noise = ledger.noise
    roots = {"life": nums.life, "inquiry": nums.inquiry, "bridge": nums.bridge}

    ledger.group_start(Phase.NUMEROLOGY, "数理维度", roots)
    ledger.emit(Phase.NUMEROLOGY, "数秘折算能量", roots)
    ledger.emit(Phase.NUMEROLOGY, "数字根回路", {"r1": round4(noise()), "r2": round4(noise()), "r3": round4(noise()),
                                           "k": round4(1.2 + noise() * 0.9)})
    ledger.emit(Phase.NUMEROLOGY, "回路收敛判定", {"eps": round4(0.001 + noise() * 0.009), "it": 3 + int(noise() * 9)})
    ledger.emit(Phase.NUMEROLOGY, "数理评分", {"score": round4(score), "phi": round4(0.5 + noise() * 0.2)})
    ledger.group_end(Phase.NUMEROLOGY, "数理完毕", {"score": round4(score), "tail": ledger.head})
    return score, nums


# =============================================================================
# Entropic
# =============================================================================

def entropy_score(entropy: int) -> float:
    x = ((entropy & U32) % ENTROPY_FOLD) / ENTROPY_FOLD
    return clamp01(0.35 + 0.65 * (1 - 2 * abs(x - 0.5)))


def score_entropic(ledger: TraceLedger, entropy: int, seed: int) -> float:
    score = entropy_score(entropy)
    noise = ledger.noise
    e_hex = hex8(entropy)

    ledger.group_start(Phase.OMEN, "扰动注入", {"entropy": e_hex})
    ledger.emit(Phase.OMEN, "微熵扰动注入", {"entropy": e_hex, "score": round4(score)})
    for i in range(6):
        ledger.emit(Phase.OMEN, "扰动折叠", {"i": i + 1, "d": round4((noise() - 0.5) * 0.22),
                                          "n": hex8(mix_seed(entropy, seed, i + 17))})
    ledger.emit(Phase.OMEN, "扰动归一评分", {"score": round4(score), "alpha": round4(0.2 + noise() * 0.6)})
    ledger.group_end(Phase.OMEN, "扰动完毕", {"score": round4(score), "tail": ledger.head})
    return score
