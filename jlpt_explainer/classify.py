"""JLPT question type classification.

The question type is decided by an ordered list of named rules; the first rule
that returns a type wins. The mondai (problem group) number is derived on its
own and feeds the level-specific table rule.

Level tables are configuration data. Only N2 is populated; other levels fall
through to the heuristic rules until their numbering is confirmed.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .structured import QUESTION_TYPES

TYPE_LABELS: Dict[str, str] = {
    "vocab_kanji_reading": "Từ vựng/Kanji - chọn cách đọc",
    "vocab_kanji_writing": "Từ vựng/Kanji - chọn cách viết",
    "vocab_context": "Từ vựng - nghĩa/ngữ cảnh",
    "grammar_choice": "Ngữ pháp - chọn cấu trúc",
    "sentence_order": "Sắp xếp câu (dạng có dấu sao ★)",
    "reading_cloze": "Đọc hiểu - điền chỗ trống",
    "reading_content": "Đọc hiểu - nội dung câu hỏi",
    "listening": "Nghe hiểu",
    "unknown": "Chưa phân loại",
}

TYPE_STRATEGIES: Dict[str, str] = {
    "vocab_kanji_reading": "Xác định âm On/Kun, loại trừ nhanh theo phát âm sai, sau đó đối chiếu nghĩa để tránh nhầm đồng âm.",
    "vocab_kanji_writing": "Xác định từ được cho bằng hiragana, chọn kanji đúng theo nghĩa và hình thái từ, loại trừ kanji đồng âm sai nghĩa.",
    "vocab_context": "Đặt từng đáp án vào câu, kiểm tra sắc thái nghĩa và độ tự nhiên với cụm xung quanh, ưu tiên đáp án hợp văn cảnh.",
    "grammar_choice": "Xác định vai trò ngữ pháp của chỗ trống (trợ từ/liên từ/mẫu câu), sau đó loại trừ đáp án sai theo mẫu kết hợp.",
    "sentence_order": "Đây là dạng sắp xếp 4 mảnh câu với vị trí ★, ghép thành câu hoàn chỉnh, rồi xác định mảnh nào đúng ở vị trí ★.",
    "reading_cloze": "Đọc mạch toàn đoạn trước, xác định vai trò logic của ô trống, rồi chọn đáp án hợp nhất với ý trước-sau.",
    "reading_content": "Tóm tắt ý chính, tìm câu then chốt trong đoạn, đối chiếu từng lựa chọn theo bằng chứng trực tiếp/ngụ ý.",
    "listening": "Bắt từ khóa, chú ý phủ định và chuyển ý cuối câu, không chốt đáp án trước khi nghe hết thông tin.",
    "unknown": "Đọc kỹ ngữ cảnh, xác định mục tiêu câu hỏi, loại trừ đáp án không hợp lý theo từng bước.",
}

# level -> [(first mondai, last mondai, question type)]
MONDAI_TYPE_TABLES: Dict[str, List[Tuple[int, int, str]]] = {
    "N2": [
        (1, 1, "vocab_kanji_reading"),
        (2, 2, "vocab_kanji_writing"),
        (3, 6, "vocab_context"),
        (7, 7, "grammar_choice"),
        (8, 8, "sentence_order"),
        (9, 9, "reading_cloze"),
        (10, 14, "reading_content"),
    ],
}

# (level, part) -> [(first question no, last question no, mondai number)]
QUESTION_RANGE_TABLES: Dict[Tuple[str, int], List[Tuple[int, int, int]]] = {
    ("N2", 2): [
        (43, 47, 8),
        (48, 51, 9),
        (52, 56, 10),
        (57, 64, 11),
        (65, 66, 12),
        (67, 69, 13),
        (70, 71, 14),
    ],
}

# Fixed section-title phrasings, checked in order.
SECTION_TITLE_PATTERNS: List[Tuple[Callable[[str], bool], int]] = [
    (lambda t: "★" in t, 8),
    (lambda t: "文章全体" in t
        or ("（48）" in t and "（51）" in t)
        or ("(48)" in t and "(51)" in t), 9),
    (lambda t: "次の(1)から(5)" in t or "次の(1) から (5)" in t, 10),
    (lambda t: "次の(1)から(3)" in t or "次の(1) から (3)" in t, 11),
    (lambda t: "次のAとB" in t, 12),
    (lambda t: "次の文章を読んで" in t, 13),
    (lambda t: "右のページ" in t or "案内である" in t, 14),
    (lambda t: "★に入る" in t, 8),
    (lambda t: "次の文の（　）" in t, 7),
]

LISTENING_KEYWORDS = ["聴解", "聞く", "音声", "会話"]
PASSAGE_KEYWORDS = ["読んで", "文章", "本文"]
READING_KEYWORDS = ["読み方", "読む"]
GRAMMAR_KEYWORDS = ["文法", "表現", "使い方"]
MEANING_KEYWORDS = ["意味", "近い", "言葉"]

SECTION_KINDS_BY_TYPE = {
    "vocab_kanji_reading": "language",
    "vocab_kanji_writing": "language",
    "vocab_context": "language",
    "grammar_choice": "language",
    "sentence_order": "sentence_order",
    "reading_cloze": "reading_cloze",
    "reading_content": "reading_content",
    "listening": "listening",
}

MONDAI_PATTERN = re.compile(r"問題\s*([0-9]+)")
FULLWIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")


@dataclass
class ClassifyInput:
    level: str
    part: int
    section_title: str = ""
    question_label: str = ""
    question_text: str = ""
    option_texts: Sequence[str] = field(default_factory=list)
    has_passage: bool = False
    is_cloze: bool = False


@dataclass
class QuestionTypeInfo:
    mondai_label: str
    mondai_number: Optional[int]
    question_type: str
    label_vi: str
    strategy_vi: str


@dataclass
class _RuleInput:
    data: ClassifyInput
    section: str
    question: str
    mondai_number: Optional[int]


@dataclass
class Rule:
    name: str
    apply: Callable[[_RuleInput], Optional[str]]


def to_ascii_digits(value: str) -> str:
    return (value or "").translate(FULLWIDTH_DIGITS)


def _normalize(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def _has_any(text: str, keywords: Sequence[str]) -> bool:
    return any(k in text for k in keywords)


def _parse_mondai(text: str) -> Optional[int]:
    match = MONDAI_PATTERN.search(text)
    return int(match.group(1)) if match else None


def _parse_question_number(label: str) -> Optional[int]:
    match = re.search(r"\d+", to_ascii_digits(label))
    return int(match.group(0)) if match else None


def detect_mondai_number(level: str, part: int, section_title: str, question_label: str, question_text: str) -> Optional[int]:
    title = to_ascii_digits(_normalize(section_title))
    number = _parse_mondai(title)
    if number:
        return number

    for matches, value in SECTION_TITLE_PATTERNS:
        if matches(title):
            return value

    ranges = QUESTION_RANGE_TABLES.get(((level or "").upper(), part))
    if ranges:
        n = _parse_question_number(question_label)
        if n is not None:
            for low, high, value in ranges:
                if low <= n <= high:
                    return value

    return _parse_mondai(to_ascii_digits(_normalize(question_text))) or None


def _star_marker(r: _RuleInput) -> Optional[str]:
    return "sentence_order" if "★" in r.section or "★" in r.question else None


def _listening_part(r: _RuleInput) -> Optional[str]:
    if r.data.part == 3 or _has_any(r.section, LISTENING_KEYWORDS):
        return "listening"
    return None


def _level_mondai_table(r: _RuleInput) -> Optional[str]:
    table = MONDAI_TYPE_TABLES.get((r.data.level or "").upper())
    if not table or not r.mondai_number:
        return None
    for low, high, question_type in table:
        if low <= r.mondai_number <= high:
            return question_type
    return None


def _cloze_with_passage(r: _RuleInput) -> Optional[str]:
    return "reading_cloze" if r.data.is_cloze and r.data.has_passage else None


def _passage_or_reading_title(r: _RuleInput) -> Optional[str]:
    if r.data.has_passage or _has_any(r.section, PASSAGE_KEYWORDS):
        return "reading_content"
    return None


def _reading_keyword(r: _RuleInput) -> Optional[str]:
    if _has_any(r.section, READING_KEYWORDS) or "読み方" in r.question:
        return "vocab_kanji_reading"
    return None


def _grammar_keyword(r: _RuleInput) -> Optional[str]:
    return "grammar_choice" if _has_any(r.section, GRAMMAR_KEYWORDS) else None


def _meaning_keyword(r: _RuleInput) -> Optional[str]:
    return "vocab_context" if _has_any(r.section, MEANING_KEYWORDS) else None


def _short_uniform_options(r: _RuleInput) -> Optional[str]:
    options = list(r.data.option_texts or [])
    if not options:
        return None
    avg = sum(len(str(o or "").strip()) for o in options) / len(options)
    if 0 < avg <= 8 and len(options) >= 3:
        return "sentence_order"
    return None


def _listening_fallback(r: _RuleInput) -> Optional[str]:
    return "listening" if r.data.part == 3 else None


RULES: List[Rule] = [
    Rule("star_marker", _star_marker),
    Rule("listening_part", _listening_part),
    Rule("level_mondai_table", _level_mondai_table),
    Rule("cloze_with_passage", _cloze_with_passage),
    Rule("passage_or_reading_title", _passage_or_reading_title),
    Rule("reading_keyword", _reading_keyword),
    Rule("grammar_keyword", _grammar_keyword),
    Rule("meaning_keyword", _meaning_keyword),
    Rule("short_uniform_options", _short_uniform_options),
    Rule("listening_fallback", _listening_fallback),
]


def describe_question_type(question_type: str) -> Tuple[str, str]:
    """Vietnamese label and strategy for a question type."""
    if question_type not in QUESTION_TYPES:
        question_type = "unknown"
    return TYPE_LABELS[question_type], TYPE_STRATEGIES[question_type]


def section_kind_for(question_type: str) -> str:
    return SECTION_KINDS_BY_TYPE.get(question_type, "unknown")


def classify(data: ClassifyInput, rules: Optional[List[Rule]] = None) -> QuestionTypeInfo:
    section = _normalize(data.section_title)
    question = _normalize(data.question_text)
    mondai_number = detect_mondai_number(data.level, data.part, section, data.question_label, question)
    rule_input = _RuleInput(data=data, section=section, question=question, mondai_number=mondai_number)

    question_type = "unknown"
    for rule in rules or RULES:
        result = rule.apply(rule_input)
        if result:
            question_type = result
            break

    label_vi, strategy_vi = describe_question_type(question_type)
    return QuestionTypeInfo(
        mondai_label=f"問題{mondai_number}" if mondai_number else "",
        mondai_number=mondai_number,
        question_type=question_type,
        label_vi=label_vi,
        strategy_vi=strategy_vi,
    )
