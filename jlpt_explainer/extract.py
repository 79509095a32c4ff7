"""Question context extraction from exam part documents.

Exam parts arrive as loosely structured JSON. ``parse_exam_part`` reads them
into plain dataclasses, treating every missing or mistyped field as empty, so
the rest of the pipeline never probes raw dictionaries.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .classify import ClassifyInput, classify, to_ascii_digits
from .errors import InvalidRequestError, NotFoundError
from .explanation import normalize_option_key
from .structured import ExamQuestionCoordinate, PassageGroupCoordinate, QuestionContext

SENTENCE_TERMINATORS = set("\n。｡．！？!?")
OPTION_DIGIT_PREFIX = re.compile(r"^[\s　]*[0-9０-９]+[\s　]*[.)）．。､、:：\-－ー]?\s*")
BLANK_MARKER_PATTERN = re.compile(r"^[()（]?\d{1,3}[)）]?[.．。、]?$")
LEADING_QUESTION_NO = re.compile(r"^\s*(\d{1,3})\s*[.．。]")
EMPTY_BRACKETS = re.compile(r"[（(][\s　]*[）)]")
ORDER_SEQUENCE = re.compile(r"\d+(?:\s*(?:->|[-→＞>、,・]|\s)\s*\d+)+")

ANSWER_KEY_FIELDS = ("explanation", "explain", "answer_explanation", "solution")


@dataclass
class ParsedPassage:
    passage_id: str
    text: str


@dataclass
class ParsedQuestion:
    label: str = ""
    text: str = ""
    options: Dict[str, str] = field(default_factory=dict)
    answer: str = ""
    passage_ids: List[str] = field(default_factory=list)
    answer_key_text: str = ""


@dataclass
class ParsedSection:
    title: str = ""
    questions: List[ParsedQuestion] = field(default_factory=list)


@dataclass
class ExamPartDocument:
    sections: List[ParsedSection] = field(default_factory=list)
    passages: List[ParsedPassage] = field(default_factory=list)

    def passage_text(self, passage_ids: Sequence[str]) -> str:
        """Cleaned text of every passage whose id is referenced, joined by newlines."""
        wanted = [pid for pid in passage_ids if pid]
        if not wanted:
            return ""
        texts = [p.text for p in self.passages if p.passage_id in wanted and p.text]
        return "\n".join(texts)


# ── Text cleanup ─────────────────────────────────────────────────

def strip_html(text: str) -> str:
    out = re.sub(r"<br\s*/?>", "\n", text or "", flags=re.IGNORECASE)
    out = re.sub(r"</p>", "\n", out, flags=re.IGNORECASE)
    out = re.sub(r"<[^>]+>", " ", out)
    return (out.replace("&nbsp;", " ")
               .replace("&amp;", "&")
               .replace("&lt;", "<")
               .replace("&gt;", ">")
               .replace("&quot;", '"')
               .replace("&#39;", "'"))


def normalize_space(text: str) -> str:
    lines = (re.sub(r"\s+", " ", line).strip() for line in (text or "").replace("\r", "").split("\n"))
    return "\n".join(line for line in lines if line)


def clean_text(text: str) -> str:
    return normalize_space(strip_html(text))


def sanitize_option_text(option_key: str, text: str) -> str:
    """Drop a leading ``1.``/``１）``-style numbering or the option key itself."""
    cleaned = OPTION_DIGIT_PREFIX.sub("", clean_text(text), count=1)
    key = (option_key or "").strip()
    if key:
        key_prefix = re.compile(r"^[\s　]*" + re.escape(key) + r"[\s　]*[.)）．。､、:：\-－ー]?\s*")
        cleaned = key_prefix.sub("", cleaned, count=1)
    return cleaned.strip()


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# ── Parsing ──────────────────────────────────────────────────────

def _parse_question(raw: Any) -> ParsedQuestion:
    q = raw if isinstance(raw, dict) else {}
    raw_options = q.get("options") if isinstance(q.get("options"), dict) else {}
    options: Dict[str, str] = {}
    for key, value in raw_options.items():
        text = _text(value)
        option_key = normalize_option_key(key)
        # "１" and "1." both key as "1", like answers and model verdicts.
        if text and option_key and option_key not in options:
            options[option_key] = sanitize_option_text(str(key), text)

    raw_pid = _first(q, "passage_id", "pid")
    if isinstance(raw_pid, list):
        passage_ids = [_text(p) for p in raw_pid]
    else:
        passage_ids = [_text(raw_pid)]

    answer_key = ""
    for name in ANSWER_KEY_FIELDS:
        answer_key = clean_text(_text(q.get(name)))
        if answer_key:
            break

    return ParsedQuestion(
        label=_text(_first(q, "question_id", "qid")),
        text=clean_text(_text(_first(q, "question_html", "ques"))),
        options=options,
        answer=normalize_option_key(_first(q, "answer", "correct_answer")),
        passage_ids=[p for p in passage_ids if p],
        answer_key_text=answer_key,
    )


def parse_exam_part(data: Union[str, Dict[str, Any], None]) -> ExamPartDocument:
    """Parse an exam part's JSON payload; malformed pieces become empty."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            data = {}
    doc = data if isinstance(data, dict) else {}

    sections = []
    for raw_section in _as_list(doc.get("sections")):
        section = raw_section if isinstance(raw_section, dict) else {}
        title = clean_text(_text(_first(section, "section_title", "sec", "section_html", "title", "heading")))
        questions = [_parse_question(q) for q in _as_list(section.get("questions"))]
        sections.append(ParsedSection(title=title, questions=questions))

    passages = []
    for raw_passage in _as_list(doc.get("passages")):
        p = raw_passage if isinstance(raw_passage, dict) else {}
        passages.append(ParsedPassage(
            passage_id=_text(_first(p, "passage_id", "pid")),
            text=clean_text(_text(_first(p, "passage_html", "passage"))),
        ))

    return ExamPartDocument(sections=sections, passages=passages)


# ── Blank markers ────────────────────────────────────────────────

def is_only_blank_marker(text: str) -> bool:
    if not text:
        return False
    return bool(BLANK_MARKER_PATTERN.match(to_ascii_digits(re.sub(r"\s+", "", text))))


def _digits(value: str) -> str:
    match = re.search(r"\d+", to_ascii_digits(value or ""))
    return str(int(match.group(0))) if match else ""


def blank_marker_candidates(question_text: str, question_label: str) -> List[str]:
    labels: List[str] = []
    text = (question_text or "").strip()
    label = (question_label or "").strip()
    if is_only_blank_marker(text):
        labels.append(_digits(text))
    elif label:
        labels.extend([label, _digits(label)])

    out: List[str] = []
    for value in labels:
        if not value:
            continue
        for marker in (f"({value})", f"（{value}）"):
            if marker not in out:
                out.append(marker)
    return out


def sentence_around_blank(passage_text: str, markers: Sequence[str]) -> Tuple[str, str]:
    """Sentence holding the earliest marker, and the marker that matched."""
    if not passage_text or not markers:
        return "", ""
    best_index, best_marker = -1, ""
    for marker in markers:
        index = passage_text.find(marker)
        if index >= 0 and (best_index < 0 or index < best_index):
            best_index, best_marker = index, marker
    if best_index < 0:
        return "", ""

    start = 0
    for i in range(best_index - 1, -1, -1):
        if passage_text[i] in SENTENCE_TERMINATORS:
            start = i + 1
            break
    end = len(passage_text)
    for i in range(best_index + len(best_marker), len(passage_text)):
        if passage_text[i] in SENTENCE_TERMINATORS:
            end = i + 1
            break
    return normalize_space(passage_text[start:end]), best_marker


def display_question_no(question_text: str, raw_label: str, question_index: int, meta_display_no: Optional[int] = None) -> int:
    match = LEADING_QUESTION_NO.match(to_ascii_digits(question_text or ""))
    if match:
        return int(match.group(1))
    digits = _digits(raw_label)
    if digits:
        return int(digits)
    if meta_display_no:
        return meta_display_no
    return question_index + 1


def parse_expected_order(answer_key_text: str, option_keys: Sequence[str]) -> List[str]:
    """Fragment order such as ``2-4-1-3`` or ``2→4→1→3`` from answer-key text.

    Only a complete permutation of ``option_keys`` is returned.
    """
    keys = [str(k) for k in option_keys]
    if not answer_key_text or not keys:
        return []
    for match in ORDER_SEQUENCE.finditer(to_ascii_digits(answer_key_text)):
        order = [str(int(n)) for n in re.findall(r"\d+", match.group(0))]
        if len(order) == len(keys) and sorted(order) == sorted(keys):
            return order
    return []


def _answered_text(base: str, marker: str, answer_text: str) -> str:
    if not base or not answer_text:
        return ""
    if marker and marker in base:
        return base.replace(marker, answer_text, 1)
    if "★" in base:
        return ""
    replaced, count = EMPTY_BRACKETS.subn(answer_text, base, count=1)
    return replaced if count else ""


# ── Contexts ─────────────────────────────────────────────────────

def _locate(doc: ExamPartDocument, section_index: int, question_index: int) -> Tuple[ParsedSection, ParsedQuestion]:
    if section_index < 0 or section_index >= len(doc.sections):
        raise NotFoundError(f"Section {section_index} not found")
    section = doc.sections[section_index]
    if question_index < 0 or question_index >= len(section.questions):
        raise NotFoundError(f"Question {question_index} not found in section {section_index}")
    return section, section.questions[question_index]


def extract_question_context(
    doc: Union[ExamPartDocument, Dict[str, Any], str, None],
    coordinate: ExamQuestionCoordinate,
    meta_display_no: Optional[int] = None,
) -> QuestionContext:
    """Derive the full context of one question, or raise ``NotFoundError``."""
    if not isinstance(doc, ExamPartDocument):
        doc = parse_exam_part(doc)
    section, question = _locate(doc, coordinate.section_index, coordinate.question_index)

    raw_label = question.label or str(coordinate.question_index + 1)
    display_no = display_question_no(question.text, question.label, coordinate.question_index, meta_display_no)
    passage_text = doc.passage_text(question.passage_ids)

    markers = blank_marker_candidates(question.text, str(display_no))
    sentence, marker = sentence_around_blank(passage_text, markers)
    is_cloze = is_only_blank_marker(question.text) and bool(sentence)
    question_with_blank = sentence if is_cloze else question.text
    answer_text = question.options.get(question.answer, "")

    info = classify(ClassifyInput(
        level=coordinate.level,
        part=coordinate.part,
        section_title=section.title,
        question_label=str(display_no),
        question_text=question.text,
        option_texts=list(question.options.values()),
        has_passage=bool(passage_text),
        is_cloze=is_cloze,
    ))

    expected_order: List[str] = []
    if info.question_type == "sentence_order":
        expected_order = parse_expected_order(question.answer_key_text, list(question.options))

    return QuestionContext(
        level=coordinate.level,
        exam_id=coordinate.exam_id,
        part=coordinate.part,
        section_index=coordinate.section_index,
        question_index=coordinate.question_index,
        section_title=section.title,
        question_label=raw_label,
        display_question_no=display_no,
        mondai_label=info.mondai_label,
        mondai_number=info.mondai_number,
        question_type=info.question_type,
        question_type_label_vi=info.label_vi,
        type_strategy_vi=info.strategy_vi,
        question_text=question.text,
        question_with_blank=question_with_blank,
        question_with_answer=_answered_text(question_with_blank, marker if is_cloze else "", answer_text),
        blank_labels=[marker] if is_cloze else [],
        is_cloze=is_cloze,
        options=dict(question.options),
        correct_answer=question.answer,
        passage_text=passage_text,
        passage_ids=list(question.passage_ids),
        expected_order=expected_order,
    )


def extract_passage_group(
    doc: Union[ExamPartDocument, Dict[str, Any], str, None],
    group: PassageGroupCoordinate,
) -> Tuple[List[QuestionContext], str]:
    """Contexts of every question in a passage group plus the shared passage."""
    if not isinstance(doc, ExamPartDocument):
        doc = parse_exam_part(doc)
    indexes = group.sorted_indexes
    if not indexes:
        raise InvalidRequestError("Passage group has no questions")

    contexts = [extract_question_context(doc, group.question(i)) for i in indexes]
    shared = set(contexts[0].passage_ids)
    for ctx in contexts[1:]:
        shared &= set(ctx.passage_ids)
    if not shared or not contexts[0].passage_text:
        raise InvalidRequestError("Questions in the group do not share a passage")

    passage_ids: List[str] = []
    for ctx in contexts:
        passage_ids.extend(pid for pid in ctx.passage_ids if pid not in passage_ids)
    return contexts, doc.passage_text(passage_ids)
