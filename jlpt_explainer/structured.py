from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import json

QUESTION_TYPES = (
    "vocab_kanji_reading",
    "vocab_kanji_writing",
    "vocab_context",
    "grammar_choice",
    "sentence_order",
    "reading_cloze",
    "reading_content",
    "listening",
    "unknown",
)

SECTION_KINDS = ("language", "sentence_order", "reading_cloze", "reading_content", "listening", "unknown")

EXPLANATION_KEYS = (
    "question_ja",
    "question_ruby_html",
    "question_reading_hira",
    "question_translation_vi",
    "sentence_order_solution",
    "key_point_vi",
    "reasoning_steps_vi",
    "option_analysis",
    "options_with_reading",
    "key_vocab",
    "grammar_points",
    "trap_patterns_vi",
    "part_strategy_vi",
    "quick_tip_vi",
    "final_conclusion_vi",
)

PASSAGE_EXPLANATION_KEYS = (
    "passage_ja",
    "passage_ruby_html",
    "passage_reading_hira",
    "passage_translation_vi",
    "sentence_readings",
    "passage_theme_vi",
    "passage_summary_vi",
    "key_logic_vi",
    "questions",
    "global_traps_vi",
    "reading_strategy_vi",
    "final_takeaway_vi",
)


def canonical_hash(value: Any) -> str:
    """SHA-256 of the canonical JSON form of ``value``."""
    payload = json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ExamQuestionCoordinate:
    level: str
    exam_id: str
    part: int
    section_index: int
    question_index: int


@dataclass(frozen=True)
class PassageGroupCoordinate:
    level: str
    exam_id: str
    part: int
    section_index: int
    question_indexes: Tuple[int, ...]

    @property
    def sorted_indexes(self) -> List[int]:
        return sorted(set(self.question_indexes))

    @property
    def group_hash(self) -> str:
        return canonical_hash({"section_index": self.section_index, "question_indexes": self.sorted_indexes})

    def question(self, question_index: int) -> ExamQuestionCoordinate:
        return ExamQuestionCoordinate(self.level, self.exam_id, self.part, self.section_index, question_index)


@dataclass
class QuestionContext:
    """Everything the prompt needs to know about one question."""

    level: str
    exam_id: str
    part: int
    section_index: int
    question_index: int
    section_title: str = ""
    question_label: str = ""
    display_question_no: Optional[int] = None
    mondai_label: str = ""
    mondai_number: Optional[int] = None
    question_type: str = "unknown"
    question_type_label_vi: str = ""
    type_strategy_vi: str = ""
    question_text: str = ""
    question_with_blank: str = ""
    question_with_answer: str = ""
    blank_labels: List[str] = field(default_factory=list)
    is_cloze: bool = False
    options: Dict[str, str] = field(default_factory=dict)
    correct_answer: str = ""
    passage_text: str = ""
    passage_ids: List[str] = field(default_factory=list)
    expected_order: List[str] = field(default_factory=list)

    @property
    def coordinate(self) -> ExamQuestionCoordinate:
        return ExamQuestionCoordinate(self.level, self.exam_id, self.part, self.section_index, self.question_index)

    @property
    def reading_source(self) -> str:
        """Text the question reading is computed from."""
        return self.question_with_blank or self.question_text

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def content_hash(self) -> str:
        return canonical_hash(self.to_dict())


@dataclass
class ReadingSentence:
    sentence_ja: str
    sentence_ruby_html: str = ""
    reading_hira: str = ""


@dataclass
class QuestionReadingCache:
    question_text_ja: str = ""
    question_ruby_html: str = ""
    question_reading_hira: str = ""
    option_readings: Dict[str, str] = field(default_factory=dict)
    option_ruby_htmls: Dict[str, str] = field(default_factory=dict)
    passage_text: str = ""
    passage_ruby_html: str = ""
    passage_reading_hira: str = ""
    sentence_readings: List[ReadingSentence] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, value: Any) -> "QuestionReadingCache":
        """Build from stored JSON, tolerating missing or mistyped fields."""
        data = value if isinstance(value, dict) else {}
        sentences = []
        raw_sentences = data.get("sentence_readings")
        for item in raw_sentences if isinstance(raw_sentences, list) else []:
            if not isinstance(item, dict):
                continue
            sentence = _text(item.get("sentence_ja"))
            if not sentence:
                continue
            sentences.append(ReadingSentence(
                sentence_ja=sentence,
                sentence_ruby_html=_text(item.get("sentence_ruby_html")),
                reading_hira=_text(item.get("reading_hira")),
            ))
        return cls(
            question_text_ja=_text(data.get("question_text_ja")),
            question_ruby_html=_text(data.get("question_ruby_html")),
            question_reading_hira=_text(data.get("question_reading_hira")),
            option_readings=_string_map(data.get("option_readings")),
            option_ruby_htmls=_string_map(data.get("option_ruby_htmls")),
            passage_text=_text(data.get("passage_text")),
            passage_ruby_html=_text(data.get("passage_ruby_html")),
            passage_reading_hira=_text(data.get("passage_reading_hira")),
            sentence_readings=sentences,
        )


@dataclass
class PrecomputedReadings:
    """Readings the generator trusts over anything the model proposes."""

    question_reading_hira: str = ""
    question_ruby_html: str = ""
    option_readings: Dict[str, str] = field(default_factory=dict)
    option_ruby_htmls: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExplanationResult:
    source: str  # "cache" or "model"
    prompt_version: str
    explanation: Dict[str, Any]
    model: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): _text(v) for k, v in value.items()}
