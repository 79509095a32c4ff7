"""Prompt building and response normalization for exam explanations.

The model is asked once for a JSON explanation. Whatever comes back is forced
into the full output schema: missing fields become empty values, every option
appears exactly once, verdicts follow the known answer and the tokenizer's
readings win over the model's.
"""

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .classify import to_ascii_digits
from .errors import UpstreamCallError, UpstreamConfigError
from .reading import ReadingAnnotator, split_japanese_sentences
from .structured import PrecomputedReadings, QuestionContext

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

QUESTION_SYSTEM_PROMPT = (
    "You are a senior JLPT teacher. Answer in clear Vietnamese with rigorous reasoning. "
    "If you do not know something, say so; never guess beyond the data you are given."
)

PASSAGE_SYSTEM_PROMPT = (
    "You are a senior JLPT reading-comprehension teacher. Analyse the passage as one "
    "connected argument rather than sentence by sentence. Answer in Vietnamese, concise and rigorous."
)

FILL_SYSTEM_PROMPT = "You are a JLPT teacher. Reply briefly and clearly, as valid JSON only."

FALLBACK_CORRECT_REASON = "Lựa chọn này phù hợp nhất với nội dung và lập luận trong đoạn văn."
FALLBACK_WRONG_REASON = "Lựa chọn này không khớp với thông tin/chủ đề được nêu trong đoạn văn."

NONE = "(none)"


# ── Small coercions ──────────────────────────────────────────────

def text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def as_string_list(value: Any) -> List[str]:
    return [t for t in (text(item) for item in as_list(value)) if t]


def normalize_option_key(value: Any) -> str:
    """``"２"``, ``"option 2"`` and ``2`` all become ``"2"``."""
    raw = to_ascii_digits(text(value))
    if not raw:
        return ""
    match = re.search(r"\d+", raw)
    return match.group(0) if match else raw


def option_sort_key(option: str) -> Tuple[int, Any]:
    key = normalize_option_key(option)
    return (0, int(key)) if key.isdigit() else (1, key)


def sorted_option_keys(options: Dict[str, str]) -> List[str]:
    return sorted(options, key=option_sort_key)


def parse_loose_json(raw: str) -> Any:
    """Parse model output, tolerating code fences and chatter around the object."""
    trimmed = (raw or "").strip()
    trimmed = re.sub(r"^```json\s*", "", trimmed, flags=re.IGNORECASE)
    trimmed = re.sub(r"^```\s*", "", trimmed)
    trimmed = re.sub(r"\s*```$", "", trimmed)
    try:
        return json.loads(trimmed)
    except ValueError:
        pass
    first, last = trimmed.find("{"), trimmed.rfind("}")
    if first >= 0 and last > first:
        try:
            return json.loads(trimmed[first:last + 1])
        except ValueError:
            pass
    raise UpstreamCallError("Invalid JSON from model", kind="invalid_json")


# ── Single question ──────────────────────────────────────────────

def build_question_prompt(ctx: QuestionContext, pre: PrecomputedReadings) -> str:
    is_sentence_order = ctx.question_type == "sentence_order"
    options_text = "\n".join(f"{k}. {v}" for k, v in ctx.options.items()) or NONE
    readings_text = "\n".join(f"{k}. {v}" for k, v in pre.option_readings.items()) or NONE

    if ctx.question_type == "reading_content":
        question_rule = ("Important: question_ja must be the multiple-choice question itself (e.g. '52. ...'), "
                         "never a sentence taken from the passage.")
    else:
        question_rule = "Important: question_ja must be exactly the question the exam asks."

    if is_sentence_order:
        order_rule = ("9) This is a ★ sentence-assembly item: ordered_options MUST contain every option key "
                      "exactly once, give the complete sentence after ordering, and name the fragment in the ★ slot.")
    else:
        order_rule = "9) This is not a sentence-assembly item: set sentence_order_solution to null."

    expected = ""
    if is_sentence_order and ctx.expected_order:
        expected = f"Reference order from the answer key: {'-'.join(ctx.expected_order)}"

    return f"""Analyse one JLPT question and return JSON that follows the schema exactly.
Level: {ctx.level}
Exam ID: {ctx.exam_id}
Part: {ctx.part}
Section: {ctx.section_title or NONE}
Question label: {ctx.question_label or NONE}
Question number: {ctx.display_question_no or NONE}
Mondai: {ctx.mondai_label or NONE}
Question type: {ctx.question_type_label_vi} ({ctx.question_type})
Preferred strategy: {ctx.type_strategy_vi or NONE}
Original question: {ctx.question_text or NONE}
Fill-in-the-blank item: {'yes' if ctx.is_cloze else 'no'}
Sentence with the blank: {ctx.question_with_blank or NONE}
Sentence with the correct answer filled in: {ctx.question_with_answer or NONE}
Blanks in the passage: {', '.join(ctx.blank_labels) or NONE}
Question reading (tokenizer): {pre.question_reading_hira or NONE}
Passage / listening context: {ctx.passage_text or NONE}
{question_rule}
Options:
{options_text}
Option readings (tokenizer):
{readings_text}
Correct answer: {ctx.correct_answer or '(unknown)'}
{expected}

Required steps:
1) Give the original Japanese sentence and its hiragana reading.
2) For every option give the Japanese text, its reading and its Vietnamese meaning.
3) List the hard words (kanji) in the sentence and why they matter.
4) Explain why each option is right or wrong, calling out traps learners fall into.
5) Write the solving strategy for this question type: {ctx.type_strategy_vi or part_instruction(ctx.part)}
6) Consistency check: the option marked correct must be the exam's correct answer.
7) Prefer the tokenizer readings given above; only adjust them when clearly wrong.
8) For fill-in-the-blank items, reason from the sentence with the blank and the flow of the text.
{order_rule}

Return JSON with exactly these keys:
{{
  "question_ja": "string",
  "question_reading_hira": "string",
  "question_translation_vi": "string",
  "sentence_order_solution": {{
    "ordered_options": ["every option key"],
    "ordered_sentence_ja": "string",
    "ordered_sentence_reading_hira": "string",
    "star_option": "option key",
    "reason_vi": "string"
  }} | null,
  "key_point_vi": "string",
  "reasoning_steps_vi": ["string"],
  "option_analysis": [
    {{ "option": "option key", "meaning_vi": "string", "verdict": "correct|wrong", "reason_vi": "string" }}
  ],
  "options_with_reading": [
    {{ "option": "option key", "text_ja": "string", "reading_hira": "string", "meaning_vi": "string" }}
  ],
  "key_vocab": [
    {{ "surface": "string", "reading_hira": "string", "meaning_vi": "string", "why_important": "string" }}
  ],
  "grammar_points": [
    {{ "point": "string", "note_vi": "string" }}
  ],
  "trap_patterns_vi": ["string"],
  "part_strategy_vi": "string",
  "quick_tip_vi": "string",
  "final_conclusion_vi": "string"
}}"""


def part_instruction(part: int) -> str:
    if part == 1:
        return "Focus on kanji readings, meaning in context, and homophone traps."
    if part == 2:
        return "Focus on sentence links, before/after logic, and grammar cues for elimination."
    return "Focus on listening keywords, negation, late changes of mind, and context traps."


def normalize_option_analysis(value: Any, options: Dict[str, str], correct_answer: str) -> List[Dict[str, str]]:
    by_option: Dict[str, Dict[str, str]] = {}
    for item in as_list(value):
        if not isinstance(item, dict):
            continue
        option = normalize_option_key(item.get("option"))
        if not option:
            continue
        by_option[option] = {
            "option": option,
            "meaning_vi": text(item.get("meaning_vi")),
            "verdict": "correct" if item.get("verdict") == "correct" else "wrong",
            "reason_vi": text(item.get("reason_vi")),
        }
    for option in options:
        by_option.setdefault(option, {
            "option": option,
            "meaning_vi": "",
            "verdict": "correct" if option == correct_answer else "wrong",
            "reason_vi": "",
        })
    if options:
        by_option = {k: v for k, v in by_option.items() if k in options}
    out = sorted(by_option.values(), key=lambda row: option_sort_key(row["option"]))
    if correct_answer:
        for row in out:
            row["verdict"] = "correct" if row["option"] == correct_answer else "wrong"
    return out


def normalize_options_with_reading(value: Any, options: Dict[str, str], readings: Dict[str, str],
                                   rubies: Dict[str, str]) -> List[Dict[str, str]]:
    by_option: Dict[str, Dict[str, str]] = {}
    for item in as_list(value):
        if not isinstance(item, dict):
            continue
        option = normalize_option_key(item.get("option"))
        if not option or (options and option not in options):
            continue
        by_option[option] = {
            "option": option,
            "text_ja": text(item.get("text_ja")) or options.get(option, ""),
            "text_ruby_html": rubies.get(option) or text(item.get("text_ruby_html")),
            "reading_hira": readings.get(option) or text(item.get("reading_hira")),
            "meaning_vi": text(item.get("meaning_vi")),
        }
    for option, option_text in options.items():
        by_option.setdefault(option, {
            "option": option,
            "text_ja": option_text,
            "text_ruby_html": rubies.get(option, ""),
            "reading_hira": readings.get(option, ""),
            "meaning_vi": "",
        })
    return sorted(by_option.values(), key=lambda row: option_sort_key(row["option"]))


def normalize_key_vocab(value: Any) -> List[Dict[str, str]]:
    out = []
    for item in as_list(value):
        if not isinstance(item, dict):
            continue
        row = {k: text(item.get(k)) for k in ("surface", "reading_hira", "meaning_vi", "why_important")}
        if any(row.values()):
            out.append(row)
    return out


def normalize_grammar_points(value: Any) -> List[Dict[str, str]]:
    out = []
    for item in as_list(value):
        if not isinstance(item, dict):
            continue
        row = {"point": text(item.get("point")), "note_vi": text(item.get("note_vi"))}
        if row["point"] or row["note_vi"]:
            out.append(row)
    return out


def normalize_sentence_order_solution(value: Any, ctx: QuestionContext) -> Optional[Dict[str, Any]]:
    if ctx.question_type != "sentence_order":
        return None
    row = as_dict(value)
    ordered = [normalize_option_key(item) for item in as_list(row.get("ordered_options"))]
    return {
        "ordered_options": [o for o in ordered if o and o in ctx.options],
        "ordered_sentence_ja": text(row.get("ordered_sentence_ja")),
        "ordered_sentence_ruby_html": text(row.get("ordered_sentence_ruby_html")),
        "ordered_sentence_reading_hira": text(row.get("ordered_sentence_reading_hira")),
        "star_option": ctx.correct_answer or normalize_option_key(row.get("star_option")),
        "reason_vi": text(row.get("reason_vi")),
    }


def normalize_explanation(raw: Any, ctx: QuestionContext, pre: PrecomputedReadings) -> Dict[str, Any]:
    """Force arbitrary model output into the complete explanation schema."""
    value = as_dict(raw)
    question_fallback = ctx.question_with_blank or ctx.question_text
    if ctx.question_type in ("reading_content", "reading_cloze"):
        question_ja = question_fallback
    else:
        question_ja = text(value.get("question_ja")) or question_fallback

    return {
        "question_ja": question_ja,
        "question_ruby_html": pre.question_ruby_html,
        "question_reading_hira": pre.question_reading_hira or text(value.get("question_reading_hira")),
        "question_translation_vi": text(value.get("question_translation_vi")),
        "sentence_order_solution": normalize_sentence_order_solution(value.get("sentence_order_solution"), ctx),
        "key_point_vi": text(value.get("key_point_vi")),
        "reasoning_steps_vi": as_string_list(value.get("reasoning_steps_vi")),
        "option_analysis": normalize_option_analysis(value.get("option_analysis"), ctx.options, ctx.correct_answer),
        "options_with_reading": normalize_options_with_reading(
            value.get("options_with_reading"), ctx.options, pre.option_readings, pre.option_ruby_htmls),
        "key_vocab": normalize_key_vocab(value.get("key_vocab")),
        "grammar_points": normalize_grammar_points(value.get("grammar_points")),
        "trap_patterns_vi": as_string_list(value.get("trap_patterns_vi")),
        "part_strategy_vi": text(value.get("part_strategy_vi")) or ctx.type_strategy_vi,
        "quick_tip_vi": text(value.get("quick_tip_vi")),
        "final_conclusion_vi": text(value.get("final_conclusion_vi")),
    }


# ── Passage groups ───────────────────────────────────────────────

@dataclass
class PassageQuestion:
    label: str
    with_blank: str
    with_answer: str
    options: Dict[str, str]
    correct_answer: str


@dataclass
class PassagePayload:
    level: str
    exam_id: str
    part: int
    section_title: str
    mondai_label: str
    question_type: str
    label_vi: str
    strategy_vi: str
    passage_text: str
    blank_labels: List[str] = field(default_factory=list)
    questions: List[PassageQuestion] = field(default_factory=list)

    @classmethod
    def from_contexts(cls, contexts: Sequence[QuestionContext], passage_text: str,
                      question_type: str, label_vi: str, strategy_vi: str) -> "PassagePayload":
        first = contexts[0]
        blank_labels: List[str] = []
        for ctx in contexts:
            blank_labels.extend(b for b in ctx.blank_labels if b not in blank_labels)
        return cls(
            level=first.level,
            exam_id=first.exam_id,
            part=first.part,
            section_title=first.section_title,
            mondai_label=first.mondai_label,
            question_type=question_type,
            label_vi=label_vi,
            strategy_vi=strategy_vi,
            passage_text=passage_text,
            blank_labels=blank_labels,
            questions=[
                PassageQuestion(
                    label=str(ctx.display_question_no or ctx.question_label),
                    with_blank=ctx.question_with_blank or ctx.question_text,
                    with_answer=ctx.question_with_answer,
                    options=dict(ctx.options),
                    correct_answer=ctx.correct_answer,
                )
                for ctx in contexts
            ],
        )


@dataclass
class PassageReadings:
    passage_ruby_html: str = ""
    passage_reading_hira: str = ""
    sentence_readings: List[Dict[str, str]] = field(default_factory=list)
    blank_readings: Dict[str, str] = field(default_factory=dict)
    blank_rubies: Dict[str, str] = field(default_factory=dict)
    answer_readings: Dict[str, str] = field(default_factory=dict)
    answer_rubies: Dict[str, str] = field(default_factory=dict)
    option_readings: Dict[str, Dict[str, str]] = field(default_factory=dict)
    option_rubies: Dict[str, Dict[str, str]] = field(default_factory=dict)


def build_passage_prompt(payload: PassagePayload, pre: PassageReadings) -> str:
    is_cloze = payload.question_type == "reading_cloze"
    sentence_list = "\n".join(
        f"{i}. {item['sentence_ja']}" for i, item in enumerate(pre.sentence_readings, start=1)
    ) or NONE

    blocks = []
    for q in payload.questions:
        option_lines = []
        for key, option_text in q.options.items():
            reading = pre.option_readings.get(q.label, {}).get(key, "")
            option_lines.append(f"{key}. {option_text}" + (f" (reading: {reading})" if reading else ""))
        options_text = "\n".join(option_lines) or NONE
        if is_cloze:
            blocks.append(f"""Question {q.label}:
- Sentence with the blank: {q.with_blank or NONE}
- Reading of that sentence: {pre.blank_readings.get(q.label) or NONE}
- Sentence with the correct answer: {q.with_answer or NONE}
- Reading of the answered sentence: {pre.answer_readings.get(q.label) or NONE}
- Correct answer: {q.correct_answer or '(unknown)'}
- Options:
{options_text}""")
        else:
            blocks.append(f"""Question {q.label}:
- Question: {q.with_blank or NONE}
- Question reading: {pre.blank_readings.get(q.label) or NONE}
- Correct answer: {q.correct_answer or '(unknown)'}
- Options:
{options_text}""")

    if is_cloze:
        opening = "Analyse one reading-comprehension cluster that has several numbered blanks."
        blank_line = f"Blanks: {', '.join(payload.blank_labels) or NONE}"
        step1 = "1) Summarise the whole passage first, then go through each blank."
        step2 = ("2) For each blank, explain why the correct option fits the flow and why the others "
                 "break the context.")
        step4 = "4) Point out any trap where blanks are easy to confuse with each other."
    else:
        opening = "Analyse the reading passage and answer its questions from the passage content."
        blank_line = "Format: content questions about the passage (not fill-in-the-blank)."
        step1 = "1) Summarise the whole passage first, then go through each question."
        step2 = "2) For each question, cite the evidence in the passage for the answer and why the others are wrong."
        step4 = "4) Point out reading traps such as misleading wording or inferences beyond the text."

    questions_text = "\n\n".join(blocks) or NONE
    return f"""{opening}
Level: {payload.level}
Exam ID: {payload.exam_id}
Part: {payload.part}
Section: {payload.section_title or NONE}
Mondai: {payload.mondai_label or NONE}
Question type: {payload.label_vi} ({payload.question_type})
Preferred strategy: {payload.strategy_vi or NONE}
{blank_line}
Passage:
{payload.passage_text or NONE}
Passage reading (tokenizer):
{pre.passage_reading_hira or NONE}
Sentences to translate (keep this order):
{sentence_list}

Questions in this cluster:
{questions_text}

Requirements:
{step1}
{step2}
3) Stress how sentences connect (cause and effect, contrast, change of opinion, conclusion).
{step4}
5) sentence_readings must follow the sentence list above; use its index and never reorder it.
6) In every question.option_analysis, cover every option and never leave meaning_vi or reason_vi empty.

Return JSON with exactly this schema:
{{
  "passage_ja": "string",
  "passage_translation_vi": "string",
  "sentence_readings": [
    {{ "index": 1, "sentence_ja": "string", "translation_vi": "string" }}
  ],
  "passage_theme_vi": "string",
  "passage_summary_vi": "string",
  "key_logic_vi": ["string"],
  "questions": [
    {{
      "question_label": "string",
      "sentence_with_blank": "string",
      "sentence_with_answer": "string",
      "correct_option": "option key",
      "option_analysis": [
        {{ "option": "option key", "meaning_vi": "string", "verdict": "correct|wrong", "reason_vi": "string" }}
      ],
      "reasoning_vi": "string"
    }}
  ],
  "global_traps_vi": ["string"],
  "reading_strategy_vi": "string",
  "final_takeaway_vi": "string"
}}"""


def normalize_sentence_key(value: str) -> str:
    out = re.sub(r"\s+", "", value or "")
    out = re.sub(r"[（(]", "(", out)
    out = re.sub(r"[）)]", ")", out)
    return re.sub(r"[。．]", "。", out).strip()


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _option_details(q: PassageQuestion, analysis: List[Dict[str, str]], pre: PassageReadings) -> List[Dict[str, str]]:
    meanings = {normalize_option_key(row["option"]): row["meaning_vi"] for row in analysis}
    rows = [
        {
            "option": option,
            "text_ja": option_text,
            "text_ruby_html": pre.option_rubies.get(q.label, {}).get(option, ""),
            "reading_hira": pre.option_readings.get(q.label, {}).get(option, ""),
            "meaning_vi": meanings.get(normalize_option_key(option), ""),
        }
        for option, option_text in q.options.items()
    ]
    return sorted(rows, key=lambda row: option_sort_key(row["option"]))


def normalize_passage_explanation(raw: Any, payload: PassagePayload, pre: PassageReadings) -> Dict[str, Any]:
    """Force model output for a passage group into the complete passage schema."""
    value = as_dict(raw)
    by_label: Dict[str, Dict[str, Any]] = {}
    for item in as_list(value.get("questions")):
        if isinstance(item, dict) and text(item.get("question_label")):
            by_label[text(item.get("question_label"))] = item

    questions = []
    for q in payload.questions:
        item = by_label.get(q.label, {})
        analysis = normalize_option_analysis(item.get("option_analysis"), q.options, q.correct_answer)
        questions.append({
            "question_label": q.label,
            "sentence_with_blank": text(item.get("sentence_with_blank")) or q.with_blank,
            "sentence_with_blank_ruby_html": pre.blank_rubies.get(q.label, ""),
            "sentence_with_blank_reading_hira": pre.blank_readings.get(q.label, ""),
            "sentence_with_answer": text(item.get("sentence_with_answer")) or q.with_answer,
            "sentence_with_answer_ruby_html": pre.answer_rubies.get(q.label, ""),
            "sentence_with_answer_reading_hira": pre.answer_readings.get(q.label, ""),
            "correct_option": q.correct_answer or normalize_option_key(item.get("correct_option")),
            "option_details": _option_details(q, analysis, pre),
            "option_analysis": analysis,
            "reasoning_vi": text(item.get("reasoning_vi")),
        })

    by_sentence: Dict[str, str] = {}
    by_index: Dict[int, str] = {}
    for item in as_list(value.get("sentence_readings")):
        if not isinstance(item, dict):
            continue
        translation = text(item.get("translation_vi"))
        if not translation:
            continue
        index = _positive_int(item.get("index"))
        if index is not None:
            by_index[index - 1] = translation
        key = normalize_sentence_key(text(item.get("sentence_ja")))
        if key:
            by_sentence[key] = translation

    sentence_readings = [
        {
            "sentence_ja": s["sentence_ja"],
            "sentence_ruby_html": s.get("sentence_ruby_html", ""),
            "reading_hira": s.get("reading_hira", ""),
            "translation_vi": by_sentence.get(normalize_sentence_key(s["sentence_ja"])) or by_index.get(i, ""),
        }
        for i, s in enumerate(pre.sentence_readings)
    ]

    return {
        "passage_ja": text(value.get("passage_ja")) or payload.passage_text,
        "passage_ruby_html": pre.passage_ruby_html,
        "passage_reading_hira": pre.passage_reading_hira,
        "passage_translation_vi": text(value.get("passage_translation_vi")),
        "sentence_readings": sentence_readings,
        "passage_theme_vi": text(value.get("passage_theme_vi")),
        "passage_summary_vi": text(value.get("passage_summary_vi")),
        "key_logic_vi": as_string_list(value.get("key_logic_vi")),
        "questions": questions,
        "global_traps_vi": as_string_list(value.get("global_traps_vi")),
        "reading_strategy_vi": text(value.get("reading_strategy_vi")) or payload.strategy_vi,
        "final_takeaway_vi": text(value.get("final_takeaway_vi")),
    }


def apply_option_fallback(question: Dict[str, Any]) -> Dict[str, Any]:
    """Deterministic Vietnamese reasons for options the model left empty."""
    correct = normalize_option_key(question.get("correct_option"))
    for row in question["option_analysis"]:
        if not row["reason_vi"]:
            is_correct = normalize_option_key(row["option"]) == correct
            row["reason_vi"] = FALLBACK_CORRECT_REASON if is_correct else FALLBACK_WRONG_REASON
    meanings = {normalize_option_key(r["option"]): r["meaning_vi"] for r in question["option_analysis"]}
    for row in question["option_details"]:
        row["meaning_vi"] = row["meaning_vi"] or meanings.get(normalize_option_key(row["option"]), "")
    return question


def merge_passage_option_content(explanation: Dict[str, Any], raw: Any) -> Dict[str, Any]:
    fills: Dict[str, Dict[str, Dict[str, str]]] = {}
    for item in as_list(as_dict(raw).get("questions")):
        if not isinstance(item, dict) or not text(item.get("question_label")):
            continue
        fills[text(item.get("question_label"))] = {
            normalize_option_key(opt.get("option")): {
                "meaning_vi": text(opt.get("meaning_vi")),
                "reason_vi": text(opt.get("reason_vi")),
            }
            for opt in as_list(item.get("options"))
            if isinstance(opt, dict) and normalize_option_key(opt.get("option"))
        }

    for question in explanation["questions"]:
        filled = fills.get(question["question_label"], {})
        for row in question["option_analysis"]:
            patch = filled.get(normalize_option_key(row["option"]), {})
            row["meaning_vi"] = row["meaning_vi"] or patch.get("meaning_vi", "")
            row["reason_vi"] = row["reason_vi"] or patch.get("reason_vi", "")
        for row in question["option_details"]:
            patch = filled.get(normalize_option_key(row["option"]), {})
            row["meaning_vi"] = row["meaning_vi"] or patch.get("meaning_vi", "")
        apply_option_fallback(question)
    return explanation


# ── Generator ────────────────────────────────────────────────────

class ExplanationGenerator:
    def __init__(self, model: Any, annotator: ReadingAnnotator) -> None:
        self.model = model
        self.annotator = annotator

    @property
    def model_name(self) -> str:
        return getattr(self.model, "model_name", "")

    def ensure_configured(self) -> None:
        if not getattr(self.model, "configured", True):
            raise UpstreamConfigError("OPENAI_API_KEY is not configured")

    async def _call_json(self, prompt: str, system: str, temperature: float) -> Any:
        raw = await self.model.prompt(prompt, system=system, temperature=temperature)
        if not (raw or "").strip():
            raise UpstreamCallError("Model returned empty content", kind="empty")
        return parse_loose_json(raw)

    async def build_precomputed(self, ctx: QuestionContext) -> PrecomputedReadings:
        source = ctx.reading_source
        pre = PrecomputedReadings(
            question_reading_hira=await self.annotator.to_reading_hiragana(source),
            question_ruby_html=await self.annotator.to_ruby_html(source),
        )
        for key, option_text in ctx.options.items():
            pre.option_readings[key] = await self.annotator.to_reading_hiragana(option_text)
            pre.option_ruby_htmls[key] = await self.annotator.to_ruby_html(option_text)
        return pre

    async def generate(self, ctx: QuestionContext, pre: Optional[PrecomputedReadings] = None) -> Tuple[Dict[str, Any], str]:
        """One model call, then normalization. Returns (explanation, model id)."""
        self.ensure_configured()
        if pre is None or not pre.question_reading_hira:
            pre = await self.build_precomputed(ctx)
        prompt = build_question_prompt(ctx, pre)
        if DEBUG_MODE:
            print(f"🤖 Explaining {ctx.level}/{ctx.exam_id} part {ctx.part} "
                  f"s{ctx.section_index} q{ctx.question_index} as {ctx.question_type}")
        parsed = await self._call_json(prompt, QUESTION_SYSTEM_PROMPT, 0.2)
        return normalize_explanation(parsed, ctx, pre), self.model_name

    async def build_passage_readings(self, payload: PassagePayload,
                                     seed: Optional[PassageReadings] = None) -> PassageReadings:
        seed = seed or PassageReadings()
        annotate = self.annotator
        try:
            pre = PassageReadings(
                passage_ruby_html=seed.passage_ruby_html or await annotate.to_ruby_html(payload.passage_text),
                passage_reading_hira=seed.passage_reading_hira or await annotate.to_reading_hiragana(payload.passage_text),
            )
            if seed.sentence_readings:
                pre.sentence_readings = [dict(s) for s in seed.sentence_readings]
            else:
                for sentence in split_japanese_sentences(payload.passage_text):
                    pre.sentence_readings.append({
                        "sentence_ja": sentence,
                        "sentence_ruby_html": await annotate.to_ruby_html(sentence),
                        "reading_hira": await annotate.to_reading_hiragana(sentence),
                    })
            for q in payload.questions:
                pre.blank_readings[q.label] = seed.blank_readings.get(q.label) or await annotate.to_reading_hiragana(q.with_blank)
                pre.blank_rubies[q.label] = seed.blank_rubies.get(q.label) or await annotate.to_ruby_html(q.with_blank)
                pre.answer_readings[q.label] = seed.answer_readings.get(q.label) or await annotate.to_reading_hiragana(q.with_answer)
                pre.answer_rubies[q.label] = seed.answer_rubies.get(q.label) or await annotate.to_ruby_html(q.with_answer)
                seeded_readings = seed.option_readings.get(q.label, {})
                seeded_rubies = seed.option_rubies.get(q.label, {})
                pre.option_readings[q.label] = {}
                pre.option_rubies[q.label] = {}
                for key, option_text in q.options.items():
                    pre.option_readings[q.label][key] = seeded_readings.get(key) or await annotate.to_reading_hiragana(option_text)
                    pre.option_rubies[q.label][key] = seeded_rubies.get(key) or await annotate.to_ruby_html(option_text)
        except Exception as e:
            print(f"⚠️ Passage readings unavailable, continuing without them: {e}")
            return PassageReadings()
        return pre

    async def generate_passage(self, payload: PassagePayload,
                               seed: Optional[PassageReadings] = None) -> Tuple[Dict[str, Any], str]:
        self.ensure_configured()
        pre = await self.build_passage_readings(payload, seed)
        prompt = build_passage_prompt(payload, pre)
        if DEBUG_MODE:
            print(f"🤖 Explaining passage group {payload.level}/{payload.exam_id} part {payload.part} "
                  f"({len(payload.questions)} questions)")
        parsed = await self._call_json(prompt, PASSAGE_SYSTEM_PROMPT, 0.2)
        explanation = normalize_passage_explanation(parsed, payload, pre)
        return await self.fill_missing_option_content(payload, explanation), self.model_name

    async def fill_missing_option_content(self, payload: PassagePayload, explanation: Dict[str, Any]) -> Dict[str, Any]:
        """One follow-up call for empty option meanings or reasons; never raises."""
        missing = [
            q["question_label"] for q in explanation["questions"]
            if any(not row["meaning_vi"] or not row["reason_vi"] for row in q["option_analysis"])
        ]
        if not missing:
            return explanation

        info = [
            {
                "question_label": q.label,
                "question_text": q.with_blank,
                "correct_option": q.correct_answer,
                "options": [{"option": k, "text_ja": v} for k, v in q.options.items()],
            }
            for q in payload.questions if q.label in missing
        ]
        prompt = f"""Fill in the missing parts of a JLPT reading explanation.
Return JSON with this schema:
{{ "questions": [ {{ "question_label": "string", "options": [ {{ "option": "option key", "meaning_vi": "string", "reason_vi": "string" }} ] }} ] }}
meaning_vi and reason_vi must never be empty.
Passage:
{payload.passage_text or NONE}
Questions to fill:
{json.dumps(info, ensure_ascii=False)}"""

        try:
            parsed = await self._call_json(prompt, FILL_SYSTEM_PROMPT, 0.1)
        except Exception as e:
            print(f"⚠️ Option fill-in failed, using fallback reasons: {e}")
            for question in explanation["questions"]:
                apply_option_fallback(question)
            return explanation
        return merge_passage_option_content(explanation, parsed)
