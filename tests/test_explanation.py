"""
Tests for explanation prompts, JSON parsing and schema normalization.
"""

from typing import Any

import pytest

from jlpt_explainer.errors import UpstreamCallError, UpstreamConfigError
from jlpt_explainer.explanation import (
    FALLBACK_CORRECT_REASON,
    FALLBACK_WRONG_REASON,
    ExplanationGenerator,
    PassagePayload,
    build_question_prompt,
    normalize_explanation,
    normalize_option_key,
    normalize_passage_explanation,
    PassageReadings,
    parse_loose_json,
)
from jlpt_explainer.extract import extract_passage_group
from jlpt_explainer.structured import (
    EXPLANATION_KEYS,
    PASSAGE_EXPLANATION_KEYS,
    PassageGroupCoordinate,
    PrecomputedReadings,
    QuestionContext,
)

from conftest import SAMPLE_EXAM_PART, MockAIModel

OPTIONS = {"1": "しかし", "2": "だから", "3": "また", "4": "つまり"}


def grammar_context(**overrides: Any) -> QuestionContext:
    values = dict(
        level="N2",
        exam_id="2023-07",
        part=1,
        section_index=3,
        question_index=0,
        question_type="grammar_choice",
        question_text="雨が降った。（　）試合は中止になった。",
        question_with_blank="雨が降った。（　）試合は中止になった。",
        options=dict(OPTIONS),
        correct_answer="2",
    )
    values.update(overrides)
    return QuestionContext(**values)


# ── Normalization ────────────────────────────────────────────────

@pytest.mark.parametrize("raw", [None, "garbage", [], {"option_analysis": "nope"}, {}])
def test_garbage_response_yields_complete_schema(raw: Any) -> None:
    """Four options and answer "2": four entries, only "2" correct."""
    explanation = normalize_explanation(raw, grammar_context(), PrecomputedReadings())

    assert set(explanation) == set(EXPLANATION_KEYS)
    assert [row["option"] for row in explanation["option_analysis"]] == ["1", "2", "3", "4"]
    assert [row["verdict"] for row in explanation["option_analysis"]] == ["wrong", "correct", "wrong", "wrong"]
    assert [row["text_ja"] for row in explanation["options_with_reading"]] == list(OPTIONS.values())
    assert explanation["sentence_order_solution"] is None
    assert explanation["question_ja"] == "雨が降った。（　）試合は中止になった。"


def test_model_verdicts_are_overridden() -> None:
    raw = {
        "option_analysis": [
            {"option": "１", "verdict": "correct", "reason_vi": "sai"},
            {"option": "option 2", "verdict": "wrong", "reason_vi": "đúng"},
            {"option": "9", "verdict": "correct"},
        ],
    }
    explanation = normalize_explanation(raw, grammar_context(), PrecomputedReadings())

    rows = {row["option"]: row for row in explanation["option_analysis"]}
    assert set(rows) == {"1", "2", "3", "4"}
    assert rows["1"]["verdict"] == "wrong"
    assert rows["1"]["reason_vi"] == "sai"
    assert rows["2"]["verdict"] == "correct"


def test_precomputed_readings_win() -> None:
    pre = PrecomputedReadings(
        question_reading_hira="あめがふった。",
        question_ruby_html="<ruby>雨<rt>あめ</rt></ruby>",
        option_readings={"1": "しかし"},
        option_ruby_htmls={"1": "しかし"},
    )
    raw = {
        "question_reading_hira": "wrong",
        "options_with_reading": [{"option": "1", "reading_hira": "wrong", "meaning_vi": "nhưng"}],
    }
    explanation = normalize_explanation(raw, grammar_context(), pre)

    assert explanation["question_reading_hira"] == "あめがふった。"
    assert explanation["question_ruby_html"] == "<ruby>雨<rt>あめ</rt></ruby>"
    first = explanation["options_with_reading"][0]
    assert first["reading_hira"] == "しかし"
    assert first["meaning_vi"] == "nhưng"


def test_reading_question_text_pinned_to_source() -> None:
    ctx = grammar_context(question_type="reading_content", question_text="52. 筆者の考えは？",
                          question_with_blank="52. 筆者の考えは？")
    explanation = normalize_explanation({"question_ja": "本文の一文"}, ctx, PrecomputedReadings())
    assert explanation["question_ja"] == "52. 筆者の考えは？"


def test_part_strategy_defaults_to_type_strategy() -> None:
    ctx = grammar_context(type_strategy_vi="Chiến lược")
    assert normalize_explanation({}, ctx, PrecomputedReadings())["part_strategy_vi"] == "Chiến lược"


def test_option_key_normalization() -> None:
    assert normalize_option_key("２") == "2"
    assert normalize_option_key("option 3") == "3"
    assert normalize_option_key(4) == "4"
    assert normalize_option_key("A") == "A"
    assert normalize_option_key(None) == ""


# ── JSON parsing ─────────────────────────────────────────────────

def test_parse_loose_json() -> None:
    assert parse_loose_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_loose_json('Here you go: {"a": {"b": 2}} thanks') == {"a": {"b": 2}}
    with pytest.raises(UpstreamCallError) as excinfo:
        parse_loose_json("no json here")
    assert excinfo.value.kind == "invalid_json"
    assert excinfo.value.status == 502


# ── Prompts ──────────────────────────────────────────────────────

def test_question_prompt_mentions_context() -> None:
    ctx = grammar_context(question_type="sentence_order", expected_order=["2", "4", "1", "3"])
    prompt = build_question_prompt(ctx, PrecomputedReadings(option_readings={"1": "しかし"}))
    assert "Level: N2" in prompt
    assert "Reference order from the answer key: 2-4-1-3" in prompt
    assert "1. しかし" in prompt
    assert "ordered_options MUST contain every option key" in prompt


# ── Generator ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_requires_credential(annotator: Any) -> None:
    generator = ExplanationGenerator(MockAIModel(configured=False), annotator)
    with pytest.raises(UpstreamConfigError):
        await generator.generate(grammar_context())


@pytest.mark.asyncio
async def test_generate_empty_content(annotator: Any) -> None:
    generator = ExplanationGenerator(MockAIModel(["   "]), annotator)
    with pytest.raises(UpstreamCallError) as excinfo:
        await generator.generate(grammar_context())
    assert excinfo.value.kind == "empty"


@pytest.mark.asyncio
async def test_generate_computes_readings_when_missing(annotator: Any) -> None:
    model = MockAIModel([{"key_point_vi": "Liên từ chỉ kết quả."}])
    explanation, model_name = await ExplanationGenerator(model, annotator).generate(
        grammar_context(question_text="学校", question_with_blank="学校"))

    assert model_name == "mock-model"
    assert explanation["key_point_vi"] == "Liên từ chỉ kết quả."
    assert explanation["question_reading_hira"] == "がっこう"
    assert model.calls[0]["temperature"] == 0.2


# ── Passage groups ───────────────────────────────────────────────

def passage_payload() -> PassagePayload:
    contexts, passage = extract_passage_group(SAMPLE_EXAM_PART, PassageGroupCoordinate("N2", "2023-07", 2, 1, (0, 1)))
    return PassagePayload.from_contexts(contexts, passage, "reading_cloze", "label", "strategy")


def test_passage_normalization_from_garbage() -> None:
    payload = passage_payload()
    explanation = normalize_passage_explanation("garbage", payload, PassageReadings())

    assert set(explanation) == set(PASSAGE_EXPLANATION_KEYS)
    assert explanation["passage_ja"] == payload.passage_text
    assert explanation["reading_strategy_vi"] == "strategy"
    assert [q["question_label"] for q in explanation["questions"]] == ["48", "49"]
    assert [q["correct_option"] for q in explanation["questions"]] == ["2", "1"]
    assert payload.blank_labels == ["（48）", "（49）"]


@pytest.mark.asyncio
async def test_passage_fill_failure_uses_fallback_reasons(annotator: Any) -> None:
    model = MockAIModel([{}, UpstreamCallError("down", kind="transport")])
    explanation, _ = await ExplanationGenerator(model, annotator).generate_passage(passage_payload())

    assert len(model.calls) == 2
    assert model.calls[1]["temperature"] == 0.1
    first = explanation["questions"][0]
    reasons = {row["option"]: row["reason_vi"] for row in first["option_analysis"]}
    assert reasons["2"] == FALLBACK_CORRECT_REASON
    assert reasons["1"] == FALLBACK_WRONG_REASON


@pytest.mark.asyncio
async def test_passage_fill_merges_model_content(annotator: Any) -> None:
    fill = {"questions": [{"question_label": "48", "options": [
        {"option": "1", "meaning_vi": "nhưng", "reason_vi": "Không phải đối lập."},
    ]}]}
    model = MockAIModel([{}, fill])
    explanation, _ = await ExplanationGenerator(model, annotator).generate_passage(passage_payload())

    first = explanation["questions"][0]
    row = next(r for r in first["option_analysis"] if r["option"] == "1")
    assert row["meaning_vi"] == "nhưng"
    assert row["reason_vi"] == "Không phải đối lập."
    detail = next(r for r in first["option_details"] if r["option"] == "1")
    assert detail["meaning_vi"] == "nhưng"
    assert detail["reading_hira"] == "しかし"
