"""
Tests for question type classification.
"""

import pytest

from jlpt_explainer.classify import (
    TYPE_LABELS,
    ClassifyInput,
    Rule,
    classify,
    describe_question_type,
    detect_mondai_number,
    section_kind_for,
)


@pytest.mark.parametrize("level,part", [("N1", 1), ("N2", 2), ("N5", 3)])
def test_star_in_section_title_is_sentence_order(level: str, part: int) -> None:
    info = classify(ClassifyInput(level=level, part=part, section_title="次の文の　★　に入る最もよいもの"))
    assert info.question_type == "sentence_order"


def test_n2_mondai_table() -> None:
    info = classify(ClassifyInput(level="N2", part=1, section_title="問題7 次の文の（　）に入れるのに最もよいもの"))
    assert info.mondai_number == 7
    assert info.mondai_label == "問題7"
    assert info.question_type == "grammar_choice"
    assert info.label_vi == TYPE_LABELS["grammar_choice"]


def test_fullwidth_mondai_number() -> None:
    info = classify(ClassifyInput(level="n2", part=2, section_title="問題１０"))
    assert info.mondai_number == 10
    assert info.question_type == "reading_content"


def test_question_number_range_for_n2_part_2() -> None:
    assert detect_mondai_number("N2", 2, "", "50", "") == 9
    assert detect_mondai_number("N2", 2, "", "70", "") == 14
    assert detect_mondai_number("N2", 1, "", "50", "") is None


def test_section_title_phrasing() -> None:
    assert detect_mondai_number("N2", 2, "次のAとBの文章を読んで", "", "") == 12
    assert detect_mondai_number("N2", 2, "文章全体の内容を考えて", "", "") == 9


def test_listening_part() -> None:
    info = classify(ClassifyInput(level="N3", part=3, section_title="もんだい1"))
    assert info.question_type == "listening"


def test_cloze_with_passage_without_table() -> None:
    info = classify(ClassifyInput(level="N4", part=2, has_passage=True, is_cloze=True))
    assert info.question_type == "reading_cloze"


def test_passage_without_cloze_is_reading_content() -> None:
    info = classify(ClassifyInput(level="N4", part=2, has_passage=True))
    assert info.question_type == "reading_content"


def test_keyword_rules() -> None:
    assert classify(ClassifyInput(level="N4", part=1, section_title="ことばの読み方")).question_type == "vocab_kanji_reading"
    assert classify(ClassifyInput(level="N4", part=1, section_title="文法")).question_type == "grammar_choice"
    assert classify(ClassifyInput(level="N4", part=1, section_title="意味が近いもの")).question_type == "vocab_context"


def test_short_options_look_like_sentence_order() -> None:
    info = classify(ClassifyInput(level="N4", part=1, option_texts=["が", "に", "を", "で"]))
    assert info.question_type == "sentence_order"


def test_nothing_matches() -> None:
    info = classify(ClassifyInput(level="N5", part=1))
    assert info.question_type == "unknown"
    assert info.mondai_label == ""
    assert info.label_vi == TYPE_LABELS["unknown"]


def test_custom_rules() -> None:
    rules = [Rule("always_listening", lambda r: "listening")]
    assert classify(ClassifyInput(level="N2", part=1, section_title="★"), rules=rules).question_type == "listening"


def test_describe_and_section_kind() -> None:
    assert describe_question_type("not-a-type") == describe_question_type("unknown")
    assert section_kind_for("vocab_context") == "language"
    assert section_kind_for("sentence_order") == "sentence_order"
    assert section_kind_for("unknown") == "unknown"
