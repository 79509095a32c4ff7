"""
Tests for the per-question reading cache and its precompute.
"""

from typing import Any

import pytest

from jlpt_explainer.extract import extract_question_context
from jlpt_explainer.reading_cache import ReadingCacheService
from jlpt_explainer.structured import ExamQuestionCoordinate, QuestionReadingCache

from conftest import SAMPLE_EXAM_ID, SAMPLE_EXAM_PART, SAMPLE_LEVEL, SAMPLE_PART

CLOZE = ExamQuestionCoordinate(SAMPLE_LEVEL, SAMPLE_EXAM_ID, SAMPLE_PART, 1, 0)


@pytest.mark.asyncio
async def test_get_or_create_builds_and_stores(seeded_db: Any, annotator: Any) -> None:
    service = ReadingCacheService(seeded_db, annotator)
    ctx = extract_question_context(SAMPLE_EXAM_PART, CLOZE)

    cache = await service.get_or_create(ctx)

    assert cache.question_text_ja == "彼は（48）学校に行った。"
    assert cache.question_reading_hira == "かれは（48）がっこうにいった。"
    assert cache.option_readings == {"1": "しかし", "2": "だから", "3": "また", "4": "つまり"}
    assert [s.sentence_ja for s in cache.sentence_readings] == [
        "前の文です。", "彼は（48）学校に行った。", "次の文（49）です。",
    ]
    stored = await service.get(CLOZE)
    assert stored == cache


@pytest.mark.asyncio
async def test_cached_entry_reused_until_forced(seeded_db: Any, annotator: Any) -> None:
    service = ReadingCacheService(seeded_db, annotator)
    ctx = extract_question_context(SAMPLE_EXAM_PART, CLOZE)
    await seeded_db.save_reading_cache(CLOZE, {"question_text_ja": "old", "question_reading_hira": "おーるど"})

    reused = await service.get_or_create(ctx)
    rebuilt = await service.get_or_create(ctx, force=True)

    assert reused.question_text_ja == "old"
    assert rebuilt.question_text_ja == "彼は（48）学校に行った。"
    assert (await service.get(CLOZE)).question_text_ja == "彼は（48）学校に行った。"


@pytest.mark.asyncio
async def test_mismatched_cache_merged_with_fresh_readings(seeded_db: Any, annotator: Any) -> None:
    """Stale question text is recomputed; option readings present in the cache are kept."""
    service = ReadingCacheService(seeded_db, annotator)
    ctx = extract_question_context(SAMPLE_EXAM_PART, CLOZE)
    stale = QuestionReadingCache(
        question_text_ja="old",
        question_reading_hira="おーるど",
        option_readings={"1": "cached"},
    )

    pre = await service.precomputed_for(ctx, stale)

    assert pre.question_reading_hira == "かれは（48）がっこうにいった。"
    assert pre.option_readings["1"] == "cached"
    assert pre.option_readings["2"] == "だから"


def test_from_dict_tolerates_garbage() -> None:
    cache = QuestionReadingCache.from_dict({"option_readings": "x", "sentence_readings": [1, {"sentence_ja": "文"}]})
    assert cache.option_readings == {}
    assert [s.sentence_ja for s in cache.sentence_readings] == ["文"]
    assert QuestionReadingCache.from_dict(None) == QuestionReadingCache()


@pytest.mark.asyncio
async def test_precompute_exam_counts(seeded_db: Any, annotator: Any) -> None:
    service = ReadingCacheService(seeded_db, annotator)

    first = await service.precompute_exam(SAMPLE_LEVEL, SAMPLE_EXAM_ID)
    second = await service.precompute_exam(SAMPLE_LEVEL, SAMPLE_EXAM_ID)
    forced = await service.precompute_exam(SAMPLE_LEVEL, SAMPLE_EXAM_ID, force=True)

    assert first == {"total": 3, "created": 3, "skipped": 0}
    assert second == {"total": 3, "created": 0, "skipped": 3}
    assert forced == {"total": 3, "created": 3, "skipped": 0}


@pytest.mark.asyncio
async def test_precompute_all_levels(seeded_db: Any, annotator: Any) -> None:
    await seeded_db.save_exam_part("N1", "2022-12", 1, {"sections": [{"questions": [{"question_html": "学校"}]}]})
    service = ReadingCacheService(seeded_db, annotator)

    summary = await service.precompute_all()

    assert [level["level"] for level in summary["levels"]] == ["N1", "N2"]
    assert summary["total"] == 4
    assert summary["created"] == 4
