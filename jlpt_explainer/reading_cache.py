"""Per-question cache of precomputed readings and ruby markup.

Entries are keyed by question coordinate only, independent of prompt version,
and are rebuilt only when a caller forces it. When a cached entry no longer
matches the freshly extracted question, the missing pieces are computed on the
fly and merged in; the stored entry is left alone.
"""

import os
from typing import Any, Dict, List, Optional, Sequence

from .db import Database
from .explanation import PassageReadings
from .extract import extract_question_context, parse_exam_part
from .reading import ReadingAnnotator, split_japanese_sentences
from .structured import ExamQuestionCoordinate, PrecomputedReadings, QuestionContext, QuestionReadingCache, ReadingSentence

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


class ReadingCacheService:
    def __init__(self, db: Database, annotator: ReadingAnnotator) -> None:
        self.db = db
        self.annotator = annotator

    async def build(self, question_text: str, options: Dict[str, str], passage_text: str) -> QuestionReadingCache:
        annotate = self.annotator
        cache = QuestionReadingCache(
            question_text_ja=question_text,
            question_ruby_html=await annotate.to_ruby_html(question_text),
            question_reading_hira=await annotate.to_reading_hiragana(question_text),
            passage_text=passage_text,
            passage_ruby_html=await annotate.to_ruby_html(passage_text),
            passage_reading_hira=await annotate.to_reading_hiragana(passage_text),
        )
        for key, value in options.items():
            cache.option_readings[key] = await annotate.to_reading_hiragana(value)
            cache.option_ruby_htmls[key] = await annotate.to_ruby_html(value)
        for sentence in split_japanese_sentences(passage_text):
            cache.sentence_readings.append(ReadingSentence(
                sentence_ja=sentence,
                sentence_ruby_html=await annotate.to_ruby_html(sentence),
                reading_hira=await annotate.to_reading_hiragana(sentence),
            ))
        return cache

    async def get(self, coord: ExamQuestionCoordinate) -> Optional[QuestionReadingCache]:
        stored = await self.db.get_reading_cache(coord)
        return QuestionReadingCache.from_dict(stored) if stored is not None else None

    async def get_or_create(self, ctx: QuestionContext, force: bool = False) -> QuestionReadingCache:
        coord = ctx.coordinate
        if not force:
            cached = await self.get(coord)
            if cached is not None:
                return cached
        built = await self.build(ctx.reading_source, ctx.options, ctx.passage_text)
        await self.db.save_reading_cache(coord, built.to_dict())
        if DEBUG_MODE:
            print(f"✅ Reading cache {'rebuilt' if force else 'created'} for {coord}")
        return built

    async def precomputed_for(self, ctx: QuestionContext, cache: QuestionReadingCache) -> PrecomputedReadings:
        """Readings for the prompt, trusting the cache only where it still matches."""
        source = ctx.reading_source
        if cache.question_text_ja == source and (cache.question_reading_hira or not source.strip()):
            pre = PrecomputedReadings(
                question_reading_hira=cache.question_reading_hira,
                question_ruby_html=cache.question_ruby_html,
            )
        else:
            if DEBUG_MODE:
                print(f"⚠️ Cached question text differs for {ctx.coordinate}, computing readings fresh")
            pre = PrecomputedReadings(
                question_reading_hira=await self.annotator.to_reading_hiragana(source),
                question_ruby_html=await self.annotator.to_ruby_html(source),
            )
        for key, value in ctx.options.items():
            pre.option_readings[key] = cache.option_readings.get(key) or await self.annotator.to_reading_hiragana(value)
            pre.option_ruby_htmls[key] = cache.option_ruby_htmls.get(key) or await self.annotator.to_ruby_html(value)
        return pre

    def passage_seed(self, contexts: Sequence[QuestionContext], labels: Sequence[str],
                     caches: Sequence[QuestionReadingCache], passage_text: str) -> PassageReadings:
        """Seed passage-group readings from the member questions' caches."""
        seed = PassageReadings()
        for cache in caches:
            if cache.passage_text == passage_text and cache.passage_reading_hira:
                seed.passage_reading_hira = cache.passage_reading_hira
                seed.passage_ruby_html = cache.passage_ruby_html
                seed.sentence_readings = [
                    {"sentence_ja": s.sentence_ja, "sentence_ruby_html": s.sentence_ruby_html, "reading_hira": s.reading_hira}
                    for s in cache.sentence_readings
                ]
                break
        for ctx, label, cache in zip(contexts, labels, caches):
            if cache.question_text_ja and cache.question_text_ja == (ctx.question_with_blank or ctx.question_text):
                seed.blank_readings[label] = cache.question_reading_hira
                seed.blank_rubies[label] = cache.question_ruby_html
            seed.option_readings[label] = {k: v for k, v in cache.option_readings.items() if k in ctx.options and v}
            seed.option_rubies[label] = {k: v for k, v in cache.option_ruby_htmls.items() if k in ctx.options and v}
        return seed

    # ── Precompute ─────────────────────────────────────────────────

    async def precompute_exam(self, level: str, exam_id: str, force: bool = False) -> Dict[str, int]:
        await self.db.ensure_schema()
        total = created = skipped = 0
        for _, _, part, json_data in await self.db.list_exam_parts(level, exam_id):
            doc = parse_exam_part(json_data)
            for section_index, section in enumerate(doc.sections):
                for question_index in range(len(section.questions)):
                    total += 1
                    coord = ExamQuestionCoordinate(level, exam_id, part, section_index, question_index)
                    if not force and await self.db.get_reading_cache(coord) is not None:
                        skipped += 1
                        continue
                    ctx = extract_question_context(doc, coord)
                    built = await self.build(ctx.reading_source, ctx.options, ctx.passage_text)
                    await self.db.save_reading_cache(coord, built.to_dict())
                    created += 1
        if DEBUG_MODE:
            print(f"✅ Readings for {level}/{exam_id}: {created} created, {skipped} skipped of {total}")
        return {"total": total, "created": created, "skipped": skipped}

    async def precompute_level(self, level: str, force: bool = False) -> Dict[str, Any]:
        exam_ids: List[str] = []
        for _, exam_id, _, _ in await self.db.list_exam_parts(level):
            if exam_id not in exam_ids:
                exam_ids.append(exam_id)
        summary: Dict[str, Any] = {"level": level, "exams": len(exam_ids), "total": 0, "created": 0, "skipped": 0}
        for exam_id in exam_ids:
            result = await self.precompute_exam(level, exam_id, force=force)
            for key in ("total", "created", "skipped"):
                summary[key] += result[key]
        return summary

    async def precompute_all(self, force: bool = False) -> Dict[str, Any]:
        await self.db.ensure_schema()
        levels: List[str] = []
        for level, _, _, _ in await self.db.list_exam_parts():
            if level not in levels:
                levels.append(level)
        results = [await self.precompute_level(level, force=force) for level in levels]
        return {
            "levels": results,
            "total": sum(r["total"] for r in results),
            "created": sum(r["created"] for r in results),
            "skipped": sum(r["skipped"] for r in results),
        }
