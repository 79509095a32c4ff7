"""Explanation cache and quota gate.

``ExplanationEngine`` is the entry point used by the web app and the CLI. A
request runs in a fixed order:

1. a forced refresh from a non-privileged caller is rejected outright;
2. the schema is ensured and the exam part loaded;
3. the question context is extracted and its readings fetched or built;
4. the explanation cache is consulted under (coordinate, content hash,
   prompt version), unless the refresh is forced;
5. a non-privileged caller spends quota with an insert-if-absent, and when
   the row already existed the cache is consulted once more before
   ``QuotaExhaustedError`` is raised;
6. the model is called, sentence-order answers are repaired, and the result
   is upserted under the same key used for the lookup.

If generation or the cache write fails after quota was spent in the same
request, the quota row is removed again, so a user is never charged for an
explanation that was not produced.
"""

import os
from typing import Any, Awaitable, Callable, Optional

from .classify import describe_question_type
from .db import Database
from .errors import ForbiddenError, InvalidRequestError, NotFoundError, QuotaExhaustedError
from .explanation import ExplanationGenerator, PassagePayload
from .extract import extract_passage_group, extract_question_context
from .llm_client import OpenAIChatModel
from .meta import QuestionMetaService
from .reading import ReadingAnnotator, TokenizerHandle
from .reading_cache import ReadingCacheService
from .sentence_order import SentenceOrderRepair
from .settings import EngineSettings
from .structured import ExamQuestionCoordinate, ExplanationResult, PassageGroupCoordinate, canonical_hash

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


class ExplanationEngine:
    def __init__(self, settings: EngineSettings, db: Database, annotator: ReadingAnnotator, model: Any) -> None:
        self.settings = settings
        self.db = db
        self.annotator = annotator
        self.model = model
        self.generator = ExplanationGenerator(model, annotator)
        self.repair = SentenceOrderRepair(model, annotator)
        self.readings = ReadingCacheService(db, annotator)
        self.meta = QuestionMetaService(db)

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None, null_pool: bool = False,
                      model: Any = None, tokenizer_factory: Optional[Callable[[], Any]] = None) -> "ExplanationEngine":
        """Wire the engine from settings; ``model`` and ``tokenizer_factory`` override the defaults."""
        settings = settings or EngineSettings.from_env()
        db = Database(settings.database_url, null_pool=null_pool)
        annotator = ReadingAnnotator(TokenizerHandle(tokenizer_factory, settings.user_dict_path))
        return cls(settings, db, annotator, model or OpenAIChatModel.from_settings(settings))

    async def _load_part(self, level: str, exam_id: str, part: int) -> Any:
        await self.db.ensure_schema()
        json_data = await self.db.get_exam_part(level, exam_id, part)
        if json_data is None:
            raise NotFoundError(f"Exam part not found: {level}/{exam_id} part {part}")
        return json_data

    async def _spend_quota(self, consume: Callable[[], Awaitable[bool]],
                           recheck: Callable[[], Awaitable[Any]], user_id: Optional[str]) -> Any:
        """Insert the quota row. Returns a cache hit found after a lost insert, else None."""
        if not user_id:
            raise InvalidRequestError("user_id is required for non-privileged requests")
        self.generator.ensure_configured()
        if await consume():
            return None
        hit = await recheck()
        if hit is None:
            raise QuotaExhaustedError("Explanation quota for this question has already been used")
        return hit

    async def _release_quota(self, release: Awaitable[None]) -> None:
        """Delete a spent quota row. A failure here is reported, not raised."""
        try:
            await release
        except Exception as e:
            print(f"❌ Could not release quota: {e}")

    # ── Single question ────────────────────────────────────────────

    async def explain_question(self, coordinate: ExamQuestionCoordinate, user_id: Optional[str] = None,
                               is_privileged: bool = False, force_refresh: bool = False) -> ExplanationResult:
        if force_refresh and not is_privileged:
            raise ForbiddenError("Only privileged callers may force a refresh")

        json_data = await self._load_part(coordinate.level, coordinate.exam_id, coordinate.part)
        meta_display_no = await self.meta.display_question_no(coordinate)
        ctx = extract_question_context(json_data, coordinate, meta_display_no)
        reading_cache = await self.readings.get_or_create(ctx, force=force_refresh)

        content_hash = ctx.content_hash()
        prompt_version = self.settings.prompt_version

        async def lookup() -> Any:
            return await self.db.get_explanation(coordinate, content_hash, prompt_version)

        if not force_refresh:
            hit = await lookup()
            if hit is not None:
                if DEBUG_MODE:
                    print(f"✅ Explanation cache hit for {coordinate}")
                return ExplanationResult("cache", prompt_version, hit[0], hit[1])

        consumed = False
        if not is_privileged:
            hit = await self._spend_quota(
                lambda: self.db.consume_quota(user_id, coordinate, prompt_version), lookup, user_id)
            if hit is not None:
                return ExplanationResult("cache", prompt_version, hit[0], hit[1])
            consumed = True

        try:
            pre = await self.readings.precomputed_for(ctx, reading_cache)
            explanation, model_name = await self.generator.generate(ctx, pre)
            outcome = await self.repair.run(ctx, explanation)
            await self.db.save_explanation(coordinate, content_hash, prompt_version, outcome.explanation, model_name)
        except Exception:
            if consumed:
                await self._release_quota(self.db.release_quota(user_id, coordinate, prompt_version))
            raise

        return ExplanationResult("model", prompt_version, outcome.explanation, model_name)

    # ── Passage group ──────────────────────────────────────────────

    async def explain_passage_group(self, group: PassageGroupCoordinate, user_id: Optional[str] = None,
                                    is_privileged: bool = False, force_refresh: bool = False) -> ExplanationResult:
        if force_refresh and not is_privileged:
            raise ForbiddenError("Only privileged callers may force a refresh")

        json_data = await self._load_part(group.level, group.exam_id, group.part)
        contexts, passage_text = extract_passage_group(json_data, group)

        question_type = "reading_cloze" if any(ctx.is_cloze for ctx in contexts) else "reading_content"
        label_vi, strategy_vi = describe_question_type(question_type)
        payload = PassagePayload.from_contexts(contexts, passage_text, question_type, label_vi, strategy_vi)
        caches = [await self.readings.get_or_create(ctx, force=force_refresh) for ctx in contexts]
        labels = [q.label for q in payload.questions]

        content_hash = canonical_hash([ctx.to_dict() for ctx in contexts])
        prompt_version = self.settings.passage_prompt_version

        async def lookup() -> Any:
            return await self.db.get_passage_explanation(group, content_hash, prompt_version)

        if not force_refresh:
            hit = await lookup()
            if hit is not None:
                if DEBUG_MODE:
                    print(f"✅ Passage explanation cache hit for {group.level}/{group.exam_id} {group.sorted_indexes}")
                return ExplanationResult("cache", prompt_version, hit[0], hit[1])

        consumed = False
        if not is_privileged:
            hit = await self._spend_quota(
                lambda: self.db.consume_passage_quota(user_id, group, prompt_version), lookup, user_id)
            if hit is not None:
                return ExplanationResult("cache", prompt_version, hit[0], hit[1])
            consumed = True

        try:
            seed = self.readings.passage_seed(contexts, labels, caches, passage_text)
            explanation, model_name = await self.generator.generate_passage(payload, seed)
            await self.db.save_passage_explanation(group, content_hash, prompt_version, explanation, model_name)
        except Exception:
            if consumed:
                await self._release_quota(self.db.release_passage_quota(user_id, group, prompt_version))
            raise

        return ExplanationResult("model", prompt_version, explanation, model_name)

    async def close(self) -> None:
        await self.db.dispose()
