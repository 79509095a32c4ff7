from __future__ import annotations
import datetime
import os
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from .once import AsyncOnce
from .structured import ExamQuestionCoordinate, PassageGroupCoordinate

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class Base(DeclarativeBase):
    pass


class ExamPart(Base):
    """Source exam document for one part of one exam."""
    __tablename__ = "jlpt_exam"
    __table_args__ = (UniqueConstraint("level", "exam_id", "part", name="uq_jlpt_exam_part"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    json_data: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class ReadingCache(Base):
    __tablename__ = "jlpt_exam_reading_cache"
    __table_args__ = (
        UniqueConstraint("level", "exam_id", "part", "section_index", "question_index",
                         name="uq_jlpt_exam_reading_cache_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    reading_json: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class ExplanationCache(Base):
    __tablename__ = "jlpt_exam_explanation_cache"
    __table_args__ = (
        UniqueConstraint("level", "exam_id", "part", "section_index", "question_index",
                         "content_hash", "prompt_version", name="uq_jlpt_exam_explanation_cache_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_version: Mapped[str] = mapped_column(String, nullable=False)
    explanation_json: Mapped[Any] = mapped_column(JSON, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class ExplanationRequestLog(Base):
    """One row per (user, question, prompt version); inserting it spends the quota."""
    __tablename__ = "jlpt_exam_explanation_request_log"
    __table_args__ = (
        UniqueConstraint("user_id", "level", "exam_id", "part", "section_index", "question_index",
                         "prompt_version", name="uq_jlpt_exam_explanation_request_log_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt_version: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class PassageExplanationCache(Base):
    __tablename__ = "jlpt_exam_passage_explanation_cache"
    __table_args__ = (
        UniqueConstraint("level", "exam_id", "part", "section_index", "group_hash",
                         "content_hash", "prompt_version", name="uq_jlpt_exam_passage_explanation_cache_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    group_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    question_indexes: Mapped[Any] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_version: Mapped[str] = mapped_column(String, nullable=False)
    explanation_json: Mapped[Any] = mapped_column(JSON, nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class PassageExplanationRequestLog(Base):
    __tablename__ = "jlpt_exam_passage_explanation_request_log"
    __table_args__ = (
        UniqueConstraint("user_id", "level", "exam_id", "part", "section_index", "group_hash",
                         "prompt_version", name="uq_jlpt_exam_passage_explanation_request_log_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    group_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_version: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


class ExamQuestionMeta(Base):
    __tablename__ = "jlpt_exam_question_meta"
    __table_args__ = (
        UniqueConstraint("level", "exam_id", "part", "section_index", "question_index",
                         name="uq_jlpt_exam_question_meta_key"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[str] = mapped_column(String, nullable=False)
    exam_id: Mapped[str] = mapped_column(String, nullable=False)
    part: Mapped[int] = mapped_column(Integer, nullable=False)
    section_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question_label: Mapped[Optional[str]] = mapped_column(String)
    display_question_no: Mapped[Optional[int]] = mapped_column(Integer)
    mondai_number: Mapped[Optional[int]] = mapped_column(Integer)
    mondai_label: Mapped[Optional[str]] = mapped_column(String)
    section_kind: Mapped[str] = mapped_column(String, nullable=False, default="unknown")
    question_type: Mapped[str] = mapped_column(Text, nullable=False, default="unknown")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow)


def _question_key(coord: ExamQuestionCoordinate) -> Dict[str, Any]:
    return {
        "level": coord.level,
        "exam_id": coord.exam_id,
        "part": coord.part,
        "section_index": coord.section_index,
        "question_index": coord.question_index,
    }


def _group_key(group: PassageGroupCoordinate) -> Dict[str, Any]:
    return {
        "level": group.level,
        "exam_id": group.exam_id,
        "part": group.part,
        "section_index": group.section_index,
        "group_hash": group.group_hash,
    }


def _where(model: Any, key: Dict[str, Any]) -> List[Any]:
    return [getattr(model, name) == value for name, value in key.items()]


class Database:
    """Async engine, session factory and schema guard for one store.

    ``null_pool`` disables connection pooling, which is needed when each
    request runs on its own event loop (Flask async views).
    """

    def __init__(self, url: str, null_pool: bool = False, echo: bool = False) -> None:
        kwargs: Dict[str, Any] = {"echo": echo}
        if null_pool:
            kwargs["poolclass"] = NullPool
        self.url = url
        self.engine = create_async_engine(url, **kwargs)
        self.SessionLocal = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._schema: AsyncOnce[bool] = AsyncOnce(self._create_schema)

    async def _create_schema(self) -> bool:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        if DEBUG_MODE:
            print(f"✅ Schema ready on {self.engine.url.render_as_string(hide_password=True)}")
        return True

    async def ensure_schema(self) -> None:
        await self._schema.get()

    async def dispose(self) -> None:
        await self.engine.dispose()

    def _insert(self, model: Any) -> Any:
        if self.engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        return insert(model)

    async def _upsert(self, model: Any, key: Dict[str, Any], values: Dict[str, Any]) -> None:
        now = utcnow()
        row = {**key, **values, "created_at": now}
        update = dict(values)
        if hasattr(model, "updated_at"):
            row["updated_at"] = now
            update["updated_at"] = now
        stmt = self._insert(model).values(**row).on_conflict_do_update(index_elements=list(key), set_=update)
        async with self.SessionLocal() as session:
            await session.execute(stmt)
            await session.commit()

    async def _insert_if_absent(self, model: Any, key: Dict[str, Any]) -> bool:
        stmt = self._insert(model).values(**key, created_at=utcnow()).on_conflict_do_nothing(index_elements=list(key))
        async with self.SessionLocal() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def _delete(self, model: Any, key: Dict[str, Any]) -> int:
        async with self.SessionLocal() as session:
            result = await session.execute(delete(model).where(*_where(model, key)))
            await session.commit()
            return result.rowcount or 0

    async def _first(self, model: Any, key: Dict[str, Any]) -> Any:
        async with self.SessionLocal() as session:
            result = await session.execute(select(model).where(*_where(model, key)).limit(1))
            return result.scalars().first()

    # ── Exam parts ──────────────────────────────────────────────────

    async def get_exam_part(self, level: str, exam_id: str, part: int) -> Optional[Any]:
        row = await self._first(ExamPart, {"level": level, "exam_id": exam_id, "part": part})
        return row.json_data if row else None

    async def save_exam_part(self, level: str, exam_id: str, part: int, json_data: Any) -> None:
        await self._upsert(ExamPart, {"level": level, "exam_id": exam_id, "part": part}, {"json_data": json_data})

    async def list_exam_parts(self, level: Optional[str] = None, exam_id: Optional[str] = None) -> List[Tuple[str, str, int, Any]]:
        stmt = select(ExamPart).order_by(ExamPart.level, ExamPart.exam_id, ExamPart.part)
        if level:
            stmt = stmt.where(ExamPart.level == level)
        if exam_id:
            stmt = stmt.where(ExamPart.exam_id == exam_id)
        async with self.SessionLocal() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [(r.level, r.exam_id, r.part, r.json_data) for r in rows]

    # ── Reading cache ───────────────────────────────────────────────

    async def get_reading_cache(self, coord: ExamQuestionCoordinate) -> Optional[Any]:
        row = await self._first(ReadingCache, _question_key(coord))
        return row.reading_json if row else None

    async def save_reading_cache(self, coord: ExamQuestionCoordinate, reading: Dict[str, Any]) -> None:
        await self._upsert(ReadingCache, _question_key(coord), {"reading_json": reading})

    # ── Explanation cache ───────────────────────────────────────────

    async def get_explanation(self, coord: ExamQuestionCoordinate, content_hash: str,
                              prompt_version: str) -> Optional[Tuple[Dict[str, Any], str]]:
        key = {**_question_key(coord), "content_hash": content_hash, "prompt_version": prompt_version}
        row = await self._first(ExplanationCache, key)
        return (row.explanation_json, row.model or "") if row else None

    async def save_explanation(self, coord: ExamQuestionCoordinate, content_hash: str, prompt_version: str,
                               explanation: Dict[str, Any], model: str) -> None:
        key = {**_question_key(coord), "content_hash": content_hash, "prompt_version": prompt_version}
        await self._upsert(ExplanationCache, key, {"explanation_json": explanation, "model": model})

    async def consume_quota(self, user_id: str, coord: ExamQuestionCoordinate, prompt_version: str) -> bool:
        """Insert the quota row; False when it already existed."""
        key = {"user_id": str(user_id), **_question_key(coord), "prompt_version": prompt_version}
        return await self._insert_if_absent(ExplanationRequestLog, key)

    async def release_quota(self, user_id: str, coord: ExamQuestionCoordinate, prompt_version: str) -> None:
        key = {"user_id": str(user_id), **_question_key(coord), "prompt_version": prompt_version}
        await self._delete(ExplanationRequestLog, key)

    # ── Passage explanation cache ───────────────────────────────────

    async def get_passage_explanation(self, group: PassageGroupCoordinate, content_hash: str,
                                      prompt_version: str) -> Optional[Tuple[Dict[str, Any], str]]:
        key = {**_group_key(group), "content_hash": content_hash, "prompt_version": prompt_version}
        row = await self._first(PassageExplanationCache, key)
        return (row.explanation_json, row.model or "") if row else None

    async def save_passage_explanation(self, group: PassageGroupCoordinate, content_hash: str, prompt_version: str,
                                       explanation: Dict[str, Any], model: str) -> None:
        key = {**_group_key(group), "content_hash": content_hash, "prompt_version": prompt_version}
        await self._upsert(PassageExplanationCache, key, {
            "question_indexes": group.sorted_indexes,
            "explanation_json": explanation,
            "model": model,
        })

    async def consume_passage_quota(self, user_id: str, group: PassageGroupCoordinate, prompt_version: str) -> bool:
        key = {"user_id": str(user_id), **_group_key(group), "prompt_version": prompt_version}
        return await self._insert_if_absent(PassageExplanationRequestLog, key)

    async def release_passage_quota(self, user_id: str, group: PassageGroupCoordinate, prompt_version: str) -> None:
        key = {"user_id": str(user_id), **_group_key(group), "prompt_version": prompt_version}
        await self._delete(PassageExplanationRequestLog, key)

    # ── Question metadata ───────────────────────────────────────────

    async def get_question_meta(self, coord: ExamQuestionCoordinate) -> Optional[ExamQuestionMeta]:
        return await self._first(ExamQuestionMeta, _question_key(coord))

    async def save_question_meta(self, coord: ExamQuestionCoordinate, values: Dict[str, Any]) -> None:
        await self._upsert(ExamQuestionMeta, _question_key(coord), values)

    async def delete_question_meta(self, level: str, exam_id: str, part: int) -> int:
        return await self._delete(ExamQuestionMeta, {"level": level, "exam_id": exam_id, "part": part})
