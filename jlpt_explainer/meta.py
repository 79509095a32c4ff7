"""Precomputed per-question labels and types.

Each row records the display number, mondai and question type that the
extractor derives for one coordinate, so later lookups (and the display number
fallback in ``extract_question_context``) do not depend on re-parsing.
"""

import os
from typing import Any, Dict, List, Optional

from .classify import section_kind_for
from .db import Database
from .extract import ExamPartDocument, extract_question_context, parse_exam_part
from .structured import ExamQuestionCoordinate

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


def build_meta_records(level: str, exam_id: str, part: int,
                       doc: ExamPartDocument) -> List[Dict[str, Any]]:
    """One metadata record per question of an exam part, in document order."""
    records = []
    for section_index, section in enumerate(doc.sections):
        for question_index in range(len(section.questions)):
            coord = ExamQuestionCoordinate(level, exam_id, part, section_index, question_index)
            ctx = extract_question_context(doc, coord)
            records.append({
                "coordinate": coord,
                "question_label": ctx.question_label,
                "display_question_no": ctx.display_question_no,
                "mondai_number": ctx.mondai_number,
                "mondai_label": ctx.mondai_label,
                "section_kind": section_kind_for(ctx.question_type),
                "question_type": ctx.question_type,
            })
    return records


class QuestionMetaService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def display_question_no(self, coord: ExamQuestionCoordinate) -> Optional[int]:
        row = await self.db.get_question_meta(coord)
        return row.display_question_no if row is not None else None

    async def get(self, coord: ExamQuestionCoordinate) -> Optional[Dict[str, Any]]:
        row = await self.db.get_question_meta(coord)
        if row is None:
            return None
        return {
            "question_label": row.question_label,
            "display_question_no": row.display_question_no,
            "mondai_number": row.mondai_number,
            "mondai_label": row.mondai_label,
            "section_kind": row.section_kind,
            "question_type": row.question_type,
        }

    async def precompute_part(self, level: str, exam_id: str, part: int, json_data: Any,
                              force: bool = False) -> Dict[str, Any]:
        deleted = 0
        if force:
            deleted = await self.db.delete_question_meta(level, exam_id, part)
        records = build_meta_records(level, exam_id, part, parse_exam_part(json_data))
        for record in records:
            values = {k: v for k, v in record.items() if k != "coordinate"}
            await self.db.save_question_meta(record["coordinate"], values)
        if DEBUG_MODE:
            print(f"✅ Question meta for {level}/{exam_id} part {part}: {len(records)} saved, {deleted} cleared")
        return {"level": level, "exam_id": exam_id, "part": part, "total": len(records), "deleted": deleted}

    async def precompute(self, level: Optional[str] = None, exam_id: Optional[str] = None,
                         force: bool = False) -> List[Dict[str, Any]]:
        """Rebuild metadata for every stored part matching the filters."""
        await self.db.ensure_schema()
        return [
            await self.precompute_part(part_level, part_exam_id, part, json_data, force=force)
            for part_level, part_exam_id, part, json_data in await self.db.list_exam_parts(level, exam_id)
        ]
