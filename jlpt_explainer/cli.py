"""Admin commands: schema setup, exam import, precompute and manual explain."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from .engine import ExplanationEngine
from .errors import ExplanationError
from .settings import EngineSettings
from .structured import ExamQuestionCoordinate

T = TypeVar("T")


def build_engine() -> ExplanationEngine:
    return ExplanationEngine.from_settings(EngineSettings.from_env())


def run_with_engine(action: Callable[[ExplanationEngine], Awaitable[T]]) -> T:
    """Run ``action`` on a fresh engine and turn engine errors into CLI errors."""
    async def runner() -> T:
        engine = build_engine()
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except ExplanationError as e:
        raise click.ClickException(f"{e.code}: {e.message}") from e


def echo_json(value: Any) -> None:
    click.echo(json.dumps(value, ensure_ascii=False, indent=2))


@click.group()
def cli() -> None:
    """JLPT exam explanation engine."""


@cli.command("init-db")
def init_db() -> None:
    """Create the explanation tables."""
    async def action(engine: ExplanationEngine) -> None:
        await engine.db.ensure_schema()

    run_with_engine(action)
    click.echo("Database initialized.")


@cli.command("import-exam")
@click.argument("json_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--level", required=True, help="JLPT level, e.g. N2")
@click.option("--exam-id", required=True, help="Exam identifier")
@click.option("--part", required=True, type=int, help="Exam part number")
def import_exam(json_file: str, level: str, exam_id: str, part: int) -> None:
    """Store an exam part document."""
    with open(json_file, encoding="utf-8") as f:
        try:
            json_data = json.load(f)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"Invalid JSON in {json_file}: {e}") from e

    async def action(engine: ExplanationEngine) -> None:
        await engine.db.ensure_schema()
        await engine.db.save_exam_part(level, exam_id, part, json_data)

    run_with_engine(action)
    click.echo(f"Imported {level}/{exam_id} part {part}.")


@cli.command("precompute-readings")
@click.option("--level", default=None, help="Only this level (all levels when omitted)")
@click.option("--exam-id", default=None, help="Only this exam (requires --level)")
@click.option("--force", is_flag=True, help="Rebuild existing entries")
def precompute_readings(level: Optional[str], exam_id: Optional[str], force: bool) -> None:
    """Build the reading cache for stored exams."""
    if exam_id and not level:
        raise click.UsageError("--exam-id requires --level")

    async def action(engine: ExplanationEngine) -> Any:
        if level and exam_id:
            return await engine.readings.precompute_exam(level, exam_id, force=force)
        if level:
            return await engine.readings.precompute_level(level, force=force)
        return await engine.readings.precompute_all(force=force)

    echo_json(run_with_engine(action))


@cli.command("precompute-meta")
@click.option("--level", default=None, help="Only this level")
@click.option("--exam-id", default=None, help="Only this exam")
@click.option("--force", is_flag=True, help="Clear existing rows for each part first")
def precompute_meta(level: Optional[str], exam_id: Optional[str], force: bool) -> None:
    """Build question metadata for stored exams."""
    async def action(engine: ExplanationEngine) -> Any:
        return await engine.meta.precompute(level, exam_id, force=force)

    echo_json(run_with_engine(action))


@cli.command("explain")
@click.argument("level")
@click.argument("exam_id")
@click.argument("part", type=int)
@click.argument("section_index", type=int)
@click.argument("question_index", type=int)
@click.option("--force", is_flag=True, help="Regenerate even when cached")
def explain(level: str, exam_id: str, part: int, section_index: int, question_index: int, force: bool) -> None:
    """Explain one question as a privileged caller."""
    coordinate = ExamQuestionCoordinate(level, exam_id, part, section_index, question_index)

    async def action(engine: ExplanationEngine) -> Any:
        result = await engine.explain_question(coordinate, is_privileged=True, force_refresh=force)
        return result.to_dict()

    echo_json(run_with_engine(action))


if __name__ == "__main__":
    cli()
