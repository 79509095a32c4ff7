"""
Shared fixtures: a deterministic tokenizer, a scripted model and a temporary
SQLite database seeded with one N2 exam part.
"""

import json
import os
import tempfile
from typing import Any, Dict, Generator, List, Optional

import pytest
import pytest_asyncio

from jlpt_explainer.db import Database
from jlpt_explainer.engine import ExplanationEngine
from jlpt_explainer.reading import ReadingAnnotator, TokenizerHandle
from jlpt_explainer.settings import EngineSettings

# ── Tokenizer ────────────────────────────────────────────────────

LEXICON = {
    "日本語": "ニホンゴ",
    "学校": "ガッコウ",
    "毎日": "マイニチ",
    "彼": "カレ",
    "行": "イ",
    "歩": "アル",
    "前": "マエ",
    "文": "ブン",
    "次": "ツギ",
}


class FakeToken:
    def __init__(self, surface: str, reading: str) -> None:
        self.surface = surface
        self.reading = reading


class FakeTokenizer:
    """Longest match against LEXICON; anything else is one token per character with reading '*'."""

    def tokenize(self, text: str) -> List[FakeToken]:
        tokens = []
        i = 0
        while i < len(text):
            for length in range(min(3, len(text) - i), 0, -1):
                piece = text[i:i + length]
                if piece in LEXICON:
                    tokens.append(FakeToken(piece, LEXICON[piece]))
                    i += length
                    break
            else:
                tokens.append(FakeToken(text[i], "*"))
                i += 1
        return tokens


# ── Model ────────────────────────────────────────────────────────

class MockAIModel:
    """Scripted model: each call pops the next response (dict, str or exception)."""

    def __init__(self, responses: Optional[List[Any]] = None, configured: bool = True) -> None:
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.model_name = "mock-model"
        self.configured = configured

    async def prompt(self, prompt_text: str, system: str = "", temperature: float = 0.2) -> str:
        self.calls.append({"prompt": prompt_text, "system": system, "temperature": temperature})
        if not self.responses:
            return "{}"
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            return response
        return json.dumps(response, ensure_ascii=False)


# ── Sample exam ──────────────────────────────────────────────────

SAMPLE_LEVEL = "N2"
SAMPLE_EXAM_ID = "2023-07"
SAMPLE_PART = 2

SAMPLE_EXAM_PART: Dict[str, Any] = {
    "sections": [
        {
            "section_title": "問題8 次の文の　★　に入る最もよいものを、1・2・3・4から一つ選びなさい。",
            "questions": [
                {
                    "question_id": "43",
                    "question_html": "彼は ＿＿ ＿＿ ★ ＿＿ 行った。",
                    "options": {"1": "学校", "2": "に", "3": "歩いて", "4": "毎日"},
                    "answer": "1",
                    "explanation": "正しい順番は 4-3-1-2 です。",
                },
            ],
        },
        {
            "section_title": "問題9 次の文章を読んで、文章全体の内容を考えて、（48）から（49）の中に入る最もよいものを選びなさい。",
            "questions": [
                {
                    "question_id": "48",
                    "question_html": "（48）",
                    "options": {"1": "しかし", "2": "だから", "3": "また", "4": "つまり"},
                    "answer": "2",
                    "passage_id": "p1",
                },
                {
                    "question_id": "49",
                    "question_html": "（49）",
                    "options": {"1": "では", "2": "でも", "3": "まで", "4": "から"},
                    "answer": "1",
                    "passage_id": "p1",
                },
            ],
        },
    ],
    "passages": [
        {"passage_id": "p1", "passage_html": "<p>前の文です。彼は（48）学校に行った。次の文（49）です。</p>"},
    ],
}

SENTENCE_ORDER_RESPONSE: Dict[str, Any] = {
    "question_ja": "彼は ＿＿ ＿＿ ★ ＿＿ 行った。",
    "question_translation_vi": "Anh ấy mỗi ngày đi bộ đến trường.",
    "sentence_order_solution": {
        "ordered_options": ["4", "3", "1", "2"],
        "ordered_sentence_ja": "彼は毎日歩いて学校に行った。",
        "star_option": "1",
        "reason_vi": "毎日 bổ nghĩa cho 歩いて, 学校に chỉ đích đến.",
    },
    "key_point_vi": "Trật tự trạng từ và trợ từ chỉ đích.",
    "option_analysis": [
        {"option": "1", "meaning_vi": "trường học", "verdict": "correct", "reason_vi": "Nằm ở vị trí ★."},
        {"option": "2", "meaning_vi": "đến", "verdict": "wrong", "reason_vi": "Đứng sau 学校."},
    ],
}


# ── Fixtures ─────────────────────────────────────────────────────

@pytest.fixture(scope="function")
def db_path() -> Generator[str, None, None]:
    """Transient SQLite file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    os.unlink(path)


@pytest.fixture
def db_url(db_path: str) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture(scope="function")
async def database(db_url: str):
    database = Database(db_url)
    await database.ensure_schema()
    yield database
    await database.dispose()


@pytest_asyncio.fixture(scope="function")
async def seeded_db(database: Database):
    await database.save_exam_part(SAMPLE_LEVEL, SAMPLE_EXAM_ID, SAMPLE_PART, SAMPLE_EXAM_PART)
    return database


@pytest.fixture
def annotator() -> ReadingAnnotator:
    return ReadingAnnotator(TokenizerHandle(factory=FakeTokenizer))


@pytest.fixture
def make_engine(seeded_db: Database, annotator: ReadingAnnotator):
    """Build an engine over the seeded database around a given model."""
    def factory(model: Any, **overrides: Any) -> ExplanationEngine:
        settings = EngineSettings(api_key="test-key", database_url=seeded_db.url, **overrides)
        return ExplanationEngine(settings, seeded_db, annotator, model)
    return factory
