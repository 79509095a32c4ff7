"""
Tests for the Flask JSON endpoints.
Each request runs its async view on a fresh event loop, which exercises the
unpooled database and the loop-aware schema and tokenizer guards.
"""

import asyncio
from typing import Any, Dict, Generator

import pytest

import app as app_module
from jlpt_explainer.settings import EngineSettings

from conftest import (
    SAMPLE_EXAM_ID,
    SAMPLE_EXAM_PART,
    SAMPLE_LEVEL,
    SAMPLE_PART,
    SENTENCE_ORDER_RESPONSE,
    FakeTokenizer,
    MockAIModel,
)


def question_body(**overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "level": SAMPLE_LEVEL,
        "exam_id": SAMPLE_EXAM_ID,
        "part": SAMPLE_PART,
        "section_index": 0,
        "question_index": 0,
        "user_id": "u1",
    }
    body.update(overrides)
    return body


@pytest.fixture
def model() -> MockAIModel:
    return MockAIModel([SENTENCE_ORDER_RESPONSE])


@pytest.fixture
def client(db_url: str, model: MockAIModel, monkeypatch: pytest.MonkeyPatch) -> Generator[Any, None, None]:
    """Test client over a seeded temporary database."""
    monkeypatch.setattr(app_module, "ADMIN_TOKEN", "")
    engine = app_module.init_engine(
        EngineSettings(api_key="test-key", database_url=db_url),
        model=model,
        tokenizer_factory=FakeTokenizer,
    )

    async def seed() -> None:
        await engine.db.ensure_schema()
        await engine.db.save_exam_part(SAMPLE_LEVEL, SAMPLE_EXAM_ID, SAMPLE_PART, SAMPLE_EXAM_PART)

    asyncio.run(seed())
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as test_client:
        yield test_client
    app_module.engine = None


# ── Single question ──────────────────────────────────────────────

def test_explain_then_cache_hit(client: Any, model: MockAIModel) -> None:
    first = client.post("/api/exam/explain", json=question_body())
    second = client.post("/api/exam/explain", json=question_body())

    assert first.status_code == 200
    data = first.get_json()
    assert data["status"] == "success"
    assert data["source"] == "model"
    assert data["model"] == "mock-model"
    assert data["explanation"]["sentence_order_solution"]["ordered_options"] == ["4", "3", "1", "2"]

    assert second.status_code == 200
    assert second.get_json()["source"] == "cache"
    assert len(model.calls) == 1


def test_user_taken_from_session(client: Any) -> None:
    with client.session_transaction() as sess:
        sess["username"] = "alice"
    body = question_body()
    del body["user_id"]

    response = client.post("/api/exam/explain", json=body)

    assert response.status_code == 200


def test_missing_user_rejected(client: Any) -> None:
    body = question_body()
    del body["user_id"]

    response = client.post("/api/exam/explain", json=body)

    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_request"


def test_force_refresh_without_token_forbidden(client: Any, model: MockAIModel) -> None:
    response = client.post("/api/exam/explain", json=question_body(force_refresh=True))

    assert response.status_code == 403
    assert response.get_json() == {
        "status": "error",
        "code": "forbidden",
        "message": "Only privileged callers may force a refresh",
    }
    assert model.calls == []


def test_force_refresh_with_admin_token(client: Any, model: MockAIModel, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_module, "ADMIN_TOKEN", "secret")
    client.post("/api/exam/explain", json=question_body())

    response = client.post("/api/exam/explain", json=question_body(user_id=None, force_refresh=True),
                           headers={"X-Admin-Token": "secret"})

    assert response.status_code == 200
    assert response.get_json()["source"] == "model"
    assert len(model.calls) == 2


def test_wrong_admin_token_is_not_privileged(client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_module, "ADMIN_TOKEN", "secret")

    response = client.post("/api/exam/explain", json=question_body(force_refresh=True),
                           headers={"X-Admin-Token": "guess"})

    assert response.status_code == 403


@pytest.mark.parametrize("body", [
    {"exam_id": SAMPLE_EXAM_ID, "part": 2, "section_index": 0, "question_index": 0},
    {"level": SAMPLE_LEVEL, "exam_id": SAMPLE_EXAM_ID, "part": 0, "section_index": 0, "question_index": 0},
    {"level": SAMPLE_LEVEL, "exam_id": SAMPLE_EXAM_ID, "part": 2, "section_index": "x", "question_index": 0},
    {"level": SAMPLE_LEVEL, "exam_id": SAMPLE_EXAM_ID, "part": 2, "section_index": -1, "question_index": 0},
    {"level": SAMPLE_LEVEL, "exam_id": SAMPLE_EXAM_ID, "part": True, "section_index": 0, "question_index": 0},
])
def test_invalid_coordinates(client: Any, body: Dict[str, Any]) -> None:
    response = client.post("/api/exam/explain", json=body)
    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_request"


def test_non_json_body(client: Any) -> None:
    response = client.post("/api/exam/explain", data="level=N2", content_type="text/plain")
    assert response.status_code == 400


def test_unknown_exam_part(client: Any) -> None:
    response = client.post("/api/exam/explain", json=question_body(level="N5"))
    assert response.status_code == 404
    assert response.get_json()["code"] == "not_found"


def test_question_out_of_range(client: Any) -> None:
    response = client.post("/api/exam/explain", json=question_body(question_index=9))
    assert response.status_code == 404


# ── Passage group ────────────────────────────────────────────────

def test_explain_passage(client: Any, model: MockAIModel) -> None:
    model.responses = []
    body = question_body(section_index=1, question_indexes=[1, 0])
    del body["question_index"]

    first = client.post("/api/exam/explain-passage", json=body)
    second = client.post("/api/exam/explain-passage", json=body)

    assert first.status_code == 200
    data = first.get_json()
    assert data["source"] == "model"
    assert [q["question_label"] for q in data["explanation"]["questions"]] == ["48", "49"]
    assert second.get_json()["source"] == "cache"


@pytest.mark.parametrize("indexes", [None, [], "0,1", [0, "x"]])
def test_passage_requires_index_list(client: Any, indexes: Any) -> None:
    body = question_body(section_index=1, question_indexes=indexes)
    response = client.post("/api/exam/explain-passage", json=body)
    assert response.status_code == 400
