"""
Tests for environment-driven settings.
"""

import dataclasses

import pytest

from jlpt_explainer.settings import DEFAULT_DB_URL, DEFAULT_MODEL, EngineSettings


def test_defaults_from_empty_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_EXAM_MODEL", "OPENAI_MODEL", "JLPT_EXPLAIN_DB",
                 "EXPLANATION_PROMPT_VERSION", "PASSAGE_PROMPT_VERSION", "JANOME_USER_DICT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DEBUG", "1")

    settings = EngineSettings.from_env()

    assert settings.api_key is None
    assert settings.model_name == DEFAULT_MODEL
    assert settings.database_url == DEFAULT_DB_URL
    # DEBUG is read per module, not carried on the settings object
    assert [f.name for f in dataclasses.fields(settings)] == [
        "api_key", "base_url", "model_name", "database_url", "prompt_version",
        "passage_prompt_version", "user_dict_path",
    ]


def test_exam_model_wins_over_generic_model(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_MODEL", "generic")
    monkeypatch.setenv("OPENAI_EXAM_MODEL", "exam")
    assert EngineSettings.from_env().model_name == "exam"

    monkeypatch.delenv("OPENAI_EXAM_MODEL")
    assert EngineSettings.from_env().model_name == "generic"
