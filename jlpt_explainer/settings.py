"""Environment-driven configuration for the explanation engine."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DB_URL = "sqlite+aiosqlite:///jlpt_explanations.db"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_PROMPT_VERSION = "exam-explain-v4"
DEFAULT_PASSAGE_PROMPT_VERSION = "exam-passage-v2"


@dataclass
class EngineSettings:
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model_name: str = DEFAULT_MODEL
    database_url: str = DEFAULT_DB_URL
    prompt_version: str = DEFAULT_PROMPT_VERSION
    passage_prompt_version: str = DEFAULT_PASSAGE_PROMPT_VERSION
    user_dict_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Read settings from the process environment."""
        return cls(
            api_key=os.environ.get("OPENAI_API_KEY") or None,
            base_url=os.environ.get("OPENAI_BASE_URL") or None,
            model_name=(
                os.environ.get("OPENAI_EXAM_MODEL")
                or os.environ.get("OPENAI_MODEL")
                or DEFAULT_MODEL
            ),
            database_url=os.environ.get("JLPT_EXPLAIN_DB", DEFAULT_DB_URL),
            prompt_version=os.environ.get("EXPLANATION_PROMPT_VERSION", DEFAULT_PROMPT_VERSION),
            passage_prompt_version=os.environ.get("PASSAGE_PROMPT_VERSION", DEFAULT_PASSAGE_PROMPT_VERSION),
            user_dict_path=os.environ.get("JANOME_USER_DICT") or None,
        )
