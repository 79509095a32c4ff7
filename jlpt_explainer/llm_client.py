"""Chat-completion client for explanation prompts.

Any object with ``model_name``, ``configured`` and an async
``prompt(prompt_text, system="", temperature=0.2) -> str`` can stand in for
``OpenAIChatModel``; tests pass a scripted model with the same shape.
"""

import os
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .errors import UpstreamCallError, UpstreamConfigError
from .settings import DEFAULT_MODEL, EngineSettings

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"


class OpenAIChatModel:
    """Wrapper for the OpenAI chat API in JSON response mode."""

    def __init__(self, api_key: Optional[str], model_name: str = DEFAULT_MODEL,
                 base_url: Optional[str] = None, timeout: float = 120.0) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self.base_url = base_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "OpenAIChatModel":
        return cls(settings.api_key, settings.model_name, settings.base_url)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def ensure_configured(self) -> None:
        if not self.configured:
            raise UpstreamConfigError("OPENAI_API_KEY is not configured")

    async def prompt(self, prompt_text: str, system: str = "", temperature: float = 0.2) -> str:
        """Send one chat completion and return its text content."""
        self.ensure_configured()
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt_text})

        if DEBUG_MODE:
            print("🤖 OpenAI API Call Details:")
            print(f"   Model: {self.model_name}")
            print(f"   Temperature: {temperature}")
            print(f"   System prompt length: {len(system) if system else 0} characters")
            print(f"   User prompt length: {len(prompt_text)} characters")

        # One client per call: Flask async views run each request on a fresh loop.
        # Retries stay off; the engine decides when a second call is allowed.
        try:
            async with AsyncOpenAI(api_key=self.api_key, base_url=self.base_url,
                                   timeout=self.timeout, max_retries=0) as client:
                response = await client.chat.completions.create(
                    model=self.model_name,
                    messages=messages,  # type: ignore
                    temperature=temperature,
                    response_format={"type": "json_object"},
                )
        except openai.APIStatusError as e:
            if DEBUG_MODE:
                print(f"❌ OpenAI API call failed ({e.status_code}): {e.message}")
            raise UpstreamCallError(f"OpenAI request failed ({e.status_code}): {e.message}",
                                    kind="http", upstream_status=e.status_code) from e
        except openai.APIError as e:
            if DEBUG_MODE:
                print(f"❌ OpenAI API call failed: {e}")
            raise UpstreamCallError(f"OpenAI request failed: {e}", kind="transport") from e

        content = ""
        if response.choices:
            content = (response.choices[0].message.content or "").strip()

        if DEBUG_MODE:
            print("✅ OpenAI API Response:")
            print(f"   Response length: {len(content)} characters")
            print(f"   Usage: {response.usage}")

        if not content:
            raise UpstreamCallError("OpenAI returned empty content", kind="empty")
        return content
