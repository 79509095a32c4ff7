"""Hiragana readings and ruby markup for Japanese text.

The annotator wraps a janome tokenizer. Each line of input is tokenized on its
own; for every token the reading comes from a caller-forced reading for that
exact surface, else from the tokenizer, else from the surface itself.
"""

import asyncio
import html
import os
import re
from typing import Any, Callable, Dict, List, Optional

from .once import AsyncOnce

DEBUG_MODE = os.getenv("DEBUG", "0") == "1"

KANJI_PATTERN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[。｡！？!?])")
CIRCLED_NUMBER_PATTERN = re.compile(r"^[①-⑳]+$")


def katakana_to_hiragana(text: str) -> str:
    """Shift katakana (ァ..ヶ) down to the matching hiragana code points."""
    return "".join(
        chr(ord(ch) - 0x60) if 0x30A1 <= ord(ch) <= 0x30F6 else ch
        for ch in text
    )


def contains_kanji(text: str) -> bool:
    return bool(KANJI_PATTERN.search(text or ""))


def escape_html(text: str) -> str:
    # html.escape emits &#x27; for quotes; keep the decimal form used in stored markup.
    return html.escape(text or "", quote=True).replace("&#x27;", "&#39;")


def normalize_forced_readings(forced: Optional[Dict[str, str]]) -> Dict[str, str]:
    if not forced:
        return {}
    out: Dict[str, str] = {}
    for surface, reading in forced.items():
        s = str(surface or "").strip()
        r = str(reading or "").strip()
        if s and r:
            out[s] = r
    return out


def is_passage_section_marker(value: str) -> bool:
    """True for bare passage markers such as ``A``, ``(1)``, ``12`` or ``①``."""
    raw = (value or "").strip()
    if not raw:
        return True
    normalized = "".join(
        chr(ord(ch) - 0xFEE0) if "Ａ" <= ch <= "Ｚ" else ch for ch in raw
    )
    normalized = normalized.replace("（", "(").replace("）", ")").strip(" 　\t")
    if re.fullmatch(r"[A-Z]", normalized):
        return True
    if re.fullmatch(r"\([A-Z0-9]+\)", normalized):
        return True
    if re.fullmatch(r"\d+", normalized):
        return True
    return bool(CIRCLED_NUMBER_PATTERN.match(normalized))


def split_japanese_sentences(text: str) -> List[str]:
    """Split a passage into sentences, dropping standalone section markers."""
    normalized = re.sub(r"\n+", "\n", (text or "").replace("\r", "")).strip()
    if not normalized:
        return []
    out: List[str] = []
    for chunk in normalized.split("\n"):
        parts = [p.strip() for p in SENTENCE_SPLIT_PATTERN.split(chunk)]
        out.extend(p for p in parts if p and not is_passage_section_marker(p))
    return out


def _token_reading(token: Any) -> str:
    reading = getattr(token, "reading", None) or ""
    # janome reports unknown readings as "*"
    return "" if reading == "*" else str(reading)


def build_janome_tokenizer(user_dict_path: Optional[str] = None) -> Any:
    from janome.tokenizer import Tokenizer

    if user_dict_path:
        return Tokenizer(udic=user_dict_path, udic_enc="utf8")
    return Tokenizer()


class TokenizerHandle:
    """Lazily built, shared tokenizer.

    The dictionary load blocks, so it runs in a worker thread. ``factory`` may
    be swapped for tests; it is called with no arguments and returns an object
    with a ``tokenize(text)`` method yielding tokens with ``surface`` and
    ``reading`` attributes.
    """

    def __init__(self, factory: Optional[Callable[[], Any]] = None, user_dict_path: Optional[str] = None) -> None:
        self._factory = factory or (lambda: build_janome_tokenizer(user_dict_path))
        self._once: AsyncOnce[Any] = AsyncOnce(self._build)
        self.builds = 0

    async def _build(self) -> Any:
        self.builds += 1
        if DEBUG_MODE:
            print(f"🔤 Building tokenizer (attempt {self.builds})")
        try:
            tokenizer = await asyncio.to_thread(self._factory)
        except Exception as e:
            print(f"❌ Tokenizer initialization failed: {e}")
            raise
        if DEBUG_MODE:
            print("✅ Tokenizer ready")
        return tokenizer

    async def get(self) -> Any:
        return await self._once.get()


class ReadingAnnotator:
    def __init__(self, tokenizer: Optional[TokenizerHandle] = None) -> None:
        self.tokenizer = tokenizer or TokenizerHandle()

    async def to_reading_hiragana(self, text: str, forced_readings: Optional[Dict[str, str]] = None) -> str:
        source = str(text or "")
        if not source.strip():
            return ""
        tokenizer = await self.tokenizer.get()
        forced = normalize_forced_readings(forced_readings)
        return "\n".join(self._line_to_hiragana(tokenizer, line, forced) for line in source.split("\n"))

    async def to_ruby_html(self, text: str, forced_readings: Optional[Dict[str, str]] = None) -> str:
        source = str(text or "")
        if not source.strip():
            return ""
        tokenizer = await self.tokenizer.get()
        forced = normalize_forced_readings(forced_readings)
        return "<br/>".join(self._line_to_ruby(tokenizer, line, forced) for line in source.split("\n"))

    @staticmethod
    def _line_to_hiragana(tokenizer: Any, line: str, forced: Dict[str, str]) -> str:
        if not line:
            return ""
        out = []
        for token in tokenizer.tokenize(line):
            surface = str(token.surface or "")
            reading = forced.get(surface) or _token_reading(token) or surface
            out.append(katakana_to_hiragana(reading))
        return "".join(out)

    @staticmethod
    def _line_to_ruby(tokenizer: Any, line: str, forced: Dict[str, str]) -> str:
        if not line:
            return ""
        out = []
        for token in tokenizer.tokenize(line):
            surface = str(token.surface or "")
            reading = katakana_to_hiragana(forced.get(surface) or _token_reading(token))
            if not reading or not contains_kanji(surface):
                out.append(escape_html(surface))
            else:
                out.append(f"<ruby>{escape_html(surface)}<rt>{escape_html(reading)}</rt></ruby>")
        return "".join(out)
