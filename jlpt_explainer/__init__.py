"""
JLPT Explainer

Explains JLPT exam questions with an LLM, with readings, sentence-order repair,
a per-question explanation cache and a per-user quota gate.
"""

from . import errors
from . import settings
from . import once
from . import structured
from . import reading
from . import extract
from . import classify
from . import db
from . import llm_client
from . import explanation
from . import sentence_order
from . import reading_cache
from . import meta
from . import engine

__version__ = "0.1.0"
__all__ = ["errors", "settings", "once", "structured", "reading", "extract", "classify", "db", "llm_client",
           "explanation", "sentence_order", "reading_cache", "meta", "engine"]
