#!/usr/bin/env python3
"""
JLPT Explainer - Flask Web Application
JSON endpoints that explain JLPT exam questions and passage groups.
Requires an OpenAI API key for generating new explanations.
"""

import os
import sys
import traceback
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, session

# Add the current directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from jlpt_explainer.engine import ExplanationEngine
from jlpt_explainer.errors import ExplanationError, InvalidRequestError
from jlpt_explainer.settings import EngineSettings
from jlpt_explainer.structured import ExamQuestionCoordinate, PassageGroupCoordinate

# Check for debug mode
DEBUG = os.environ.get("DEBUG", "0") == "1"
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")

engine: Optional[ExplanationEngine] = None


def init_engine(settings: Optional[EngineSettings] = None, **kwargs: Any) -> ExplanationEngine:
    """Create the explanation engine. Extra arguments go to ``ExplanationEngine.from_settings``."""
    global engine
    settings = settings or EngineSettings.from_env()
    # Each async view runs on its own event loop, so connections are never pooled.
    engine = ExplanationEngine.from_settings(settings, null_pool=True, **kwargs)
    if not settings.api_key:
        print("Warning: No API key provided. Only cached explanations can be served.")
    else:
        print(f"✅ Explanation engine initialized with model: {settings.model_name}")
    return engine


def get_engine() -> ExplanationEngine:
    return engine or init_engine()


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, (str, int)) or not str(value).strip():
        raise InvalidRequestError(f"'{key}' is required")
    return str(value).strip()


def _required_int(data: Dict[str, Any], key: str, minimum: int = 0) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise InvalidRequestError(f"'{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRequestError(f"'{key}' must be an integer")
    if number < minimum:
        raise InvalidRequestError(f"'{key}' must be >= {minimum}")
    return number


def _request_json() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return data


def _caller(data: Dict[str, Any]) -> Dict[str, Any]:
    """Who is asking: user id from the body or session, privileges from the admin token."""
    user_id = data.get('user_id') or session.get('username')
    is_privileged = bool(ADMIN_TOKEN) and request.headers.get('X-Admin-Token') == ADMIN_TOKEN
    return {
        'user_id': str(user_id) if user_id else None,
        'is_privileged': is_privileged,
        'force_refresh': bool(data.get('force_refresh', False)),
    }


def _error_response(e: Exception) -> Any:
    if isinstance(e, ExplanationError):
        if DEBUG:
            print(f"❌ {e.code} ({e.status}): {e.message}")
        return jsonify(e.to_dict()), e.status
    if DEBUG:
        traceback.print_exc()
    return jsonify({'status': 'error', 'code': 'error', 'message': f'Error: {str(e)}'}), 500


@app.route('/api/exam/explain', methods=['POST'])
async def api_explain_question() -> Any:
    """Explain one exam question."""
    try:
        data = _request_json()
        coordinate = ExamQuestionCoordinate(
            level=_required_str(data, 'level'),
            exam_id=_required_str(data, 'exam_id'),
            part=_required_int(data, 'part', minimum=1),
            section_index=_required_int(data, 'section_index'),
            question_index=_required_int(data, 'question_index'),
        )
        result = await get_engine().explain_question(coordinate, **_caller(data))
        return jsonify({'status': 'success', **result.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/exam/explain-passage', methods=['POST'])
async def api_explain_passage() -> Any:
    """Explain every question that shares one reading passage."""
    try:
        data = _request_json()
        raw_indexes = data.get('question_indexes')
        if not isinstance(raw_indexes, list) or not raw_indexes:
            raise InvalidRequestError("'question_indexes' must be a non-empty list")
        indexes = tuple(_required_int({'question_index': v}, 'question_index') for v in raw_indexes)
        group = PassageGroupCoordinate(
            level=_required_str(data, 'level'),
            exam_id=_required_str(data, 'exam_id'),
            part=_required_int(data, 'part', minimum=1),
            section_index=_required_int(data, 'section_index'),
            question_indexes=indexes,
        )
        result = await get_engine().explain_passage_group(group, **_caller(data))
        return jsonify({'status': 'success', **result.to_dict()})
    except Exception as e:
        return _error_response(e)


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='JLPT Explainer')
    parser.add_argument('--host', default='127.0.0.1', help='Host IP to bind to (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=5000, help='Port to bind to (default: 5000)')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()

    if args.debug:
        DEBUG = True

    init_engine()
    print(f"🚀 Starting server on http://{args.host}:{args.port}")
    app.run(debug=DEBUG, host=args.host, port=args.port)
