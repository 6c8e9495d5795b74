"""Utility functions for the Flask application."""
from functools import wraps
from typing import Any, Dict, List, Optional

from flask import jsonify, session

from .models import User, db


def api_login_required(f):
    """Decorator to require a logged-in session for a JSON route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'error': 'Not authenticated'}), 401
        return f(*args, **kwargs)
    return decorated_function


def get_current_user_id() -> Optional[str]:
    return session.get('user_id')


def get_current_user() -> Optional[User]:
    """Get the currently logged-in user."""
    user_id = get_current_user_id()
    if user_id:
        return db.session.get(User, user_id)
    return None


def _normalize_option(option: Any, index: int) -> Dict[str, Any]:
    if not isinstance(option, dict):
        return {'id': f'o{index + 1}', 'label': str(option)}
    return {
        **option,
        'id': str(option.get('id') or f'o{index + 1}'),
        'label': str(option.get('label') or option.get('text') or ''),
    }


def normalize_questions_for_client(questions: Any) -> List[Dict[str, Any]]:
    """Shape stored questions for the task player.

    Adds ``text`` and ``type`` to every question and a ``label`` to every
    option; the stored fields are passed through unchanged.
    """
    normalized = []
    for index, question in enumerate(questions if isinstance(questions, list) else []):
        if not isinstance(question, dict):
            continue
        options = question.get('options')
        text = question.get('text')
        normalized.append({
            **question,
            'id': str(question.get('id') or f'q{index + 1}'),
            'text': text if isinstance(text, str) else question.get('question', ''),
            'type': question.get('type') or 'multiple-choice',
            'options': [_normalize_option(o, i) for i, o in enumerate(options)] if isinstance(options, list) else None,
        })
    return normalized
