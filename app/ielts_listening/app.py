"""
IELTS Listening Practice - Flask Application
JSON routes for task content, task progress and explicit generation.
"""
import os

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS

from .config import config
from .models import db
from .services.content_pipeline import TaskNotFoundError, get_content_pipeline, is_listening_task
from .services.deadlines import Deadline
from .services.task_factory import create_follow_up_listening_task
from .services.task_store import TaskStore
from .utils import api_login_required, get_current_user_id, normalize_questions_for_client


# Initialize Flask app
app = Flask(__name__)
app.config.from_object(config[os.getenv('FLASK_ENV', 'development')])

# Initialize extensions
db.init_app(app)
CORS(app, resources={r"/*": {"origins": app.config['CORS_ALLOWED_ORIGINS']}})


def init_database():
    """Create tables if they do not exist yet."""
    with app.app_context():
        db.create_all()
        app.logger.info("[DATABASE] Initialized successfully")


def _load_owned_task(task_id: str):
    """Return ``(task, None)`` or ``(None, error_response)`` for the current user."""
    task = TaskStore().get(task_id)
    if task is None:
        return None, (jsonify({'error': 'Task not found'}), 404)
    if task.user_id != get_current_user_id():
        return None, (jsonify({'error': 'Access denied'}), 403)
    return task, None


def _task_payload(task):
    """Client view of a task: no script text, questions shaped for the player."""
    data = task.to_dict(include_script=False)
    data['questions'] = normalize_questions_for_client(task.questions) if task.questions else None
    return data


# ============================================================================
# TASK CONTENT
# ============================================================================

@app.route('/api/task-content/<task_id>', methods=['GET'])
@api_login_required
def get_task_content(task_id):
    """Return a task, generating whatever content it is still missing."""
    task, error = _load_owned_task(task_id)
    if error:
        return error

    deadline = Deadline(current_app.config['CONTENT_READ_TIMEOUT_SECONDS'])
    try:
        task = get_content_pipeline().fill_missing_content(task_id, deadline=deadline)
    except TaskNotFoundError:
        return jsonify({'error': 'Task not found'}), 404

    return jsonify(_task_payload(task))


@app.route('/api/task/<task_id>/generate-script', methods=['POST'])
@api_login_required
def generate_task_script(task_id):
    task, error = _load_owned_task(task_id)
    if error:
        return error
    if not is_listening_task(task):
        return jsonify({'error': 'Scripts are only generated for listening tasks'}), 400
    if task.has_script:
        return jsonify({'error': 'Script already exists for this task'}), 409

    result = get_content_pipeline().generate_script(task_id)
    if result is None:
        return jsonify({'error': 'Script generation is already in progress'}), 409
    if not result.success:
        return jsonify({'error': 'Failed to generate script', 'details': result.error}), 502

    task = TaskStore().refresh(task_id)
    return jsonify({'message': 'Script generated', 'task': _task_payload(task)})


@app.route('/api/task/<task_id>/generate-audio', methods=['POST'])
@api_login_required
def generate_task_audio(task_id):
    task, error = _load_owned_task(task_id)
    if error:
        return error
    if not task.has_script:
        return jsonify({'error': 'Task has no script; generate a script first'}), 400

    result = get_content_pipeline().regenerate_audio(task_id)
    if result.reused:
        return jsonify({
            'error': 'Audio already exists for this task',
            'audio_url': result.audio_url,
            'duration': result.duration,
        }), 409
    if not result.success:
        return jsonify({'error': 'Failed to generate audio', 'details': result.error}), 502

    return jsonify({
        'message': 'Audio generated',
        'audio_url': result.audio_url,
        'duration': result.duration,
        'accent': result.accent,
    })


# ============================================================================
# TASK PROGRESS
# ============================================================================

@app.route('/api/task-progress/<task_id>/start', methods=['PATCH'])
@api_login_required
def start_task(task_id):
    """Mark a task started, generating its script first if it has none."""
    task, error = _load_owned_task(task_id)
    if error:
        return error

    if is_listening_task(task) and not task.has_script:
        try:
            get_content_pipeline().trigger_script_fallback(task_id)
        except TaskNotFoundError:
            return jsonify({'error': 'Task not found'}), 404

    task = TaskStore().mark_in_progress(task_id)
    return jsonify(_task_payload(task))


@app.route('/api/task-progress/<task_id>/complete', methods=['PATCH'])
@api_login_required
def complete_task(task_id):
    task, error = _load_owned_task(task_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    store = TaskStore()
    if 'progress_data' in payload:
        store.update(task_id, progress_data=payload['progress_data'])
    task = store.mark_completed(task_id)
    return jsonify(_task_payload(task))


@app.route('/api/task-progress/batch-initialize', methods=['POST'])
@api_login_required
def batch_initialize_tasks():
    """Create a week's tasks, optionally pre-generating listening content."""
    payload = request.get_json(silent=True) or {}
    week_number = payload.get('week_number')
    tasks = payload.get('tasks')

    try:
        week_number = int(week_number)
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid week_number value'}), 400
    if not isinstance(tasks, list) or not tasks:
        return jsonify({'error': 'Missing tasks'}), 400

    specs = []
    for item in tasks:
        if not isinstance(item, dict) or not item.get('task_title'):
            return jsonify({'error': 'Each task needs a task_title and day_number'}), 400
        try:
            day_number = int(item.get('day_number'))
        except (TypeError, ValueError):
            return jsonify({'error': 'Each task needs a task_title and day_number'}), 400
        specs.append({
            'day_number': day_number,
            'task_title': str(item['task_title']),
            'skill': item.get('skill') or 'listening',
        })

    created = TaskStore().batch_initialize(get_current_user_id(), week_number, specs)
    created_ids = [task.id for task in created]

    pregenerated = []
    if payload.get('pregenerate') and created_ids:
        pregenerated = get_content_pipeline().pregenerate_tasks(created_ids)

    store = TaskStore()
    return jsonify({
        'tasks': [_task_payload(store.get(task_id)) for task_id in created_ids],
        'pregenerated': pregenerated,
    }), 201


@app.route('/api/task-progress/<task_id>/follow-up', methods=['POST'])
@api_login_required
def create_follow_up_task(task_id):
    task, error = _load_owned_task(task_id)
    if error:
        return error

    follow_up = create_follow_up_listening_task(get_current_user_id(), task_id)
    return jsonify(_task_payload(follow_up)), 201


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


@app.errorhandler(500)
def internal_error(error):
    """500 error handler."""
    db.session.rollback()
    return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# INITIALIZATION
# ============================================================================

if __name__ == '__main__':
    init_database()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
