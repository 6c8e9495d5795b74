"""Creation of follow-up listening tasks that continue an existing scenario."""
from __future__ import annotations

from flask import current_app

from ..models import TaskProgress
from .accents import DEFAULT_ACCENT
from .task_store import TaskStore
from .title import make_listening_task_title


def create_follow_up_listening_task(
    user_id: str,
    from_task_id: str,
    store: TaskStore | None = None,
) -> TaskProgress:
    """
    Create a new listening task on the same week and day as ``from_task_id``.

    The new task inherits the scenario (accent, IELTS part, topic domain,
    context label, script type) and gets a title derived from it. Content
    fields stay empty so the pipeline generates them on first read.

    Raises:
        LookupError: the source task does not exist
        PermissionError: the source task belongs to another user
    """
    store = store or TaskStore()
    source = store.get(from_task_id)
    if source is None:
        raise LookupError(f'Task {from_task_id} not found')
    if source.user_id != user_id:
        raise PermissionError('Task belongs to another user')

    script_type = source.script_type or 'dialogue'
    title = make_listening_task_title(
        script_type,
        source.context_label or 'conversation',
        source.topic_domain or 'general',
        source.scenario_overview or '',
    )

    task = store.create(
        user_id=user_id,
        week_number=source.week_number,
        day_number=source.day_number,
        task_title=title,
        skill='listening',
        status='not-started',
        accent=source.accent or DEFAULT_ACCENT,
        ielts_part=source.ielts_part,
        topic_domain=source.topic_domain,
        context_label=source.context_label,
        script_type=script_type,
        duration=0,
        replay_limit=3,
    )

    current_app.logger.info(
        "Created follow-up task %s from %s for user %s: %r (accent=%s, part=%s)",
        task.id,
        from_task_id,
        user_id,
        title,
        task.accent,
        task.ielts_part,
    )
    return task
