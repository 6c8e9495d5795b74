"""Persistence helpers for listening tasks and their generation locks."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from ..models import StudyPlan, TaskGenerationLock, TaskProgress, db, new_id, utcnow

# Columns the content pipeline and progress endpoints are allowed to write
UPDATABLE_FIELDS = frozenset({
    'task_title',
    'status',
    'progress_data',
    'started_at',
    'completed_at',
    'script_text',
    'audio_url',
    'questions',
    'accent',
    'duration',
    'replay_limit',
    'script_type',
    'difficulty',
    'ielts_part',
    'topic_domain',
    'context_label',
    'scenario_overview',
    'estimated_duration_sec',
})


class TaskStore:
    """Thin collaborator over the SQLAlchemy session.

    Every write names the columns it touches, so one stage persisting its
    output never overwrites the fields another stage owns.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def get(self, task_id: str) -> Optional[TaskProgress]:
        return db.session.get(TaskProgress, task_id)

    def refresh(self, task_id: str) -> Optional[TaskProgress]:
        """Re-read a task from the database, dropping any cached state."""
        task = self.get(task_id)
        if task is not None:
            db.session.refresh(task)
        return task

    def create(self, **fields: Any) -> TaskProgress:
        task = TaskProgress(**fields)
        db.session.add(task)
        db.session.commit()
        return task

    def update(self, task_id: str, **fields: Any) -> Optional[TaskProgress]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

        task = self.get(task_id)
        if task is None:
            return None
        for name, value in fields.items():
            setattr(task, name, value)
        task.updated_at = self._clock()
        db.session.commit()
        return task

    def update_content(
        self,
        task_id: str,
        fields: Dict[str, Any],
        resolve_status: Callable[[TaskProgress], str],
        only_if: Optional[Callable[[TaskProgress], bool]] = None,
        max_attempts: int = 3,
    ) -> Optional[TaskProgress]:
        """Write generated content with a status derived from the row as stored now.

        The row is re-read, ``resolve_status`` picks the new status from it and
        the UPDATE only applies while the status is still the one just read.
        A concurrent status change makes it re-read and try again. Returns
        None when the task is gone, ``only_if`` rejects the row, or every
        attempt lost the race.
        """
        if 'status' in fields:
            raise ValueError("Status is resolved at write time; pass resolve_status instead")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

        for attempt in range(max_attempts):
            task = self.refresh(task_id)
            if task is None or (only_if is not None and not only_if(task)):
                db.session.rollback()
                return None

            seen = task.status
            status = resolve_status(task)
            result = db.session.execute(
                update(TaskProgress)
                .where(TaskProgress.id == task_id, TaskProgress.status == seen)
                .values(**fields, status=status, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.session.commit()
                return self.refresh(task_id)

            db.session.rollback()
            current_app.logger.info(
                "Status of task %s changed during write (was %s); retrying %s/%s",
                task_id,
                seen,
                attempt + 1,
                max_attempts,
            )

        current_app.logger.warning("Gave up writing content for task %s after %s attempts", task_id, max_attempts)
        return None

    def update_status(self, task_id: str, status: str) -> Optional[TaskProgress]:
        """Set a task's status, stamping start/completion times on the way."""
        task = self.get(task_id)
        if task is None:
            return None

        fields: Dict[str, Any] = {'status': status}
        now = self._clock()
        if status == 'in-progress' and task.started_at is None:
            fields['started_at'] = now
        if status == 'completed':
            fields['completed_at'] = now
            if task.started_at is None:
                fields['started_at'] = now
        return self.update(task_id, **fields)

    def mark_in_progress(self, task_id: str) -> Optional[TaskProgress]:
        task = self.get(task_id)
        if task is None:
            return None
        if task.status == 'completed':
            return task
        return self.update_status(task_id, 'in-progress')

    def mark_completed(self, task_id: str) -> Optional[TaskProgress]:
        return self.update_status(task_id, 'completed')

    def batch_initialize(
        self,
        user_id: str,
        week_number: int,
        tasks: Iterable[Dict[str, Any]],
    ) -> List[TaskProgress]:
        """Create the week's tasks, skipping any already present for the same day and title."""
        existing = {
            (task.day_number, task.task_title)
            for task in TaskProgress.query.filter_by(user_id=user_id, week_number=week_number)
        }

        created: List[TaskProgress] = []
        for entry in tasks:
            key = (entry['day_number'], entry['task_title'])
            if key in existing:
                continue
            existing.add(key)
            task = TaskProgress(
                user_id=user_id,
                week_number=week_number,
                day_number=entry['day_number'],
                task_title=entry['task_title'],
                skill=entry.get('skill', 'listening'),
                status='not-started',
            )
            db.session.add(task)
            created.append(task)

        db.session.commit()
        current_app.logger.info(
            "Initialized %s new tasks for user %s week %s", len(created), user_id, week_number
        )
        return created

    def get_learner_profile(
        self,
        user_id: str,
        default_level: float,
        default_band: float,
    ) -> Tuple[float, float]:
        """Return ``(listening_level, target_band)`` from the latest study plan."""
        plan = (
            StudyPlan.query.filter_by(user_id=user_id)
            .order_by(StudyPlan.created_at.desc())
            .first()
        )
        if plan is None:
            return default_level, default_band

        ratings = plan.skill_ratings or {}
        level = ratings.get('listening')
        if not isinstance(level, (int, float)) or isinstance(level, bool):
            level = default_level
        band = plan.target_band_score or default_band
        return level, band

    # ------------------------------------------------------------------ locks

    def acquire_stage_lock(self, task_id: str, stage: str, ttl_seconds: int) -> Optional[str]:
        """Take the generation lock for one stage of one task.

        Returns an owner token, or None when another holder's lock has not
        expired yet. An expired lock is taken over with a conditional UPDATE so
        two contenders cannot both win it.
        """
        token = new_id()
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)

        db.session.add(TaskGenerationLock(
            task_id=task_id,
            stage=stage,
            owner_token=token,
            acquired_at=now,
            expires_at=expires_at,
        ))
        try:
            db.session.commit()
            return token
        except IntegrityError:
            db.session.rollback()

        result = db.session.execute(
            update(TaskGenerationLock)
            .where(
                TaskGenerationLock.task_id == task_id,
                TaskGenerationLock.stage == stage,
                TaskGenerationLock.expires_at < now,
            )
            .values(owner_token=token, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount == 1:
            current_app.logger.info("Took over expired %s lock for task %s", stage, task_id)
            return token
        return None

    def release_stage_lock(self, task_id: str, stage: str, token: str) -> None:
        db.session.execute(
            delete(TaskGenerationLock)
            .where(
                TaskGenerationLock.task_id == task_id,
                TaskGenerationLock.stage == stage,
                TaskGenerationLock.owner_token == token,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
