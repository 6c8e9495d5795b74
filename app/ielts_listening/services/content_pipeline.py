"""
Content pipeline for listening tasks.

A task's content is produced in three stages:

1. script (plus scenario metadata and, if stale, a new title)
2. comprehension questions, from the script
3. audio, synthesized from the script

Each stage runs only while its output field is empty and only once a script
exists, so reading a task repeatedly is safe: finished stages are skipped.
A stage runs under a per-task advisory lock; a reader that finds the lock
held skips the stage and lets the holder finish. Failures are logged and
leave the field empty for the next read to retry; they are never raised to
the caller.
"""
from __future__ import annotations

import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..models import TaskProgress, db
from .audio_synthesizer import AudioResult, AudioSynthesizer, get_audio_synthesizer
from .deadlines import Deadline, earliest
from .gemini_client import GeminiClient, get_gemini_client
from .question_generator import generate_questions
from .script_generator import ScriptResult, generate_listening_script
from .task_store import TaskStore
from .title import make_listening_task_title, needs_title_update

STAGE_SCRIPT = 'script'
STAGE_QUESTIONS = 'questions'
STAGE_AUDIO = 'audio'

STATUS_RANK = {
    'not-started': 0,
    'script-generated': 1,
    'questions-ready': 2,
    'audio-ready': 2,
    'content-ready': 3,
    'in-progress': 4,
    'completed': 5,
}

_LISTENING_TITLE_PATTERN = re.compile(r'listening|audio|conversation', re.IGNORECASE)


class TaskNotFoundError(LookupError):
    """Raised when the pipeline is asked to work on a task that does not exist."""


def advance_status(current: Optional[str], proposed: str) -> str:
    """Return ``proposed`` only if it moves the task forward."""
    if STATUS_RANK.get(proposed, 0) > STATUS_RANK.get(current or '', 0):
        return proposed
    return current or proposed


def readiness_status(has_script: bool, has_questions: bool, has_audio: bool) -> str:
    """Status tag describing which content a task has."""
    if not has_script:
        return 'not-started'
    if has_questions and has_audio:
        return 'content-ready'
    if has_questions:
        return 'questions-ready'
    if has_audio:
        return 'audio-ready'
    return 'script-generated'


def status_after(fields: Dict[str, Any]) -> Callable[[TaskProgress], str]:
    """Status resolver for a write of ``fields`` on top of the row as currently stored."""
    def resolve(task: TaskProgress) -> str:
        return advance_status(task.status, readiness_status(
            has_script=bool(fields.get('script_text')) or task.has_script,
            has_questions=bool(fields.get('questions')) or task.has_questions,
            has_audio=bool(fields.get('audio_url')) or task.has_audio,
        ))
    return resolve


def is_listening_task(task: TaskProgress) -> bool:
    if task.skill:
        return task.skill == 'listening'
    return bool(_LISTENING_TITLE_PATTERN.search(task.task_title or ''))


@dataclass
class PipelineSettings:
    script_timeout: float = 60
    questions_timeout: float = 60
    audio_timeout: float = 90
    read_timeout: float = 240
    lock_ttl_seconds: int = 300
    default_user_level: float = 5
    default_target_band: float = 7.0
    fallback_user_level: float = 1
    verify_audio_on_read: bool = False
    max_workers: int = 4

    @classmethod
    def from_config(cls, config) -> 'PipelineSettings':
        return cls(
            script_timeout=config['SCRIPT_STAGE_TIMEOUT_SECONDS'],
            questions_timeout=config['QUESTIONS_STAGE_TIMEOUT_SECONDS'],
            audio_timeout=config['AUDIO_STAGE_TIMEOUT_SECONDS'],
            read_timeout=config['CONTENT_READ_TIMEOUT_SECONDS'],
            lock_ttl_seconds=config['STAGE_LOCK_TTL_SECONDS'],
            default_user_level=config['DEFAULT_USER_LEVEL'],
            default_target_band=config['DEFAULT_TARGET_BAND'],
            fallback_user_level=config['FALLBACK_USER_LEVEL'],
            verify_audio_on_read=config['PIPELINE_VERIFY_AUDIO_ON_READ'],
            max_workers=config['PREGENERATION_MAX_WORKERS'],
        )


# A stage's work: (task, deadline) -> (result, fields to persist or None)
StageWork = Callable[[TaskProgress, Deadline], Tuple[Any, Optional[Dict[str, Any]]]]


class ContentPipeline:
    """Fills in missing script, questions and audio for listening tasks."""

    def __init__(
        self,
        store: TaskStore,
        llm_client: GeminiClient,
        synthesizer: AudioSynthesizer,
        settings: Optional[PipelineSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.llm = llm_client
        self.synthesizer = synthesizer
        self.settings = settings or PipelineSettings()
        self._clock = clock

    # ------------------------------------------------------------ public API

    def fill_missing_content(self, task_id: str, deadline: Optional[Deadline] = None) -> TaskProgress:
        """Run every stage whose output is missing, then return the task.

        Stages not started before ``deadline`` expires are left for the next read.
        """
        task = self._require_task(task_id)
        level, band = self.store.get_learner_profile(
            task.user_id, self.settings.default_user_level, self.settings.default_target_band
        )

        if not task.has_script and is_listening_task(task):
            current_app.logger.info("[Pipeline Stage 1] Generating script for task %s", task_id)
            self._run_script_stage(task_id, level, band, deadline)

        self._run_stage(
            task_id,
            STAGE_QUESTIONS,
            needed=lambda t: t.has_script and not t.has_questions,
            work=self._questions_work,
            timeout=self.settings.questions_timeout,
            deadline=deadline,
        )

        stale_audio_url = self._missing_stored_audio(task_id)
        self._run_stage(
            task_id,
            STAGE_AUDIO,
            needed=lambda t: t.has_script and (
                not t.has_audio or (stale_audio_url is not None and t.audio_url == stale_audio_url)
            ),
            work=self._audio_work,
            timeout=self.settings.audio_timeout,
            deadline=deadline,
        )

        return self.store.refresh(task_id)

    def trigger_script_fallback(self, task_id: str) -> None:
        """Generate only the script, synchronously, for a task the user is starting."""
        task = self._require_task(task_id)
        if task.has_script or not is_listening_task(task):
            return

        level, band = self.store.get_learner_profile(
            task.user_id, self.settings.fallback_user_level, self.settings.default_target_band
        )
        current_app.logger.info(
            "[Fallback Trigger] Generating script for task %s before start (level=%s, band=%s)",
            task_id,
            level,
            band,
        )
        self._run_script_stage(task_id, level, band, deadline=None)

    def generate_script(self, task_id: str) -> Optional[ScriptResult]:
        """Run the script stage on request.

        Returns None when the stage did not run (script already present, or
        another request holds the script lock).
        """
        task = self._require_task(task_id)
        level, band = self.store.get_learner_profile(
            task.user_id, self.settings.default_user_level, self.settings.default_target_band
        )
        return self._run_script_stage(task_id, level, band, deadline=None)

    def regenerate_audio(self, task_id: str) -> AudioResult:
        """Synthesize audio on request, reusing a stored object that still exists."""
        task = self._require_task(task_id)
        if not task.has_script:
            return AudioResult(success=False, error='Script text is required for audio generation')

        if task.has_audio and self.synthesizer.audio_exists(task.audio_url):
            return AudioResult(
                success=True,
                audio_url=task.audio_url,
                duration=task.duration,
                accent=task.accent,
                reused=True,
            )

        stale_url = task.audio_url
        outcome = self._run_stage(
            task_id,
            STAGE_AUDIO,
            needed=lambda t: t.has_script and (not t.has_audio or t.audio_url == stale_url),
            work=self._audio_work,
            timeout=self.settings.audio_timeout,
            deadline=None,
        )
        if outcome is None:
            task = self.store.refresh(task_id)
            if task.has_audio and task.audio_url != stale_url:
                return AudioResult(success=True, audio_url=task.audio_url, duration=task.duration,
                                   accent=task.accent, reused=True)
            return AudioResult(success=False, error='Audio generation did not complete; it may be running elsewhere')
        return outcome

    def pregenerate_tasks(self, task_ids: Iterable[str], max_workers: Optional[int] = None) -> List[str]:
        """Generate full content for many tasks in parallel.

        Workers only talk to the external services; results are written here,
        in the calling thread, and only for tasks that still have no script.
        Returns the ids of tasks that received content.
        """
        app = current_app._get_current_object()
        jobs = []
        for task_id in task_ids:
            task = self.store.get(task_id)
            if task is None or task.has_script or not is_listening_task(task):
                continue
            token = self.store.acquire_stage_lock(task_id, STAGE_SCRIPT, self.settings.lock_ttl_seconds)
            if token is None:
                continue
            level, band = self.store.get_learner_profile(
                task.user_id, self.settings.default_user_level, self.settings.default_target_band
            )
            jobs.append((token, {
                'task_id': task.id,
                'task_title': task.task_title,
                'user_id': task.user_id,
                'week_number': task.week_number,
                'user_level': level,
                'target_band': band,
            }))

        if not jobs:
            return []

        workers = max(1, min(max_workers or self.settings.max_workers, len(jobs)))
        current_app.logger.info("[Pre-Generation] Generating content for %s tasks with %s workers", len(jobs), workers)

        tokens = {job['task_id']: token for token, job in jobs}
        succeeded: List[str] = []
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._pregenerate_one, app, job): job['task_id']
                    for _, job in jobs
                }
                for future in as_completed(futures):
                    task_id = futures[future]
                    try:
                        fields = future.result()
                    except Exception:
                        current_app.logger.exception("[Pre-Generation] Worker crashed for task %s", task_id)
                        continue
                    if fields and self._persist_pregenerated(task_id, fields):
                        succeeded.append(task_id)
        finally:
            for task_id, token in tokens.items():
                self._release(task_id, STAGE_SCRIPT, token)

        current_app.logger.info("[Pre-Generation] %s/%s tasks received content", len(succeeded), len(jobs))
        return succeeded

    # ----------------------------------------------------------- stage runner

    def _run_script_stage(self, task_id: str, level: float, band: float, deadline: Optional[Deadline]):
        def work(task: TaskProgress, stage_deadline: Deadline):
            result = generate_listening_script(
                task.task_title, level, band, client=self.llm, deadline=stage_deadline
            )
            if not result.success:
                current_app.logger.warning(
                    "[Pipeline Stage 1] Script generation failed for task %s (title_chars=%s, level=%s, band=%s): %s",
                    task.id,
                    len(task.task_title or ''),
                    level,
                    band,
                    result.error,
                )
                return result, None

            fields = result.task_fields()
            if needs_title_update(task.task_title) and (result.context_label or result.topic_domain):
                fields['task_title'] = make_listening_task_title(
                    result.script_type,
                    result.context_label,
                    result.topic_domain,
                    result.scenario_overview,
                )
                current_app.logger.info(
                    "[Pipeline Stage 1] Retitled task %s: %r -> %r", task.id, task.task_title, fields['task_title']
                )
            return result, fields

        return self._run_stage(
            task_id,
            STAGE_SCRIPT,
            needed=lambda t: not t.has_script and is_listening_task(t),
            work=work,
            timeout=self.settings.script_timeout,
            deadline=deadline,
        )

    def _questions_work(self, task: TaskProgress, stage_deadline: Deadline):
        result = generate_questions(
            task.script_text, task.task_title, task.difficulty, client=self.llm, deadline=stage_deadline
        )
        if not result.success:
            current_app.logger.warning(
                "[Pipeline Stage 2] Question generation failed for task %s (script_chars=%s, rejected=%s): %s",
                task.id,
                len(task.script_text or ''),
                result.rejected,
                result.error,
            )
            return result, None
        return result, {'questions': result.questions}

    def _audio_work(self, task: TaskProgress, stage_deadline: Deadline):
        result = self.synthesizer.synthesize(
            task.script_text,
            task.accent,
            task.user_id,
            task.id,
            task.week_number,
            deadline=stage_deadline,
        )
        if not result.success:
            current_app.logger.warning(
                "[Pipeline Stage 3] Audio generation failed for task %s (script_chars=%s, accent=%s): %s",
                task.id,
                len(task.script_text or ''),
                task.accent,
                result.error,
            )
            return result, None
        return result, {'audio_url': result.audio_url, 'duration': result.duration, 'accent': result.accent}

    def _run_stage(
        self,
        task_id: str,
        stage: str,
        needed: Callable[[TaskProgress], bool],
        work: StageWork,
        timeout: float,
        deadline: Optional[Deadline],
    ):
        """Run one stage under its lock. Returns the stage result, or None if skipped."""
        task = self.store.get(task_id)
        if task is None or not needed(task):
            return None
        if deadline is not None and deadline.expired:
            current_app.logger.warning(
                "[Pipeline] Skipping %s stage for task %s: request deadline exhausted", stage, task_id
            )
            return None

        token = self.store.acquire_stage_lock(task_id, stage, self.settings.lock_ttl_seconds)
        if token is None:
            current_app.logger.info(
                "[Pipeline] %s stage for task %s is already running elsewhere; skipping", stage, task_id
            )
            return None

        try:
            task = self.store.refresh(task_id)
            if task is None or not needed(task):
                return None

            stage_deadline = earliest(deadline, Deadline(timeout, clock=self._clock))
            result, fields = work(task, stage_deadline)
            if fields:
                if self.store.update_content(task_id, fields, status_after(fields)) is None:
                    current_app.logger.warning(
                        "[Pipeline] %s stage output for task %s was not saved", stage, task_id
                    )
                    return None
                current_app.logger.info("[Pipeline] %s stage completed for task %s", stage, task_id)
            return result
        except Exception:
            db.session.rollback()
            current_app.logger.exception("[Pipeline] %s stage crashed for task %s", stage, task_id)
            return None
        finally:
            self._release(task_id, stage, token)

    # --------------------------------------------------------------- helpers

    def _require_task(self, task_id: str) -> TaskProgress:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _release(self, task_id: str, stage: str, token: str) -> None:
        try:
            self.store.release_stage_lock(task_id, stage, token)
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "[Pipeline] Could not release %s lock for task %s; it will expire", stage, task_id
            )

    def _missing_stored_audio(self, task_id: str) -> Optional[str]:
        """Return the stored audio URL if verification is on and the object is gone."""
        if not self.settings.verify_audio_on_read:
            return None
        task = self.store.get(task_id)
        if task is None or not task.has_audio:
            return None
        if self.synthesizer.audio_exists(task.audio_url):
            return None
        current_app.logger.warning(
            "[Pipeline Stage 3] Stored audio for task %s is missing (%s); regenerating", task_id, task.audio_url
        )
        return task.audio_url

    def _pregenerate_one(self, app, job: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Worker body: produce every content field for one task without touching the database."""
        with app.app_context():
            task_id = job['task_id']
            script = generate_listening_script(
                job['task_title'],
                job['user_level'],
                job['target_band'],
                client=self.llm,
                deadline=Deadline(self.settings.script_timeout, clock=self._clock),
            )
            if not script.success:
                current_app.logger.warning("[Pre-Generation] Script failed for task %s: %s", task_id, script.error)
                return None

            fields = script.task_fields()
            if needs_title_update(job['task_title']) and (script.context_label or script.topic_domain):
                fields['task_title'] = make_listening_task_title(
                    script.script_type, script.context_label, script.topic_domain, script.scenario_overview
                )

            questions = generate_questions(
                script.script_text,
                fields.get('task_title', job['task_title']),
                script.difficulty,
                client=self.llm,
                deadline=Deadline(self.settings.questions_timeout, clock=self._clock),
            )
            if questions.success:
                fields['questions'] = questions.questions
            else:
                current_app.logger.warning(
                    "[Pre-Generation] Questions failed for task %s: %s", task_id, questions.error
                )

            audio = self.synthesizer.synthesize(
                script.script_text,
                script.accent,
                job['user_id'],
                task_id,
                job['week_number'],
                deadline=Deadline(self.settings.audio_timeout, clock=self._clock),
            )
            if audio.success:
                fields.update(audio_url=audio.audio_url, duration=audio.duration, accent=audio.accent)
            else:
                current_app.logger.warning("[Pre-Generation] Audio failed for task %s: %s", task_id, audio.error)
            return fields

    def _persist_pregenerated(self, task_id: str, fields: Dict[str, Any]) -> bool:
        try:
            saved = self.store.update_content(
                task_id,
                fields,
                status_after(fields),
                only_if=lambda task: not task.has_script,
            )
            if saved is None:
                current_app.logger.info("[Pre-Generation] Task %s gained a script meanwhile; discarding result", task_id)
                return False
            return True
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("[Pre-Generation] Could not save content for task %s", task_id)
            return False


def get_content_pipeline() -> ContentPipeline:
    """Factory helper wiring the pipeline to the application config."""
    settings = PipelineSettings.from_config(current_app.config)
    return ContentPipeline(
        store=TaskStore(),
        llm_client=get_gemini_client(),
        synthesizer=get_audio_synthesizer(timeout=settings.audio_timeout),
        settings=settings,
    )
