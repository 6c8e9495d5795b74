"""SQLAlchemy database models for the IELTS listening app."""
from datetime import datetime, timezone
import sqlite3
from uuid import uuid4

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite connections for better concurrency."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=15000;")
        cursor.close()


def utcnow():
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class User(db.Model):
    """User account model (owner of study plans and tasks)."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, index=True, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    study_plans = db.relationship('StudyPlan', back_populates='user', cascade='all, delete-orphan')
    tasks = db.relationship('TaskProgress', back_populates='user', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.id}>'


class StudyPlan(db.Model):
    """Onboarding result: target band and self-rated skill levels."""
    __tablename__ = 'study_plans'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    target_band_score = db.Column(db.Float, nullable=False, default=7.0)
    skill_ratings = db.Column(db.JSON, nullable=True)  # {"listening": 5, "reading": 6, ...}
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    user = db.relationship('User', back_populates='study_plans')

    def __repr__(self):
        return f'<StudyPlan user={self.user_id} band={self.target_band_score}>'


# ============================================================================
# LISTENING TASK MODELS
# ============================================================================

class TaskProgress(db.Model):
    """One practice task for a user's week/day, plus its generated content."""
    __tablename__ = 'task_progress'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    week_number = db.Column(db.Integer, nullable=False)
    day_number = db.Column(db.Integer, nullable=False)
    task_title = db.Column(db.String(255), nullable=False)
    skill = db.Column(db.String(20), default='listening', nullable=False)
    status = db.Column(db.String(20), default='not-started', nullable=False)
    progress_data = db.Column(db.JSON, nullable=True)  # Resume state (time left, current question, ...)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Generated content
    script_text = db.Column(db.Text, nullable=True)
    audio_url = db.Column(db.String(500), nullable=True)
    questions = db.Column(db.JSON, nullable=True)  # [{id, question, options: [{id, text}], correctAnswer, explanation}]
    accent = db.Column(db.String(20), nullable=True)
    duration = db.Column(db.Integer, default=0)  # Seconds
    replay_limit = db.Column(db.Integer, default=3)
    script_type = db.Column(db.String(20), nullable=True)  # dialogue | monologue
    difficulty = db.Column(db.String(20), nullable=True)  # e.g. "Band 6.5"

    # Scenario metadata used for titles (ielts_part is analytics only)
    ielts_part = db.Column(db.Integer, nullable=True)
    topic_domain = db.Column(db.String(100), nullable=True)
    context_label = db.Column(db.String(100), nullable=True)
    scenario_overview = db.Column(db.Text, nullable=True)
    estimated_duration_sec = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = db.relationship('User', back_populates='tasks')

    def __repr__(self):
        return f'<TaskProgress id={self.id} week={self.week_number} day={self.day_number}>'

    @property
    def has_script(self) -> bool:
        return bool(self.script_text and self.script_text.strip())

    @property
    def has_questions(self) -> bool:
        return bool(self.questions)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_url and self.audio_url.strip())

    def to_dict(self, include_script: bool = False):
        """Convert task to dictionary."""
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'week_number': self.week_number,
            'day_number': self.day_number,
            'task_title': self.task_title,
            'skill': self.skill,
            'status': self.status,
            'progress_data': self.progress_data,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'audio_url': self.audio_url,
            'questions': self.questions,
            'accent': self.accent,
            'duration': self.duration,
            'replay_limit': self.replay_limit,
            'script_type': self.script_type,
            'difficulty': self.difficulty,
            'ielts_part': self.ielts_part,
            'topic_domain': self.topic_domain,
            'context_label': self.context_label,
            'scenario_overview': self.scenario_overview,
            'estimated_duration_sec': self.estimated_duration_sec,
        }
        if include_script:
            data['script_text'] = self.script_text
        return data


class TaskGenerationLock(db.Model):
    """Advisory lock row guarding one generation stage of one task."""
    __tablename__ = 'task_generation_locks'
    __table_args__ = (
        db.UniqueConstraint('task_id', 'stage', name='uq_task_stage_lock'),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.String(36), db.ForeignKey('task_progress.id', ondelete='CASCADE'), nullable=False)
    stage = db.Column(db.String(20), nullable=False)  # script | questions | audio
    owner_token = db.Column(db.String(36), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f'<TaskGenerationLock task={self.task_id} stage={self.stage}>'
