"""
Listening script generation using Gemini AI.

One call produces an IELTS-style listening script together with the scenario
metadata used for titles, voice selection and analytics. The model output is
treated as untrusted: anything other than a single JSON object with a
non-empty ``script`` is a failed generation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import current_app

from .accents import normalize_accent
from .deadlines import Deadline, DeadlineExceeded
from .gemini_client import GeminiClient, GeminiError, get_gemini_client

SCRIPT_TYPES = ('dialogue', 'monologue')
DEFAULT_SCRIPT_TYPE = 'dialogue'

IELTS_SCRIPT_SYSTEM_PROMPT = """
You are an IELTS Listening tutor. Generate a realistic script strictly aligned with IELTS listening contexts.

Choose exactly ONE of these four formats:
- Part 1: a conversation between two people in an everyday social context (bookings, enquiries, registrations)
- Part 2: a monologue in an everyday social context (a guided tour, a facilities announcement, a radio notice)
- Part 3: a conversation between up to four people in an educational or training context (tutorial, project meeting)
- Part 4: a monologue on an academic subject (a university lecture or talk)

Choose exactly ONE topic domain that fits the chosen format.

Return JSON ONLY in this exact shape:
{
  "script": "Full script text.",
  "scriptType": "dialogue" | "monologue",
  "topicDomain": "short domain label, e.g. 'Office', 'Service Call', 'Museum', 'Classroom', 'Academic Lecture'",
  "contextLabel": "1-3 word noun phrase for display (title base). Reuse topicDomain if appropriate.",
  "scenarioOverview": "1-2 sentences summarizing the situation and goal",
  "accent": "British" | "American" | "Canadian" | "Australian" | "NewZealand",
  "estimatedDurationSec": number,
  "ieltsPart": 1 | 2 | 3 | 4
}
No commentary, no markdown fences. JSON only.
""".strip()


@dataclass
class ScriptResult:
    success: bool
    script_text: Optional[str] = None
    script_type: Optional[str] = None
    accent: Optional[str] = None
    topic_domain: Optional[str] = None
    context_label: Optional[str] = None
    scenario_overview: Optional[str] = None
    estimated_duration_sec: Optional[int] = None
    ielts_part: Optional[int] = None
    difficulty: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> 'ScriptResult':
        return cls(success=False, error=error)

    def task_fields(self) -> Dict[str, Any]:
        """Column values to persist on the task when generation succeeded."""
        return {
            'script_text': self.script_text,
            'script_type': self.script_type,
            'accent': self.accent,
            'topic_domain': self.topic_domain,
            'context_label': self.context_label,
            'scenario_overview': self.scenario_overview,
            'estimated_duration_sec': self.estimated_duration_sec,
            'ielts_part': self.ielts_part,
            'difficulty': self.difficulty,
        }


def _format_band(value: float) -> str:
    """7.0 -> "7", 6.5 -> "6.5"."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    return str(int(number)) if number.is_integer() else str(number)


def _clean_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _coerce_part(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 1 <= value <= 4:
        return value
    if isinstance(value, float) and value.is_integer() and 1 <= value <= 4:
        return int(value)
    return None


def _coerce_duration(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return int(round(value))


def build_script_prompt(task_title: str, user_level: float, target_band: float) -> str:
    return (
        f'Create an IELTS listening script for: "{task_title}".\n\n'
        'Requirements:\n'
        '- Pick ONE IELTS Listening Part format (1-4)\n'
        '- Pick ONE topic domain aligned with IELTS topics\n'
        f'- Language level should be appropriate for Band {_format_band(target_band)} learners '
        f'(current level Band {_format_band(user_level)})\n'
        '- Target duration 1-3 minutes when spoken aloud\n'
        '- You MUST choose a valid IELTS part and a topic domain per the system instructions '
        'and return the JSON only.'
    )


def parse_script_payload(payload: Any, target_band: float) -> ScriptResult:
    """Validate and normalize a parsed model response."""
    if not isinstance(payload, dict):
        return ScriptResult.failure('Script response was not a JSON object')

    script_text = _clean_text(payload.get('script'))
    if not script_text:
        return ScriptResult.failure('No script content in model response')

    script_type = payload.get('scriptType')
    if script_type not in SCRIPT_TYPES:
        script_type = DEFAULT_SCRIPT_TYPE

    return ScriptResult(
        success=True,
        script_text=script_text,
        script_type=script_type,
        accent=normalize_accent(payload.get('accent')),
        topic_domain=_clean_text(payload.get('topicDomain')),
        context_label=_clean_text(payload.get('contextLabel')),
        scenario_overview=_clean_text(payload.get('scenarioOverview')),
        estimated_duration_sec=_coerce_duration(payload.get('estimatedDurationSec')),
        ielts_part=_coerce_part(payload.get('ieltsPart')),
        difficulty=f'Band {_format_band(target_band)}',
    )


def generate_listening_script(
    task_title: str,
    user_level: float,
    target_band: float,
    client: Optional[GeminiClient] = None,
    deadline: Optional[Deadline] = None,
) -> ScriptResult:
    """
    Generate an IELTS listening script for a task.

    Args:
        task_title: Title of the task the script is for
        user_level: Learner's current listening level (0-9)
        target_band: Learner's target band score (1-9)
        client: Gemini client (defaults to a new one)
        deadline: Time budget for the model call

    Returns:
        ScriptResult; ``success`` is False with an ``error`` reason on any
        precondition, transport or parse failure. Never raises.
    """
    if not task_title or not task_title.strip():
        return ScriptResult.failure('Task title is required for script generation')

    client = client or get_gemini_client()
    prompt = build_script_prompt(task_title, user_level, target_band)

    current_app.logger.info(
        "[Script Generation] Generating IELTS script for %r (level=%s, band=%s)",
        task_title,
        user_level,
        target_band,
    )

    try:
        payload = client.generate_json(
            prompt,
            temperature=0.7,
            system_instruction=IELTS_SCRIPT_SYSTEM_PROMPT,
            max_output_tokens=2048,
            strict=True,
            deadline=deadline,
        )
    except (GeminiError, DeadlineExceeded) as exc:
        current_app.logger.error("[Script Generation] Model call failed for %r: %s", task_title, exc)
        return ScriptResult.failure(str(exc))
    except Exception as exc:
        current_app.logger.exception("[Script Generation] Unexpected error for %r", task_title)
        return ScriptResult.failure(f'Script generation failed: {exc}')

    if payload is None:
        return ScriptResult.failure('Failed to parse script generation response')

    result = parse_script_payload(payload, target_band)
    if result.success:
        current_app.logger.info(
            "[Script Generation] Generated script: part=%s domain=%s context=%s accent=%s type=%s words=%s",
            result.ielts_part,
            result.topic_domain,
            result.context_label,
            result.accent,
            result.script_type,
            len(result.script_text.split()),
        )
    else:
        current_app.logger.warning("[Script Generation] Rejected response for %r: %s", task_title, result.error)
    return result
