"""
Multiple-choice comprehension questions for a listening script.

Gemini is asked for 4-5 items; every item is validated on its own and the
ones that fail are dropped. Only when nothing survives is the generation a
failure.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from flask import current_app

from .deadlines import Deadline, DeadlineExceeded
from .gemini_client import GeminiClient, GeminiError, get_gemini_client

OPTION_COUNT = 4
OPTION_LETTERS = 'ABCD'

_CHOICE_PREFIX_PATTERN = re.compile(r'^\s*([A-Da-d])\s*(?:[\).:]|$)')
_OPTION_ID_PATTERN = re.compile(r'^option([1-4])$', re.IGNORECASE)

QUESTION_SYSTEM_PROMPT_TEMPLATE = """
You are an expert IELTS Listening tutor. Generate 4-5 multiple-choice questions based on the provided listening script.

Requirements:
- Questions should test listening comprehension skills appropriate for IELTS
- Include questions about main ideas, specific details, inferences, and vocabulary in context
- Each question must have exactly 4 options (A, B, C, D)
- Include realistic distractors that test careful listening
- Provide clear explanations for the correct answers
- Questions should be appropriate for {difficulty} level

Respond with a JSON object in this exact format:
{{
  "questions": [
    {{
      "id": "q1",
      "question": "What is the main topic discussed in the audio?",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correctAnswer": "A",
      "explanation": "The correct answer is A because..."
    }}
  ]
}}

Only return the JSON object, no additional explanation.
""".strip()


@dataclass
class QuestionResult:
    success: bool
    questions: List[Dict[str, Any]] = field(default_factory=list)
    rejected: int = 0
    error: Optional[str] = None


def normalize_options(raw_options: Any) -> List[Dict[str, str]]:
    """Turn model options into ``[{id, text}]`` pairs with synthesized ids.

    Plain strings and dicts carrying ``text`` (or ``label``) are accepted;
    blank entries are dropped so they cannot make up the count of four.
    """
    if not isinstance(raw_options, list):
        return []

    normalized: List[Dict[str, str]] = []
    for option in raw_options:
        if isinstance(option, dict):
            text = option.get('text') or option.get('label')
        else:
            text = option
        if not isinstance(text, str) or not text.strip():
            continue
        normalized.append({'id': f'option{len(normalized) + 1}', 'text': text.strip()})
    return normalized


def resolve_correct_answer(raw_answer: Any, options: List[Dict[str, str]]) -> Optional[str]:
    """Map the model's answer (letter A-D, option id or exact option text) to an option id."""
    if not isinstance(raw_answer, str) or not raw_answer.strip():
        return None
    answer = raw_answer.strip()

    # Option text wins over a letter reading: "a taxi" is not choice A
    for option in options:
        if option['text'].casefold() == answer.casefold():
            return option['id']

    match = _CHOICE_PREFIX_PATTERN.match(answer)
    if match:
        index = OPTION_LETTERS.index(match.group(1).upper())
        return options[index]['id'] if index < len(options) else None

    match = _OPTION_ID_PATTERN.match(answer)
    if match:
        index = int(match.group(1)) - 1
        return options[index]['id'] if index < len(options) else None
    return None


def validate_question(item: Any, index: int) -> Optional[Dict[str, Any]]:
    """Return the normalized question, or None if it fails any check."""
    if not isinstance(item, dict):
        return None

    question_text = item.get('question')
    if not isinstance(question_text, str) or not question_text.strip():
        return None

    options = normalize_options(item.get('options'))
    if len(options) != OPTION_COUNT:
        return None

    correct_answer = resolve_correct_answer(item.get('correctAnswer'), options)
    if not correct_answer:
        return None

    explanation = item.get('explanation')
    if not isinstance(explanation, str) or not explanation.strip():
        return None

    question_id = item.get('id')
    return {
        'id': str(question_id) if question_id else f'q{index + 1}',
        'question': question_text.strip(),
        'options': options,
        'correctAnswer': correct_answer,
        'explanation': explanation.strip(),
    }


def parse_questions_payload(payload: Any) -> QuestionResult:
    if not isinstance(payload, dict) or not isinstance(payload.get('questions'), list):
        return QuestionResult(success=False, error='No questions found in model response')

    raw_items = payload['questions']
    if not raw_items:
        return QuestionResult(success=False, error='No questions found in model response')

    validated = []
    for index, item in enumerate(raw_items):
        question = validate_question(item, index)
        if question is not None:
            validated.append(question)

    rejected = len(raw_items) - len(validated)
    if not validated:
        return QuestionResult(success=False, rejected=rejected, error='No valid questions found after validation')
    return QuestionResult(success=True, questions=validated, rejected=rejected)


def generate_questions(
    script_text: str,
    task_title: str,
    difficulty: Optional[str] = None,
    client: Optional[GeminiClient] = None,
    deadline: Optional[Deadline] = None,
) -> QuestionResult:
    """Generate validated comprehension questions for a script. Never raises."""
    if not script_text or not script_text.strip():
        return QuestionResult(success=False, error='Script text is required for question generation')
    if not task_title or not task_title.strip():
        return QuestionResult(success=False, error='Task title is required for question generation')

    difficulty = difficulty or 'intermediate'
    client = client or get_gemini_client()
    system_prompt = QUESTION_SYSTEM_PROMPT_TEMPLATE.format(difficulty=difficulty)
    prompt = (
        f'Task: {task_title}\n\n'
        f'Script text:\n{script_text}\n\n'
        'Generate 4-5 IELTS listening comprehension questions based on this script.'
    )

    current_app.logger.info(
        "[Question Generation] Generating questions for %r (script_chars=%s, words=%s, difficulty=%s)",
        task_title,
        len(script_text),
        len(script_text.split()),
        difficulty,
    )

    try:
        payload = client.generate_json(
            prompt,
            temperature=0.7,
            system_instruction=system_prompt,
            max_output_tokens=2048,
            deadline=deadline,
        )
    except (GeminiError, DeadlineExceeded) as exc:
        current_app.logger.error("[Question Generation] Model call failed for %r: %s", task_title, exc)
        return QuestionResult(success=False, error=str(exc))
    except Exception as exc:
        current_app.logger.exception("[Question Generation] Unexpected error for %r", task_title)
        return QuestionResult(success=False, error=f'Question generation failed: {exc}')

    if payload is None:
        return QuestionResult(success=False, error='Failed to parse question generation response')

    result = parse_questions_payload(payload)
    if result.success:
        current_app.logger.info(
            "[Question Generation] Generated %s questions for %r (%s rejected)",
            len(result.questions),
            task_title,
            result.rejected,
        )
    else:
        current_app.logger.warning("[Question Generation] %s for %r", result.error, task_title)
    return result
