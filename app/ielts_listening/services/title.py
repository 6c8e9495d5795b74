"""
Display titles for listening tasks.

Titles are derived from the scenario metadata the script generator returns,
e.g. "Office Dialogue Practice", "Museum Guide Monologue",
"Academic Lecture Analysis". IELTS part numbers are analytics metadata and
never appear in a title.
"""
from __future__ import annotations

import re
from typing import Optional

DEFAULT_TITLE_BASE = 'Listening Practice'

LECTURE_PATTERN = re.compile(r'lecture|talk|seminar|keynote|presentation|professor|academic')
DISCUSSION_PATTERN = re.compile(
    r'discussion|tutorial|group|roundtable|panel|debate|project meeting|classroom'
)

_GENERIC_TITLE_PATTERN = re.compile(r'^listening practice', re.IGNORECASE)
_PART_MARKER_PATTERN = re.compile(r'\bpart\s*\d+\b', re.IGNORECASE)

MODE_SUFFIXES = {
    'lecture': 'Lecture Analysis',
    'discussion': 'Discussion',
    'monologue': 'Monologue',
    'dialogue': 'Dialogue Practice',
}


def to_title_case(text: str) -> str:
    """Collapse whitespace and upper-case the first letter of every word.

    The rest of each word is left alone, so acronyms survive ("IT Helpdesk").
    """
    words = text.split()
    return ' '.join(word[:1].upper() + word[1:] for word in words)


def derive_mode(
    script_type: Optional[str] = None,
    context_label: Optional[str] = None,
    topic_domain: Optional[str] = None,
    scenario_overview: Optional[str] = None,
) -> str:
    haystack = ' '.join([context_label or '', topic_domain or '', scenario_overview or '']).lower()

    if LECTURE_PATTERN.search(haystack):
        return 'lecture'
    if DISCUSSION_PATTERN.search(haystack):
        return 'discussion'
    if script_type == 'monologue':
        return 'monologue'
    return 'dialogue'


def suffix_for_mode(mode: str) -> str:
    return MODE_SUFFIXES.get(mode, MODE_SUFFIXES['dialogue'])


def make_listening_task_title(
    script_type: Optional[str] = None,
    context_label: Optional[str] = None,
    topic_domain: Optional[str] = None,
    scenario_overview: Optional[str] = None,
) -> str:
    """Build a task title from scenario metadata."""
    base = (context_label or '').strip() or (topic_domain or '').strip() or DEFAULT_TITLE_BASE
    mode = derive_mode(script_type, context_label, topic_domain, scenario_overview)
    return f'{to_title_case(base)} {suffix_for_mode(mode)}'


def needs_title_update(title: Optional[str]) -> bool:
    """True when a title is a generic placeholder or leaks an IELTS part number."""
    if not title or not title.strip():
        return True
    return bool(_GENERIC_TITLE_PATTERN.search(title) or _PART_MARKER_PATTERN.search(title))
