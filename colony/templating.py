"""Template resolution and agent output interpretation.

Agents receive a step's ``input_template`` rendered against the run context
and answer with free text. Lines of the form ``KEY: value`` (upper-case key)
feed back into the context; a ``STORIES_JSON:`` line carries a JSON array of
stories for loop steps and is never merged into the context.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Mapping, Optional

from .contracts import MAX_STORIES, STORIES_KEY, Context, StorySeed
from .errors import StoriesLimitError, StoriesParseError

_PLACEHOLDER = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")
_KEY_LINE = re.compile(r"^([A-Z_]+):\s*(.+)$")
_NEXT_KEY = re.compile(r"^[A-Z_]+:\s")


def resolve_template(template: str, context: Mapping[str, str]) -> str:
    """Replace ``{{name}}`` placeholders with context values.

    Lookup tries the exact key first, then a case-insensitive match. Unknown
    names render as ``[missing: name]``.
    """

    lowered = {key.lower(): value for key, value in context.items()}

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in context:
            return str(context[key])
        value = lowered.get(key.lower())
        if value is not None:
            return str(value)
        return f"[missing: {key}]"

    return _PLACEHOLDER.sub(_substitute, template)


def merge_context_from_output(output: str, existing: Mapping[str, str]) -> Context:
    """Return a copy of ``existing`` updated with ``KEY: value`` lines."""

    merged: Context = dict(existing)
    for line in output.split("\n"):
        match = _KEY_LINE.match(line)
        if not match:
            continue
        key, value = match.group(1), match.group(2).strip()
        if key == STORIES_KEY:
            continue
        merged[key.lower()] = value
    return merged


def _stories_payload(output: str) -> Optional[str]:
    lines = output.split("\n")
    prefix = f"{STORIES_KEY}:"
    start = next((i for i, line in enumerate(lines) if line.startswith(prefix)), None)
    if start is None:
        return None

    collected = [lines[start][len(prefix):].strip()]
    for line in lines[start + 1:]:
        if _NEXT_KEY.match(line):
            break
        collected.append(line)
    return "\n".join(collected).strip()


def parse_structured_stories(output: str) -> List[StorySeed]:
    """Parse the ``STORIES_JSON`` block of an agent output.

    Returns an empty list when the key is absent.

    Raises:
        StoriesParseError: payload is not a JSON array of complete stories.
        StoriesLimitError: more than ``MAX_STORIES`` entries.
    """

    payload = _stories_payload(output)
    if payload is None:
        return []

    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StoriesParseError(f"Failed to parse {STORIES_KEY}: {exc}") from exc

    if not isinstance(raw, list):
        raise StoriesParseError(f"{STORIES_KEY} must be an array")
    if len(raw) > MAX_STORIES:
        raise StoriesLimitError(
            f"{STORIES_KEY} has {len(raw)} stories, max is {MAX_STORIES}"
        )

    seen: set[str] = set()
    stories: List[StorySeed] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise StoriesParseError(f"{STORIES_KEY} story at index {index} is not an object")
        criteria = entry.get("acceptanceCriteria", entry.get("acceptance_criteria"))
        if (
            not entry.get("id")
            or not entry.get("title")
            or not entry.get("description")
            or not isinstance(criteria, list)
        ):
            raise StoriesParseError(
                f"{STORIES_KEY} story at index {index} missing required fields "
                "(id, title, description, acceptanceCriteria)"
            )
        story_id = str(entry["id"])
        if story_id in seen:
            raise StoriesParseError(f'{STORIES_KEY} has duplicate story id "{story_id}"')
        seen.add(story_id)
        stories.append(
            StorySeed(
                story_id=story_id,
                title=str(entry["title"]),
                description=str(entry["description"]),
                acceptance_criteria=[str(c) for c in criteria],
            )
        )
    return stories


def render_criteria(criteria: Any) -> Optional[str]:
    """Store acceptance criteria as a ``- item`` line list."""
    if criteria is None:
        return None
    if isinstance(criteria, str):
        return criteria
    if isinstance(criteria, Mapping):
        return "\n".join(f"- {key}: {value}" for key, value in criteria.items())
    return "\n".join(f"- {item}" for item in criteria)


def parse_criteria(text: Optional[str]) -> List[str]:
    """Inverse of :func:`render_criteria`; also accepts a JSON array."""
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [
        line.strip()[1:].strip()
        for line in text.split("\n")
        if line.strip().startswith("-")
    ]


def format_story_for_template(
    story_id: str, title: str, description: Optional[str], criteria: Iterable[str]
) -> str:
    numbered = "\n".join(f"  {i}. {c}" for i, c in enumerate(criteria, start=1))
    return (
        f"Story {story_id}: {title}\n\n{description or ''}\n\n"
        f"Acceptance Criteria:\n{numbered}"
    )


def format_completed_stories(stories: Iterable[Any]) -> str:
    """List finished stories as ``- id: title`` lines, or ``(none yet)``."""
    done = [s for s in stories if getattr(s, "status", None) in ("done", "completed")]
    if not done:
        return "(none yet)"
    return "\n".join(f"- {s.story_id}: {s.title}" for s in done)


def serialize_output(output: Any) -> Optional[str]:
    """Text output is stored verbatim, anything else as JSON."""
    if output is None:
        return None
    if isinstance(output, str):
        return output
    return json.dumps(output)


def deserialize_output(text: Optional[str]) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
