from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Stories carrying any of these flags were already delivered.
COMPLETION_FLAGS = ("passes", "merged", "skipped")


class PrdError(ValueError):
    """Raised when a PRD document cannot be turned into work items."""


@dataclass(slots=True)
class StorySpec:
    id: str
    title: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    completed: bool = False


def _render_description(story: dict[str, Any]) -> str:
    parts: list[str] = []
    for key in ("description", "intent"):
        text = story.get(key)
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
            break
    criteria = story.get(
        "acceptance_criteria", story.get("acceptanceCriteria", story.get("acceptance"))
    )
    if isinstance(criteria, list) and criteria:
        parts.append("Acceptance criteria:")
        parts.extend(f"- {str(item).strip()}" for item in criteria if str(item).strip())
    return "\n".join(parts)


def parse_prd(payload: Any) -> list[StorySpec]:
    if not isinstance(payload, dict):
        raise PrdError("PRD document must be a JSON object.")
    stories = payload.get("stories", payload.get("userStories"))
    if not isinstance(stories, list):
        raise PrdError("PRD document must contain a 'stories' or 'userStories' list.")

    specs: list[StorySpec] = []
    seen: set[str] = set()
    for index, story in enumerate(stories, start=1):
        if not isinstance(story, dict):
            raise PrdError(f"Story #{index} must be an object.")
        story_id = str(story.get("id") or "").strip()
        if not story_id:
            raise PrdError(f"Story #{index} is missing an id.")
        if story_id in seen:
            raise PrdError(f"Duplicate story id: {story_id}")
        seen.add(story_id)
        depends_on = story.get("depends_on", story.get("dependsOn", []))
        if not isinstance(depends_on, list):
            raise PrdError(f"Story {story_id} has a non-list depends_on.")
        title = str(story.get("title") or "").strip()
        description = _render_description(story) or title
        if not description:
            raise PrdError(f"Story {story_id} has neither a title nor a description.")
        specs.append(
            StorySpec(
                id=story_id,
                title=title,
                description=description,
                depends_on=[str(dep).strip() for dep in depends_on if str(dep).strip()],
                completed=any(story.get(flag) is True for flag in COMPLETION_FLAGS),
            )
        )
    return specs


def load_prd(path: Path) -> list[StorySpec]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PrdError(f"PRD file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise PrdError(f"{path.name} is not valid JSON: {exc}") from exc
    return parse_prd(payload)
