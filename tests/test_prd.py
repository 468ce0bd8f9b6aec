import json
from pathlib import Path

import pytest

from trinity.prd import PrdError, load_prd, parse_prd
from trinity.state import BacklogStore, JsonStateStore, WorkItemState


def test_parse_prd_reads_user_stories() -> None:
    stories = parse_prd(
        {
            "userStories": [
                {
                    "id": "S1",
                    "title": "Login",
                    "description": "Build the login form",
                    "acceptanceCriteria": ["form renders", "bad password shows error"],
                },
                {"id": "S2", "title": "Logout", "dependsOn": ["S1"]},
            ]
        }
    )

    assert [story.id for story in stories] == ["S1", "S2"]
    assert stories[0].description.splitlines() == [
        "Build the login form",
        "Acceptance criteria:",
        "- form renders",
        "- bad password shows error",
    ]
    assert stories[1].description == "Logout"
    assert stories[1].depends_on == ["S1"]


def test_parse_prd_accepts_snake_case_keys() -> None:
    stories = parse_prd(
        {"stories": [{"id": "A", "description": "do a", "depends_on": ["B", " "]}]}
    )

    assert stories[0].depends_on == ["B"]


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ([], "JSON object"),
        ({"stories": {}}, "stories"),
        ({"stories": [{"title": "no id"}]}, "missing an id"),
        ({"stories": [{"id": "A", "title": "x"}, {"id": "A", "title": "y"}]}, "Duplicate"),
        ({"stories": [{"id": "A"}]}, "neither a title nor a description"),
        ({"stories": [{"id": "A", "title": "x", "dependsOn": "B"}]}, "non-list"),
    ],
)
def test_parse_prd_rejects_malformed_documents(payload: object, message: str) -> None:
    with pytest.raises(PrdError, match=message):
        parse_prd(payload)


def test_load_prd_reports_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(PrdError, match="not found"):
        load_prd(tmp_path / "prd.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(PrdError, match="not valid JSON"):
        load_prd(broken)

    valid = tmp_path / "prd.json"
    valid.write_text(json.dumps({"stories": [{"id": "A", "title": "x"}]}), encoding="utf-8")
    assert load_prd(valid)[0].id == "A"


def test_parse_prd_reads_intent_acceptance_and_completion_flags() -> None:
    stories = parse_prd(
        {
            "project": "shop",
            "version": "v1",
            "stories": [
                {
                    "id": "1.1.1",
                    "title": "Login",
                    "intent": "Users need to sign in",
                    "acceptance": ["form validates email"],
                    "phase": 1,
                    "epic": 1,
                    "story_number": 1,
                    "passes": True,
                },
                {"id": "1.1.2", "title": "Reset", "acceptance": [], "merged": True},
                {"id": "1.1.3", "title": "Audit", "acceptance": [], "skipped": True},
                {
                    "id": "1.1.4",
                    "title": "Logout",
                    "acceptance": ["session cleared"],
                    "depends_on": ["1.1.1"],
                    "passes": False,
                },
            ],
        }
    )

    assert stories[0].description.splitlines() == [
        "Users need to sign in",
        "Acceptance criteria:",
        "- form validates email",
    ]
    assert [story.completed for story in stories] == [True, True, True, False]
    assert stories[3].description.splitlines() == ["Acceptance criteria:", "- session cleared"]
    assert stories[3].depends_on == ["1.1.1"]


def test_completed_stories_import_as_succeeded(tmp_path: Path) -> None:
    backlog = BacklogStore(JsonStateStore(tmp_path / "state"))
    backlog.load()
    stories = parse_prd(
        {
            "stories": [
                {"id": "A", "title": "done", "intent": "shipped", "passes": True},
                {"id": "B", "title": "next", "intent": "build", "depends_on": ["A"]},
            ]
        }
    )
    for story in stories:
        backlog.add(
            story.id,
            story.description,
            title=story.title,
            depends_on=story.depends_on,
            completed=story.completed,
        )

    assert backlog.get("A").state is WorkItemState.SUCCEEDED
    assert backlog.get("A").attempt_count == 0
    assert [item.id for item in backlog.list_eligible()] == ["B"]
