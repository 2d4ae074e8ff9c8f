from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from edit_relay.commit_message import SUBJECT_MAX_CHARS, commit_body, commit_subject

pytestmark = [
    allure.epic("Pipeline Steps"),
    allure.feature("Commit Messages"),
]


@pytest.mark.parametrize(
    ("instruction", "files", "expected"),
    [
        ("please make the header blue", ["src/index.html"], "Make the header blue (index.html)"),
        ("Add a footer", ["a.css", "b.css"], "Add a footer (2 css files)"),
        ("Rework", ["pages/a.md", "pages/b.html"], "Rework (2 files in pages)"),
        ("Rework", ["a.md", "b/c.html"], "Rework (2 files)"),
        ("   ", [], "Update"),
    ],
)
def test_subject_summarizes_action_and_files(
    instruction: str,
    files: list[str],
    expected: str,
) -> None:
    assert commit_subject(instruction, files) == expected


def test_subject_carries_thread_tag_and_length_limit() -> None:
    subject = commit_subject("x" * 200, ["index.html"], thread_id="abcdef1234567890")

    assert len(subject) == SUBJECT_MAX_CHARS
    assert subject.endswith("...")
    assert commit_subject("Fix typo", [], thread_id="abcdef1234567890") == "Fix typo [abcdef12]"


def test_interrupted_subject_is_marked_wip() -> None:
    assert (
        commit_subject("anything", ["a", "b"], thread_id="abcdef12", interrupted=True)
        == "WIP: Interrupted with 2 file(s) modified [abcdef12]"
    )
    assert commit_subject(None, [], interrupted=True) == "WIP: Session interrupted"


def test_body_lists_long_instruction_files_and_trailer() -> None:
    files = [f"page{index}.html" for index in range(4)]

    body = commit_body(
        "Rewrite " + "the landing page copy " * 5,
        files,
        thread_id="abcdef12",
        user_id="alice",
        timestamp=datetime(2026, 10, 18, 12, 0, tzinfo=UTC),
    )

    lines = body.splitlines()
    assert lines[0] == "Full instruction:"
    assert "Files changed:" in lines
    assert "  - page3.html" in lines
    assert lines[-5:] == [
        "---",
        "Thread: abcdef12",
        "User: alice",
        "Time: 2026-10-18T12:00:00+00:00",
        "Generated by edit-relay",
    ]


def test_short_body_has_only_trailer() -> None:
    assert commit_body("Fix typo", ["index.html"]) == "---\nGenerated by edit-relay"
