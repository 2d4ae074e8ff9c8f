"""Commit subjects and bodies derived from the instruction and changed files."""

from __future__ import annotations

import textwrap
from datetime import datetime
from pathlib import PurePosixPath

SUBJECT_MAX_CHARS = 72
BODY_FILE_LIST_THRESHOLD = 3

_FILLER_PREFIXES = (
    "please ",
    "can you ",
    "could you ",
    "i need to ",
    "i want to ",
    "let's ",
    "help me ",
    "assist with ",
)


def commit_subject(
    instruction: str | None,
    changed_files: list[str],
    *,
    thread_id: str | None = None,
    interrupted: bool = False,
) -> str:
    """One-line subject, at most 72 characters."""

    tag = _thread_tag(thread_id)
    if interrupted:
        if changed_files:
            subject = f"WIP: Interrupted with {len(changed_files)} file(s) modified {tag}"
        else:
            subject = f"WIP: Session interrupted {tag}"
        return _truncate(subject.strip(), SUBJECT_MAX_CHARS)

    parts = [_extract_action(instruction)]
    file_context = _summarize_files(changed_files)
    if file_context:
        parts.append(f"({file_context})")
    if tag:
        parts.append(tag)
    return _truncate(" ".join(parts), SUBJECT_MAX_CHARS)


def commit_body(
    instruction: str | None,
    changed_files: list[str],
    *,
    thread_id: str | None = None,
    user_id: str | None = None,
    timestamp: datetime | None = None,
) -> str:
    lines: list[str] = []
    if instruction and len(instruction) > SUBJECT_MAX_CHARS:
        lines.append("Full instruction:")
        lines.append(textwrap.fill(instruction, width=SUBJECT_MAX_CHARS))
        lines.append("")
    if len(changed_files) > BODY_FILE_LIST_THRESHOLD:
        lines.append("Files changed:")
        lines.extend(f"  - {path}" for path in changed_files)
        lines.append("")
    lines.append("---")
    if thread_id:
        lines.append(f"Thread: {thread_id}")
    if user_id:
        lines.append(f"User: {user_id}")
    if timestamp is not None:
        lines.append(f"Time: {timestamp.isoformat()}")
    lines.append("Generated by edit-relay")
    return "\n".join(lines)


def _extract_action(instruction: str | None) -> str:
    if not instruction or not instruction.strip():
        return "Update"
    action = " ".join(instruction.split())
    lowered = action.lower()
    for prefix in _FILLER_PREFIXES:
        if lowered.startswith(prefix):
            action = action[len(prefix) :]
            break
    if not action:
        return "Update"
    return action[0].upper() + action[1:]


def _summarize_files(files: list[str]) -> str:
    if not files:
        return ""
    if len(files) == 1:
        return PurePosixPath(files[0]).name

    extensions = {PurePosixPath(path).suffix.lstrip(".") for path in files}
    if len(extensions) == 1:
        extension = next(iter(extensions))
        if extension:
            return f"{len(files)} {extension} files"

    directories = {str(PurePosixPath(path).parent) for path in files}
    if len(directories) == 1:
        directory = PurePosixPath(next(iter(directories))).name
        if directory:
            return f"{len(files)} files in {directory}"
    return f"{len(files)} files"


def _thread_tag(thread_id: str | None) -> str:
    if not thread_id:
        return ""
    return f"[{thread_id[:8]}]"


def _truncate(message: str, max_length: int) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."
