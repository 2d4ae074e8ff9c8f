from __future__ import annotations

from typing import Any

import allure
import pytest
from conftest import ManualClock, inbound_payload

from edit_relay.config import ThreadSettings
from edit_relay.messages import parse_inbound
from edit_relay.models import ResolvedThread, ThreadMatchSource
from edit_relay.storage.database import RelayDatabase
from edit_relay.threads import (
    ThreadResolver,
    ThreadStore,
    format_body_marker,
    format_continuity_token,
    normalize_subject,
    strip_body_marker,
)

pytestmark = [
    allure.epic("Routing"),
    allure.feature("Thread Continuity"),
]


@pytest.fixture()
def resolver(database: RelayDatabase, clock: ManualClock) -> ThreadResolver:
    return ThreadResolver(ThreadStore(database.engine), ThreadSettings(), clock=clock)


def _resolve(resolver: ThreadResolver, message_id: str, **kwargs: Any) -> ResolvedThread:
    return resolver.resolve(parse_inbound(inbound_payload(message_id, **kwargs)))


@pytest.mark.parametrize(
    ("subject", "expected"),
    [
        ("Re: Header colour", "header colour"),
        ("RE: Fwd: re:  Header   colour ", "header colour"),
        ("AW: SV: Header", "header"),
        ("Re[2]: Footer", "footer"),
        ("Regarding the footer", "regarding the footer"),
    ],
)
def test_normalize_subject_strips_reply_prefixes(subject: str, expected: str) -> None:
    assert normalize_subject(subject) == expected


def test_body_marker_helpers() -> None:
    marker = format_body_marker("abc12345")

    assert marker == "[thread:abc12345]"
    assert strip_body_marker(f"Make it red {marker}") == "Make it red"
    assert format_continuity_token("abc12345", "relay.test") == "<thread-abc12345@relay.test>"


def test_first_message_starts_a_new_thread(resolver: ThreadResolver) -> None:
    resolved = _resolve(resolver, "m1")

    assert resolved.created
    assert resolved.source == ThreadMatchSource.NEW
    assert resolved.thread.branch_name == f"thread-{resolved.thread.thread_id}"
    assert resolved.thread.subject == "header colour"


def test_reply_with_continuity_token_continues_thread(resolver: ThreadResolver) -> None:
    first = _resolve(resolver, "m1")
    token = resolver.continuity_token(first.thread.thread_id)

    reply = _resolve(
        resolver,
        "m2",
        subject="Totally different subject",
        in_reply_to="<unrelated@mail.example>",
        references=["<older@mail.example>", token],
    )

    assert not reply.created
    assert reply.source == ThreadMatchSource.STRUCTURED
    assert reply.confidence == 1.0
    assert reply.thread.thread_id == first.thread.thread_id


def test_token_from_foreign_domain_is_ignored(resolver: ThreadResolver) -> None:
    first = _resolve(resolver, "m1", subject="")

    reply = _resolve(
        resolver,
        "m2",
        subject="",
        in_reply_to=f"<thread-{first.thread.thread_id}@elsewhere.example>",
    )

    assert reply.created


def test_body_marker_continues_thread(resolver: ThreadResolver) -> None:
    first = _resolve(resolver, "m1", subject="")

    reply = _resolve(
        resolver,
        "m2",
        subject="",
        body=f"Also make the footer green {format_body_marker(first.thread.thread_id)}",
    )

    assert reply.source == ThreadMatchSource.EMBEDDED
    assert reply.thread.thread_id == first.thread.thread_id


def test_token_for_another_pair_never_merges_conversations(resolver: ThreadResolver) -> None:
    other = _resolve(resolver, "m1", project_id="site2", subject="")

    reply = _resolve(
        resolver,
        "m2",
        subject="",
        in_reply_to=resolver.continuity_token(other.thread.thread_id),
    )

    assert reply.created
    assert reply.thread.thread_id != other.thread.thread_id


def test_similar_subject_from_same_sender_continues_thread(resolver: ThreadResolver) -> None:
    first = _resolve(resolver, "m1", subject="Homepage hero image")

    reply = _resolve(resolver, "m2", subject="Re: Homepage hero image")

    assert reply.source == ThreadMatchSource.HEURISTIC
    assert reply.thread.thread_id == first.thread.thread_id


def test_similar_subject_from_other_sender_starts_new_thread(resolver: ThreadResolver) -> None:
    _resolve(resolver, "m1", subject="Homepage hero image")

    reply = _resolve(resolver, "m2", subject="Re: Homepage hero image", sender="bob@example.com")

    assert reply.created


def test_ambiguous_subject_match_starts_new_thread(
    resolver: ThreadResolver,
    clock: ManualClock,
) -> None:
    first = resolver.store.create(
        parse_inbound(inbound_payload("m1", subject="Pricing page update")),
        now=clock(),
    )
    second = resolver.store.create(
        parse_inbound(inbound_payload("m2", subject="Pricing page update")),
        now=clock(),
    )

    reply = _resolve(resolver, "m3", subject="Re: Pricing page update")

    assert reply.created
    assert reply.thread.thread_id not in {first.thread_id, second.thread_id}


def test_heuristic_ignores_threads_outside_the_window(
    resolver: ThreadResolver,
    clock: ManualClock,
) -> None:
    _resolve(resolver, "m1", subject="Homepage hero image")
    clock.advance(ThreadSettings().heuristic_window_seconds + 1)

    reply = _resolve(resolver, "m2", subject="Re: Homepage hero image")

    assert reply.created
