from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import inbound_payload

from edit_relay.main import edit_relay
from edit_relay.ownership import OwnershipRegistry
from edit_relay.queues import QueueBroker
from edit_relay.storage.database import RelayDatabase

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]

PYTHON = shlex.quote(sys.executable)

EDITOR_SCRIPT = """
import json
import pathlib
import sys

pathlib.Path("index.html").write_text(sys.argv[1], "utf-8")
print(json.dumps({"summary": "Applied " + sys.argv[1], "changed_files": ["index.html"]}))
"""

BUILD_SCRIPT = """
import pathlib
import shutil

pathlib.Path("dist").mkdir(exist_ok=True)
shutil.copy("index.html", "dist/index.html")
"""


def _invoke(*args: str, input_text: str | None = None):
    result = CliRunner().invoke(edit_relay, list(args), input=input_text)
    assert result.exit_code == 0, result.output
    return result


def _dispatch(db_path: Path, *payloads: dict) -> str:
    return _invoke(
        "dispatch",
        "--db-path",
        str(db_path),
        input_text=json.dumps(list(payloads)),
    ).output


def test_dispatch_reads_file_and_reports_routing(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"
    payload_file = tmp_path / "inbound.json"
    payload_file.write_text(json.dumps(inbound_payload("m1")), "utf-8")

    output = _invoke("dispatch", "--db-path", str(db_path), str(payload_file)).output

    assert "Dispatch: status=routed correlation_id=m1" in output
    assert "queue=input-site1-alice" in output
    assert "claim_requested=true" in output


def test_dispatch_array_from_stdin_handles_duplicates_and_garbage(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"

    output = _dispatch(db_path, inbound_payload("m1"), inbound_payload("m1"), {"from": "x"})

    lines = output.splitlines()
    assert lines[0].startswith("Dispatch: status=routed")
    assert lines[1].startswith("Dispatch: status=duplicate")
    assert lines[2].startswith("Dispatch: status=dead_lettered")

    garbage = _invoke("dispatch", "--db-path", str(db_path), input_text="not json").output
    assert "status=dead_lettered" in garbage

    dead = _invoke("dead-letters", "--db-path", str(db_path)).output
    assert "Dead letters: 2" in dead
    assert "from=inbound" in dead


def test_queues_claims_threads_and_inspect_pair(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"
    _dispatch(db_path, inbound_payload("m1"), inbound_payload("m2", subject="Footer"))
    database = RelayDatabase(db_path)
    OwnershipRegistry(database.engine).try_claim("site1", "alice", "worker-a")
    database.close()

    queues = _invoke("queues", "--db-path", str(db_path)).output
    assert "- input-site1-alice: ready=2 inflight=0 dead=0" in queues
    assert "- unclaimed: ready=1 inflight=0 dead=0" in queues

    claims = _invoke("claims", "--db-path", str(db_path)).output
    assert "Claims: 1" in claims
    assert "site1/alice owner=worker-a state=live" in claims

    threads = _invoke(
        "threads",
        "--db-path",
        str(db_path),
        "--project-id",
        "Site1",
        "--user-id",
        "alice",
    ).output
    assert "Threads: 2" in threads
    assert "subject='footer'" in threads

    inspect = _invoke("inspect-pair", "--db-path", str(db_path), "SITE1", "alice").output
    assert "Pair: site1/alice" in inspect
    assert "Owner: worker-a" in inspect
    assert "Pending requests: 2" in inspect
    assert "claimed worker=worker-a" in inspect


def test_empty_database_listings(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"

    assert "No claims." in _invoke("claims", "--db-path", str(db_path)).output
    assert "No threads." in _invoke("threads", "--db-path", str(db_path)).output
    assert "No queues." in _invoke("queues", "--db-path", str(db_path)).output
    assert "empty" in _invoke("dead-letters", "--db-path", str(db_path)).output


def test_reconcile_reraises_lost_claim_request(tmp_path: Path) -> None:
    db_path = tmp_path / "relay.db"
    _dispatch(db_path, inbound_payload("m1"))
    database = RelayDatabase(db_path)
    broker = QueueBroker(database.engine)
    lost = broker.receive("unclaimed")
    assert lost is not None
    broker.ack(lost)
    database.close()

    output = _invoke("reconcile", "--db-path", str(db_path)).output

    assert "Reconcile summary: claim_requests=1 escalated_messages=0" in output


def test_worker_rejects_invalid_configuration(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("EDIT_RELAY_WORKER_MAX_PAIRS", "0")

    result = CliRunner().invoke(
        edit_relay,
        ["worker", "--once", "--db-path", str(tmp_path / "relay.db")],
    )

    assert result.exit_code != 0
    assert "EDIT_RELAY_WORKER_MAX_PAIRS" in result.output


def _configure_pipeline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    editor = tmp_path / "editor.py"
    editor.write_text(EDITOR_SCRIPT, "utf-8")
    builder = tmp_path / "build.py"
    builder.write_text(BUILD_SCRIPT, "utf-8")
    monkeypatch.setenv(
        "EDIT_RELAY_EDITOR_COMMAND",
        f"{PYTHON} {shlex.quote(str(editor))} {{instruction}}",
    )
    monkeypatch.setenv("EDIT_RELAY_BUILD_COMMAND", f"{PYTHON} {shlex.quote(str(builder))}")
    monkeypatch.setenv("EDIT_RELAY_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("EDIT_RELAY_PUBLISH_ROOT", str(tmp_path / "public"))
    monkeypatch.setenv("EDIT_RELAY_PUBLIC_BASE_URL", "https://sites.example")
    monkeypatch.setenv("EDIT_RELAY_QUEUE_POLL_INTERVAL_SECONDS", "0.05")


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_worker_once_processes_pair_end_to_end(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _configure_pipeline(tmp_path, monkeypatch)
    db_path = tmp_path / "relay.db"
    _dispatch(db_path, inbound_payload("m1", body="Make the header blue"))

    output = _invoke(
        "worker",
        "--once",
        "--db-path",
        str(db_path),
        "--worker-id",
        "worker-cli",
    ).output

    assert "Worker worker-cli summary: claim_requests=1 claimed=1" in output
    assert "- site1/alice: exit=drained succeeded=1" in output
    published = tmp_path / "public" / "site1" / "index.html"
    assert published.read_text("utf-8") == "Make the header blue"

    inspect = _invoke("inspect-pair", "--db-path", str(db_path), "site1", "alice").output
    assert "Owner: none" in inspect
    assert "Pending requests: 0" in inspect
    assert "m1 success=True error_kind=- deployment=https://sites.example/site1/?rev=" in inspect
    database = RelayDatabase(db_path)
    responses = QueueBroker(database.engine).list_messages("output-site1-alice")
    database.close()
    assert [message.body["summary"] for message in responses] == [
        "Applied Make the header blue",
    ]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_worker_checks_out_requested_source_without_committing_build_output(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    source = tmp_path / "site-source"
    source.mkdir()
    _git(source, "init", "--initial-branch", "main")
    (source / "SOURCE_MARKER").write_text("seeded\n", "utf-8")
    _git(source, "add", "-A")
    _git(
        source,
        "-c",
        "user.name=Site",
        "-c",
        "user.email=site@example.com",
        "commit",
        "-m",
        "Seed",
    )
    _configure_pipeline(tmp_path, monkeypatch)
    monkeypatch.setenv("EDIT_RELAY_GIT_PUSH", "off")
    db_path = tmp_path / "relay.db"
    _dispatch(db_path, inbound_payload("m1", body="Make the header blue", source_ref=str(source)))

    output = _invoke("worker", "--once", "--db-path", str(db_path)).output

    assert "- site1/alice: exit=drained succeeded=1" in output
    workspace = tmp_path / "workspaces" / "site1" / "alice"
    assert (workspace / "SOURCE_MARKER").read_text("utf-8") == "seeded\n"
    assert (workspace / "dist" / "index.html").is_file()
    committed = _git(workspace, "ls-tree", "-r", "--name-only", "HEAD").split()
    assert {"SOURCE_MARKER", "index.html"} <= set(committed)
    assert not [name for name in committed if name.startswith("dist/")]
    assert _git(workspace, "status", "--porcelain") == ""
