"""
Tests for the kodo command line.

Commands run through `main()` against real stores under tmp_path; exit
codes are checked through `SystemExit`.
"""

import argparse
import io
import json
import logging
import socket
import subprocess
import sys

import pytest

from kodo.cli.__main__ import build_parser, main
from kodo.cli.commands import cmd_flow
from kodo.cli.commands.sync import parse_resolutions
from kodo.core import Kodo
from kodo.storage.lock import StoreLock


@pytest.fixture
def home(tmp_path):
    return tmp_path / "kb"


def run(capsys, home, *args):
    main(["--home", str(home), *args])
    return capsys.readouterr()


def exit_code(home, *args):
    with pytest.raises(SystemExit) as exc_info:
        main(["--home", str(home), *args])
    return exc_info.value.code


def add(capsys, home, title, *args):
    out = run(capsys, home, "curate", "add", title, "--json", *args).out
    return json.loads(out)["id"]


class TestParser:
    def test_command_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args([])
        assert exc_info.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.startswith("kodo ")

    def test_limit_must_be_positive(self, home):
        assert exit_code(home, "query", "x", "--limit", "0") == 2

    def test_push_and_pull_are_exclusive(self, home):
        assert exit_code(home, "sync", "--pull", "--push") == 2


class TestCurate:
    def test_add_then_query(self, capsys, home):
        out = run(capsys, home, "curate", "add", "Use JWT for auth", "-c", "decisions", "--confidence", "high").out
        assert out.startswith("✓ Added ")

        out = run(capsys, home, "query", "jwt").out
        assert "Found 1 entry:" in out
        assert "decisions" in out
        assert "Use JWT for auth" in out

    def test_query_json(self, capsys, home):
        entry_id = add(capsys, home, "Use JWT for auth", "-t", "auth")
        data = json.loads(run(capsys, home, "query", "jwt", "--json").out)
        assert data["total"] == 1
        assert data["next_cursor"] is None
        hit = data["hits"][0]
        assert hit["exact"] is True
        assert hit["entry"]["id"] == entry_id
        assert hit["entry"]["tags"] == ["auth"]

    def test_query_without_hits(self, capsys, home):
        assert run(capsys, home, "query", "nothing").out.strip() == "No entries found for 'nothing'"

    def test_query_paging(self, capsys, home):
        for i in range(3):
            add(capsys, home, f"Cache note {i}")
        first = json.loads(run(capsys, home, "query", "cache", "--limit", "2", "--json").out)
        second = json.loads(
            run(capsys, home, "query", "cache", "--limit", "2", "--cursor", first["next_cursor"], "--json").out
        )
        ids = [h["entry"]["id"] for h in first["hits"] + second["hits"]]
        assert len(set(ids)) == 3

    def test_edit_by_prefix(self, capsys, home):
        entry_id = add(capsys, home, "Use JWT", "-t", "auth")
        data = json.loads(
            run(capsys, home, "curate", "edit", entry_id[:8], "--title", "Use JWT with rotation", "--untag", "auth", "--json").out
        )
        assert data["title"] == "Use JWT with rotation"
        assert data["tags"] == []

    def test_show_with_history(self, capsys, home):
        entry_id = add(capsys, home, "Use PostgreSQL")
        run(capsys, home, "curate", "edit", entry_id, "--body", "Chosen for JSONB")
        out = run(capsys, home, "curate", "show", entry_id, "--history").out
        assert "Use PostgreSQL" in out
        assert "Chosen for JSONB" in out
        assert "History:" in out
        assert f"Insert {entry_id}" in out
        assert f"Update {entry_id}" in out

        data = json.loads(run(capsys, home, "curate", "show", entry_id, "--history", "--json").out)
        assert [item["status"] for item in data["history"]] == ["applied", "applied"]

    def test_show_related(self, capsys, home):
        a = add(capsys, home, "Use PostgreSQL")
        b = add(capsys, home, "Use JSONB columns", "--related", a)
        out = run(capsys, home, "curate", "show", b).out
        assert "Related:" in out
        assert f"{a[:8]}  Use PostgreSQL" in out

    def test_remove_twice(self, capsys, home):
        entry_id = add(capsys, home, "Temporary")
        assert run(capsys, home, "curate", "remove", entry_id).out.startswith("✓ Removed")
        assert "already removed" in run(capsys, home, "curate", "remove", entry_id).out

    def test_unknown_entry_exits_1(self, capsys, home):
        add(capsys, home, "Something")
        assert exit_code(home, "curate", "show", "ffffffff") == 1

    def test_empty_title_exits_1(self, home):
        assert exit_code(home, "curate", "add", "   ") == 1


class TestExtractAndReflect:
    def test_extract(self, capsys, home, tmp_path):
        doc = tmp_path / "notes.md"
        doc.write_text("# Database\n\nWe decided to use PostgreSQL for its JSONB support.\n")
        out = run(capsys, home, "extract", str(doc)).out
        assert "Created 1 entry" in out
        assert "[decisions/high]" in out

        data = json.loads(run(capsys, home, "extract", str(doc), "--json").out)
        assert data["created"] == []

    def test_extract_dry_run(self, capsys, home, tmp_path):
        doc = tmp_path / "notes.md"
        doc.write_text("# Database\n\nWe decided to use PostgreSQL for its JSONB support.\n")
        assert "Would create 1 entry" in run(capsys, home, "extract", str(doc), "--dry-run").out
        assert "No entries found" in run(capsys, home, "query").out

    def test_extract_strict_ambiguous_heading(self, home, tmp_path):
        doc = tmp_path / "notes.md"
        doc.write_text("## API Testing\n\n- Mock the upstream service\n")
        assert exit_code(home, "extract", str(doc), "--strict") == 1

    def test_extract_missing_file(self, home, tmp_path):
        assert exit_code(home, "extract", str(tmp_path / "missing.md")) == 1

    def test_reflect_from_stdin(self, capsys, home, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO("Turns out the cache must be cleared after migrations.\n"))
        data = json.loads(run(capsys, home, "reflect", "--json").out)
        assert data["source"] == "<reflect>"
        assert [e["origin"] for e in data["created"]] == ["reflect"]

    def test_reflect_on_nothing(self, home, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO("  \n"))
        assert exit_code(home, "reflect") == 1


class TestFlowRoute:
    def test_split_json(self, capsys, home):
        out = run(capsys, home, "flow", "route", "--split", "--json", "The app crashes on start. Update the runbook.").out
        routes = json.loads(out)
        assert [r["destination"] for r in routes] == ["github", "notion"]
        assert routes[0]["label"] == "bug"

    def test_words_are_joined(self, capsys, home):
        """Unquoted words arrive as separate argv items and are routed as one text."""
        args = argparse.Namespace(
            flow_action="route", text="Please add support for dark mode".split(), split=False, json=True
        )
        with Kodo.open(home) as k:
            cmd_flow(args, k)
        routes = json.loads(capsys.readouterr().out)
        assert routes == [
            {
                "destination": "github",
                "text": "Please add support for dark mode",
                "category": None,
                "confidence": None,
                "label": "enhancement",
                "rule": "github-feature",
            }
        ]

    def test_plain_output(self, capsys, home):
        out = run(capsys, home, "flow", "route", "Renamed a variable").out
        assert out.startswith("local")


class TestSync:
    """Two homes exchanging operations through a shared directory."""

    @pytest.fixture
    def homes(self, tmp_path):
        return tmp_path / "a", tmp_path / "b", tmp_path / "shared"

    def test_push_and_pull(self, capsys, homes):
        a, b, shared = homes
        entry_id = add(capsys, a, "Use JWT for auth")
        assert "pulled 0, pushed 1" in run(capsys, a, "sync", "--dir", str(shared)).out

        data = json.loads(run(capsys, b, "sync", "--dir", str(shared), "--json").out)
        assert data["pulled"] == 1
        assert data["conflicts"] == []
        assert json.loads(run(capsys, b, "curate", "show", entry_id, "--json").out)["title"] == "Use JWT for auth"

    def test_interactive_conflict(self, capsys, homes):
        a, b, shared = homes
        entry_id = add(capsys, a, "Rate limits")
        run(capsys, a, "sync", "--dir", str(shared))
        run(capsys, b, "sync", "--dir", str(shared))
        run(capsys, a, "curate", "edit", entry_id, "--body", "120 per minute")
        run(capsys, b, "curate", "edit", entry_id, "--body", "80 per minute")
        run(capsys, a, "sync", "--dir", str(shared))

        out = run(capsys, b, "sync", "--dir", str(shared), "--plan").out
        assert "1 conflict(s) would need resolution" in out
        assert entry_id in out

        assert exit_code(b, "sync", "--dir", str(shared), "--strategy", "interactive") == 2
        assert "--resolve" in capsys.readouterr().err
        show = json.loads(run(capsys, b, "curate", "show", entry_id, "--json").out)
        assert show["body"] == "80 per minute"

        out = run(
            capsys, b, "sync", "--dir", str(shared), "--strategy", "interactive", "--resolve", f"{entry_id[:8]}=theirs"
        ).out
        assert "1 conflict(s) resolved" in out
        show = json.loads(run(capsys, b, "curate", "show", entry_id, "--json").out)
        assert show["body"] == "120 per minute"

    def test_missing_transport_exits_1(self, home):
        assert exit_code(home, "sync") == 1

    @pytest.mark.parametrize(
        "values, expected",
        [
            (None, {}),
            (["abc=ours"], {"abc": "ours"}),
            (["abc = THEIRS", "def=merge"], {"abc": "theirs", "def": "merge"}),
        ],
    )
    def test_parse_resolutions(self, values, expected):
        assert parse_resolutions(values) == expected

    @pytest.mark.parametrize("value", ["abc", "=ours", "abc=mine"])
    def test_parse_resolutions_rejects(self, value):
        with pytest.raises(ValueError):
            parse_resolutions([value])


class TestMaintenance:
    def test_status_json(self, capsys, home):
        a = add(capsys, home, "A")
        add(capsys, home, "B")
        run(capsys, home, "curate", "remove", a)
        status = json.loads(run(capsys, home, "status", "--json").out)
        assert status["entries"] == 1
        assert status["tombstoned"] == 1
        assert status["sync"]["unpushed"] == 3
        assert status["sync"]["last_sync"] is None

    def test_status_text(self, capsys, home):
        add(capsys, home, "A")
        out = run(capsys, home, "status").out
        assert "Entries:     1 (0 tombstoned)" in out
        assert "Last sync:   never" in out

    def test_rebuild(self, capsys, home):
        add(capsys, home, "Use JWT for auth")
        assert run(capsys, home, "rebuild").out.strip() == "✓ Rebuilt index: 1 entry"
        assert "Found 1 entry" in run(capsys, home, "query", "jwt").out

    def test_compact_keeps_unpushed(self, capsys, home):
        add(capsys, home, "A")
        out = run(capsys, home, "compact").out
        assert out.startswith("✓ Compacted")
        assert "kept 1 unpushed" in out
        assert "Found 1 entry" in run(capsys, home, "query", "").out


class TestLocking:
    def test_live_lock_exits_3(self, capsys, home):
        home.mkdir()
        (home / "config.json").write_text(json.dumps({"lock_timeout": 0.1}))
        other = StoreLock(home / "lock")
        other.acquire()
        try:
            assert exit_code(home, "curate", "add", "Blocked") == 3
        finally:
            other.release()

    def test_stale_lock_is_reclaimed(self, capsys, home, caplog):
        home.mkdir()
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        (home / "lock").write_text(
            json.dumps({"pid": proc.pid, "host": socket.gethostname(), "since": "2024-01-01T00:00:00+00:00"})
        )
        with caplog.at_level(logging.WARNING, logger="kodo.storage.lock"):
            out = run(capsys, home, "curate", "add", "After a crash").out
        assert out.startswith("✓ Added ")
        assert "Reclaimed stale lock" in caplog.text
        assert StoreLock(home / "lock").read_owner() is None


class TestInit:
    def test_creates_project_store(self, capsys, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        main(["init"])
        out = capsys.readouterr().out
        project_home = tmp_path.resolve() / ".kodo"
        assert f"✓ Initialized kodo store at {project_home}" in out
        config = json.loads((project_home / "config.json").read_text())
        assert config["compact_after_ops"] == 1000
        workstation_id = (project_home / "workstation_id").read_text().strip()
        assert f"Workstation: {workstation_id}" in out
        assert (project_home / ".gitignore").read_text().startswith("*\n")

    def test_rerun_keeps_existing_config(self, capsys, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        main(["init"])
        project_home = tmp_path / ".kodo"
        workstation_id = (project_home / "workstation_id").read_text()
        (project_home / "config.json").write_text(json.dumps({"page_size": 5}))
        capsys.readouterr()

        main(["init"])
        assert "already initialized" in capsys.readouterr().out
        assert json.loads((project_home / "config.json").read_text()) == {"page_size": 5}
        assert (project_home / "workstation_id").read_text() == workstation_id

    def test_invalid_existing_config_fails(self, capsys, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".kodo").mkdir()
        (tmp_path / ".kodo" / "config.json").write_text(json.dumps({"page_size": 0}))
        with pytest.raises(SystemExit) as exc_info:
            main(["init"])
        assert exc_info.value.code == 1

    def test_commands_use_store_from_subdirectory(self, capsys, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        main(["init"])
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        main(["curate", "add", "Found from a subdirectory"])
        capsys.readouterr()
        assert (tmp_path / ".kodo" / "oplog.ndjson").exists()
        assert not (nested / ".kodo").exists()

    def test_explicit_home(self, capsys, home):
        run(capsys, home, "init")
        assert (home / "config.json").exists()
        assert run(capsys, home, "query", "").out.strip() == "No entries found"


class TestRepair:
    def test_corrupt_log_is_repaired(self, capsys, home):
        kept = add(capsys, home, "Before the damage")
        add(capsys, home, "Damaged")
        add(capsys, home, "After the damage")
        log_path = home / "oplog.ndjson"
        lines = log_path.read_bytes().splitlines(keepends=True)
        lines[1] = b"{not json}\n"
        log_path.write_bytes(b"".join(lines))

        assert exit_code(home, "rebuild") == 1
        assert "kodo repair" in capsys.readouterr().err

        out = run(capsys, home, "repair").out
        assert "✓ Moved 2 line(s) starting at line 2" in out
        assert "Line 2:" in out
        assert "Rebuilt index: 1 entry" in out
        assert list(home.glob("oplog.ndjson.corrupt-*"))
        out = run(capsys, home, "query", "").out
        assert "Before the damage" in out
        assert "After the damage" not in out
        assert json.loads(run(capsys, home, "query", "", "--json").out)["hits"][0]["entry"]["id"] == kept

    def test_healthy_store(self, capsys, home):
        add(capsys, home, "Fine")
        out = run(capsys, home, "repair").out
        assert out.startswith("✓ No corrupt records found")
