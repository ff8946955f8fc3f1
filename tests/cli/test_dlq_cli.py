"""Tests for the ``mapspine dlq`` commands."""

import json

import pytest
from typer.testing import CliRunner

from mapspine.cli.app import app
from mapspine.execution.dlq import DeadLetterQueue
from mapspine.execution.dlq_storage import FileStorage

runner = CliRunner()


@pytest.fixture()
def dlq_dir(tmp_path):
    # Matches MAPSPINE_DLQ_STORAGE_PATH set by the autouse settings fixture
    return tmp_path / "dlq"


@pytest.fixture()
def seeded(dlq_dir, clock):
    """Three dead letters written with the fake clock (2024-01-15)."""
    queue = DeadLetterQueue(storage=FileStorage(dlq_dir), clock=clock, background_tasks=False)
    ids = [
        queue.enqueue({"id": 1}, ValueError("bad email"), {"mapping_id": "crm"}),
        queue.enqueue({"id": 2}, {"message": "timeout", "code": "ETIMEDOUT"}, {"mapping_id": "erp"}),
        queue.enqueue({"id": 3}, "bad phone", {"mapping_id": "crm"}),
    ]
    return ids


def invoke(*args):
    return runner.invoke(app, list(args))


def as_json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestRoot:
    def test_version(self):
        result = invoke("--version")
        assert result.exit_code == 0
        assert result.stdout.startswith("mapspine ")

    def test_missing_directory(self, tmp_path):
        result = invoke("dlq", "stats", "--path", str(tmp_path / "absent"))
        assert result.exit_code == 1
        assert "DLQ_NOT_FOUND" in result.output


class TestList:
    def test_json(self, seeded):
        data = as_json(invoke("dlq", "list", "--json"))
        assert [item["id"] for item in data["items"]] == seeded
        assert data["total"] == 3

    def test_filters(self, seeded, dlq_dir):
        data = as_json(invoke("dlq", "list", "--path", str(dlq_dir), "--mapping", "crm", "--error", "BAD", "--json"))
        assert [item["record"]["id"] for item in data["items"]] == [1, 3]

        data = as_json(invoke("dlq", "list", "--error", "etimedout", "--limit", "5", "--json"))
        assert [item["record"]["id"] for item in data["items"]] == [2]

    def test_status_filter(self, seeded):
        assert as_json(invoke("dlq", "list", "--status", "resolved", "--json"))["items"] == []

    def test_table(self, seeded):
        result = invoke("dlq", "list")
        assert result.exit_code == 0
        assert "Dead Letters" in result.stdout
        assert "3 of 3" in result.stdout

    def test_empty(self, dlq_dir):
        dlq_dir.mkdir()
        result = invoke("dlq", "list")
        assert result.exit_code == 0
        assert "No items." in result.stdout


class TestShowAndStats:
    def test_show(self, seeded):
        data = as_json(invoke("dlq", "show", seeded[0], "--json"))
        assert data["error"]["message"] == "bad email"
        assert data["context"]["enqueued_at"].startswith("2024-01-15T12:00")

    def test_show_unknown(self, seeded):
        result = invoke("dlq", "show", "dlq_nope")
        assert result.exit_code == 1
        assert "DLQ_ENTRY_NOT_FOUND" in result.output

    def test_stats(self, seeded):
        data = as_json(invoke("dlq", "stats", "--json"))
        assert data["current_size"] == 3
        assert data["context_counts"] == {"crm": 2, "erp": 1}

    def test_stats_text(self, seeded):
        result = invoke("dlq", "stats")
        assert result.exit_code == 0
        assert "DLQ Statistics" in result.stdout
        assert "current_size" in result.stdout


class TestMaintenance:
    def test_resolve(self, seeded, dlq_dir, clock):
        data = as_json(invoke("dlq", "resolve", seeded[0], "dlq_nope", "--json"))
        assert data == {"resolved": [seeded[0]], "not_found": ["dlq_nope"]}
        reopened = DeadLetterQueue(storage=FileStorage(dlq_dir), clock=clock, background_tasks=False)
        assert [e.id for e in reopened.search()] == seeded[1:]

    def test_resolve_nothing_found(self, seeded):
        result = invoke("dlq", "resolve", "dlq_nope")
        assert result.exit_code == 1

    def test_export(self, seeded, tmp_path):
        target = tmp_path / "out" / "dlq.json"
        summary = as_json(invoke("dlq", "export", str(target), "--json"))
        assert summary["entry_count"] == 3
        exported = json.loads(target.read_text())
        assert exported["options"]["storage_type"] == "file"
        assert len(exported["entries"]) == 3

    def test_purge_expired(self, seeded):
        # Entries carry 2024 timestamps; the CLI runs on the system clock
        data = as_json(invoke("dlq", "purge-expired", "--json"))
        assert data == {"removed": 3, "remaining": 0}
        assert as_json(invoke("dlq", "list", "--json"))["total"] == 0

    def test_purge_rejects_bad_retention(self, seeded):
        result = invoke("dlq", "purge-expired", "--retention", "0")
        assert result.exit_code == 1
        assert "INVALID_RETENTION" in result.output
