"""Tests for the audit log: ordering, hash chain, replay and export."""

from __future__ import annotations

import io
import json
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from governor.audit import AsyncAuditReader, AuditEvent, AuditLog, replay
from governor.audit.log import GENESIS_HASH
from governor.models import JobStatus, SubtaskStatus
from governor.storage.database import Database


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _populate(log: AuditLog) -> None:
    log.append("job-1", AuditEvent.JOB_SUBMITTED, {"status": "pending"}, job_id="job-1")
    log.append("job-1.a", AuditEvent.SUBTASK_QUEUED, {"status": "queued"}, job_id="job-1")
    log.append("job-1", AuditEvent.JOB_STATUS, {"status": "running"}, job_id="job-1")
    log.append("job-1.a", AuditEvent.SUBTASK_STATUS, {"status": "dispatched"}, job_id="job-1")
    log.append("agent-a", AuditEvent.CIRCUIT_TRANSITION, {"from": "closed", "to": "open"})
    log.append("job-1.a", AuditEvent.SUBTASK_STATUS, {"status": "done"}, job_id="job-1")
    log.append("job-1", AuditEvent.JOB_STATUS, {"status": "completed"}, job_id="job-1")


class TestAppend:
    """Sequence numbers and hash chaining."""

    def test_sequence_starts_at_one_and_increases(self) -> None:
        log = AuditLog()
        _populate(log)
        seqs = [e.seq for e in log.query()]
        assert seqs == list(range(1, 8))
        assert log.last_seq == 7

    def test_chain_links_entries(self) -> None:
        log = AuditLog()
        _populate(log)
        entries = log.query()
        assert entries[0].prev_hash == GENESIS_HASH
        for prev, entry in zip(entries, entries[1:]):
            assert entry.prev_hash == prev.hash

    def test_payload_is_snapshotted(self) -> None:
        log = AuditLog()
        payload = {"status": "queued", "deps": ["x"]}
        entry = log.append("job-1.a", AuditEvent.SUBTASK_QUEUED, payload)
        payload["deps"].append("y")
        assert entry.payload == {"status": "queued", "deps": ["x"]}

    def test_concurrent_appends_are_totally_ordered(self) -> None:
        log = AuditLog()

        def writer(n: int) -> None:
            for i in range(50):
                log.append(f"entity-{n}", AuditEvent.SUBTASK_RESULT, {"i": i})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = log.query()
        assert [e.seq for e in entries] == list(range(1, 401))
        assert log.verify() is None
        # each writer's own entries stay in its program order
        for n in range(8):
            mine = [e.payload["i"] for e in entries if e.entity_id == f"entity-{n}"]
            assert mine == list(range(50))


class TestQuery:
    """Filtered read-only views."""

    def test_filters(self) -> None:
        log = AuditLog()
        _populate(log)
        assert len(log.query(job_id="job-1")) == 6
        assert len(log.query(entity_id="job-1.a")) == 3
        assert len(log.query(event_type=AuditEvent.JOB_STATUS)) == 2
        assert [e.seq for e in log.query(since_seq=5)] == [6, 7]
        assert [e.seq for e in log.query(limit=2)] == [1, 2]

    def test_export_jsonl(self) -> None:
        log = AuditLog()
        _populate(log)
        out = io.StringIO()
        count = log.export_jsonl(out, job_id="job-1")
        lines = out.getvalue().splitlines()
        assert count == len(lines) == 6
        records = [json.loads(line) for line in lines]
        assert [r["seq"] for r in records] == sorted(r["seq"] for r in records)
        assert records[0]["event_type"] == "job.submitted"


class TestVerify:
    """Tamper evidence."""

    def test_intact_chain(self) -> None:
        log = AuditLog()
        _populate(log)
        assert log.verify() is None

    def test_modified_payload_detected(self) -> None:
        log = AuditLog()
        _populate(log)
        entries = log.query()
        entries[3] = replace(entries[3], payload={"status": "failed"})
        assert log.verify(entries) == 4

    def test_removed_entry_detected(self) -> None:
        log = AuditLog()
        _populate(log)
        entries = log.query()
        del entries[2]
        assert log.verify(entries) == 4

    def test_reordered_entries_detected(self) -> None:
        log = AuditLog()
        _populate(log)
        entries = log.query()
        entries[1], entries[2] = entries[2], entries[1]
        assert log.verify(entries) is not None


class TestReplay:
    """Reconstruction of statuses from the log."""

    def test_replay_terminal_statuses(self) -> None:
        log = AuditLog()
        _populate(log)
        state = log.replay()
        assert state.jobs == {"job-1": JobStatus.COMPLETED}
        assert state.subtasks == {"job-1.a": SubtaskStatus.DONE}
        assert state.last_seq == 7

    def test_replay_ignores_entries_without_status(self) -> None:
        log = AuditLog()
        log.append("job-1", AuditEvent.JOB_SUBMITTED, {"status": "pending"})
        log.append("job-1.a", AuditEvent.SUBTASK_RESULT, {"agent_id": "x"})
        state = log.replay()
        assert state.subtasks == {}

    def test_replay_rejects_out_of_order_entries(self) -> None:
        log = AuditLog()
        _populate(log)
        entries = log.query()
        with pytest.raises(ValueError, match="strictly increasing"):
            replay([entries[1], entries[0]])


class TestDurability:
    """SQLite-backed log."""

    def test_resumes_sequence_and_chain(self, tmp_path: Path) -> None:
        db = Database(tmp_path)
        log = AuditLog(db)
        _populate(log)

        reopened = AuditLog(Database(tmp_path))
        assert reopened.last_seq == 7
        entry = reopened.append("job-2", AuditEvent.JOB_SUBMITTED, {"status": "pending"})
        assert entry.seq == 8
        assert reopened.verify() is None
        assert reopened.replay(job_id="job-1").jobs["job-1"] == JobStatus.COMPLETED

    def test_db_query_matches_memory(self, tmp_path: Path) -> None:
        durable = AuditLog(Database(tmp_path))
        memory = AuditLog()
        _populate(durable)
        _populate(memory)

        def shape(log: AuditLog) -> list[tuple]:
            return [(e.seq, e.entity_id, e.event_type, e.payload) for e in log.query(job_id="job-1")]

        assert shape(durable) == shape(memory)

    def test_db_backed_log_keeps_nothing_in_memory(self, tmp_path: Path) -> None:
        log = AuditLog(Database(tmp_path))
        _populate(log)
        assert log._entries == []
        assert len(log.query()) == 7
        assert log.verify() is None


class TestAsyncReader:
    """aiosqlite-backed reader used by the API."""

    @pytest.mark.anyio
    async def test_iter_and_count(self, tmp_path: Path) -> None:
        db = Database(tmp_path)
        log = AuditLog(db)
        _populate(log)

        async with AsyncAuditReader(db.db_path) as reader:
            assert await reader.count() == 7
            entries = await reader.fetch(entity_id="job-1.a")
            assert [e.payload["status"] for e in entries] == ["queued", "dispatched", "done"]
            seqs = [e.seq async for e in reader.iter_entries(since_seq=5)]
            assert seqs == [6, 7]

        assert log.verify(entries=log.query()) is None
