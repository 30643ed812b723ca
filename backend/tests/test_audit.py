"""Unit tests for the DuckDB job ledger."""

from datetime import datetime, timezone

import pytest

from repoguard.audit.schemas import JobAuditEntry
from repoguard.audit.service import JobAuditService

URL = "https://gitlab.example.com/team/service.git"


@pytest.fixture
def ledger(tmp_path):
    """A ledger backed by a fresh file in tmp_path."""
    service = JobAuditService(db_path=str(tmp_path / "jobs.duckdb"))
    yield service
    service.close()


class TestJobAuditEntry:
    """Tests for the JobAuditEntry schema."""

    def test_timestamp_defaults_to_now_utc(self):
        entry = JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="pending")
        assert entry.timestamp.tzinfo is timezone.utc
        assert entry.detail is None


class TestJobAuditService:
    """Tests for JobAuditService."""

    def test_record_and_read_back(self, ledger):
        ledger.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="pending"))
        ledger.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="done", detail="3 entries written"))

        events = ledger.get_events(job_id="j1")

        assert [e.state for e in events] == ["pending", "done"]
        assert events[1].detail == "3 entries written"
        assert isinstance(events[0].timestamp, datetime)

    def test_filters_by_repository(self, ledger):
        ledger.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="done"))
        ledger.record(JobAuditEntry(job_id="j2", repository_url="https://other", kind="full", state="done"))

        assert [e.job_id for e in ledger.get_events(repository_url=URL)] == ["j1"]
        assert len(ledger.get_events()) == 2

    def test_limit(self, ledger):
        for i in range(5):
            ledger.record(JobAuditEntry(job_id=f"j{i}", repository_url=URL, kind="delta", state="done"))
        assert len(ledger.get_events(limit=3)) == 3

    def test_last_state(self, ledger):
        ledger.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="done"))
        ledger.record(JobAuditEntry(job_id="j2", repository_url=URL, kind="delta", state="failed", detail="boom"))

        assert ledger.last_state(URL).state == "failed"
        assert ledger.last_state(URL, kind="full").job_id == "j1"
        assert ledger.last_state("https://unknown") is None

    def test_persists_across_connections(self, tmp_path):
        path = str(tmp_path / "jobs.duckdb")
        first = JobAuditService(db_path=path)
        first.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="done"))
        first.close()

        second = JobAuditService(db_path=path)
        try:
            assert [e.job_id for e in second.get_events()] == ["j1"]
        finally:
            second.close()

    def test_in_memory_default(self):
        service = JobAuditService()
        try:
            service.record(JobAuditEntry(job_id="j1", repository_url=URL, kind="full", state="pending"))
            assert len(service.get_events()) == 1
        finally:
            service.close()
