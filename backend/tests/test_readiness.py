"""Tests for the readiness gate."""
import asyncio
from typing import List, Optional
from unittest.mock import MagicMock, patch

import pytest

from repoguard.config import ReadinessSettings
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.ingestion.readiness import ReadinessGate
from repoguard.ingestion.schemas import IngestionJob, JobKind, JobState

from conftest import REPO_URL, entry

FAST = ReadinessSettings(poll_interval_seconds=0.01, max_attempts=3, progress_log_every=1)


class FakeOrchestrator:
    """Hands out job records the test finishes by hand."""

    def __init__(self, active: Optional[IngestionJob] = None) -> None:
        self.active = active
        self.submitted: List[RepositoryRef] = []
        self.jobs: List[IngestionJob] = []

    def active_job(self, repository_url: str) -> Optional[IngestionJob]:
        return self.active

    def submit(self, repo: RepositoryRef) -> IngestionJob:
        self.submitted.append(repo)
        job = IngestionJob(f"job-{len(self.jobs)}", repo.url, JobKind.FULL)
        self.jobs.append(job)
        return job


def _finish(job: IngestionJob, state: JobState = JobState.DONE) -> None:
    job.state = state
    job.done.set()


class TestEnsureReady:
    @pytest.mark.asyncio
    async def test_populated_index_returns_immediately(self, store):
        store.replace_all(REPO_URL, [entry("A.java", "class A")])
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, FAST)

        assert await gate.ensure_ready(REPO_URL) is True
        assert orch.submitted == []

    @pytest.mark.asyncio
    async def test_starts_ingestion_with_gate_credentials(self, store):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, FAST, access_token="glpat-x")

        await gate.ensure_ready(REPO_URL)

        (repo,) = orch.submitted
        assert repo.url == REPO_URL
        assert repo.access_token == "glpat-x"
        assert repo.git_username == "oauth2"

    @pytest.mark.asyncio
    async def test_explicit_reference_is_used(self, store):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, FAST)
        ref = RepositoryRef(url=REPO_URL, ref="develop")

        await gate.ensure_ready(REPO_URL, repo=ref)

        assert orch.submitted == [ref]

    @pytest.mark.asyncio
    async def test_returns_true_when_ingestion_completes(self, store):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, ReadinessSettings(poll_interval_seconds=5, max_attempts=120))

        async def complete_soon():
            while not orch.jobs:
                await asyncio.sleep(0)
            store.replace_all(REPO_URL, [entry("A.java", "class A")])
            _finish(orch.jobs[0])

        loop = asyncio.get_running_loop()
        started = loop.time()
        helper = asyncio.create_task(complete_soon())
        assert await gate.ensure_ready(REPO_URL) is True
        await helper
        assert loop.time() - started < 1.0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        store = MagicMock()
        store.count.return_value = 0
        gate = ReadinessGate(store, FakeOrchestrator(), FAST)

        assert await gate.ensure_ready(REPO_URL) is False
        assert store.count.call_count == 1 + FAST.max_attempts

    @pytest.mark.asyncio
    async def test_failed_ingestion_returns_false_early(self, store):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, ReadinessSettings(poll_interval_seconds=5, max_attempts=120))

        async def fail_soon():
            while not orch.jobs:
                await asyncio.sleep(0)
            orch.jobs[0].error_detail = "RepositoryInaccessibleError: nope"
            _finish(orch.jobs[0], JobState.FAILED)

        helper = asyncio.create_task(fail_soon())
        assert await gate.ensure_ready(REPO_URL) is False
        await helper

    @pytest.mark.asyncio
    async def test_joins_in_flight_job(self, store):
        running = IngestionJob("running", REPO_URL, JobKind.FULL)
        orch = FakeOrchestrator(active=running)
        gate = ReadinessGate(store, orch, ReadinessSettings(poll_interval_seconds=0.01, max_attempts=500))

        async def complete_soon():
            await asyncio.sleep(0.02)
            store.replace_all(REPO_URL, [entry("A.java", "class A")])
            _finish(running)

        helper = asyncio.create_task(complete_soon())
        assert await gate.ensure_ready(REPO_URL) is True
        await helper
        assert orch.submitted == []

    @pytest.mark.asyncio
    async def test_cancellation_stops_wait_but_not_job(self, store):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, ReadinessSettings(poll_interval_seconds=5, max_attempts=120))

        waiter = asyncio.create_task(gate.ensure_ready(REPO_URL))
        while not orch.jobs:
            await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        job = orch.jobs[0]
        assert job.state is JobState.PENDING
        assert not job.done.is_set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["--upload-pack=touch /tmp/x", "   "])
    async def test_unusable_url_returns_false_without_ingesting(self, store, url):
        orch = FakeOrchestrator()
        gate = ReadinessGate(store, orch, FAST)

        with patch("repoguard.ingestion.readiness.logger") as log:
            assert await gate.ensure_ready(url) is False

        assert orch.submitted == []
        assert "cannot ingest" in log.warning.call_args.args[0]
