"""Tests for full-repository ingestion and the shared job runner."""
import asyncio
import threading
import time

import pytest

from repoguard.audit.service import JobAuditService
from repoguard.config import ChunkingSettings, IngestionSettings
from repoguard.git_workspace.schemas import RepositoryRef
from repoguard.ingestion.jobs import JobRunner
from repoguard.ingestion.locks import RepositoryLocks
from repoguard.ingestion.orchestrator import IngestionOrchestrator
from repoguard.ingestion.schemas import JobKind, JobState

from conftest import REPO_URL, FakeProvider, FakeWorkspace, entry, make_embedder

REPO = RepositoryRef(url=REPO_URL, access_token="glpat-x")

SMALL_CHUNKS = ChunkingSettings(max_tokens=20, overlap_tokens=5, min_segment_chars=5, max_segments=10)

BIG_JAVA = " ".join(f"w{i}" for i in range(50))  # three 20-token windows

FILES = {
    "src/A.java": "class A { void run() {} }",
    "src/Big.java": BIG_JAVA,
    "src/Blank.java": "   \n  ",
    "src/Huge.java": "x " * 1500,
    "README.md": "# readme",
    "build/Generated.java": "class Generated {}",
    "node_modules/lib/Lib.java": "class Lib {}",
}


def _orchestrator(tmp_path, store, embedder, files=None, accessible=True, policy="abort", ledger=None, **kw):
    workspace = FakeWorkspace(tmp_path / "clones", FILES if files is None else files, accessible)
    runner = JobRunner(max_concurrent_jobs=kw.pop("max_jobs", 4), ledger=ledger)
    settings = IngestionSettings(max_file_bytes=2000, embedding_failure_policy=policy)
    orch = IngestionOrchestrator(
        workspace, embedder, store, runner, settings=settings, chunking=SMALL_CHUNKS, **kw
    )
    return orch, workspace, runner


def _paths(store, url=REPO_URL):
    return sorted(e.file_path for e in store.find_by_repository(url))


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestIngest:
    @pytest.mark.asyncio
    async def test_indexes_eligible_files_only(self, tmp_path, store, embedder):
        orch, workspace, _ = _orchestrator(tmp_path, store, embedder)

        job = await orch.ingest(REPO)

        assert job.state is JobState.DONE
        assert job.entries_written == 4
        assert _paths(store) == [
            "src/A.java",
            "src/Big.java (Part 1/3)",
            "src/Big.java (Part 2/3)",
            "src/Big.java (Part 3/3)",
        ]
        assert all(not d.exists() for d in workspace.clone_dirs)

    @pytest.mark.asyncio
    async def test_split_parts_overlap(self, tmp_path, store, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder, files={"Big.java": BIG_JAVA})
        await orch.ingest(REPO)
        parts = {e.file_path: e.content for e in store.find_by_repository(REPO_URL)}
        first = parts["Big.java (Part 1/3)"].split()
        second = parts["Big.java (Part 2/3)"].split()
        assert first[-5:] == second[:5]

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(self, tmp_path, store, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder)
        await orch.ingest(REPO)
        first = {(e.file_path, e.content) for e in store.find_by_repository(REPO_URL)}
        await orch.ingest(REPO)
        second = {(e.file_path, e.content) for e in store.find_by_repository(REPO_URL)}
        assert first == second
        assert store.count(REPO_URL) == 4

    @pytest.mark.asyncio
    async def test_reingest_replaces_stale_entries(self, tmp_path, store, embedder):
        store.replace_all(REPO_URL, [entry("src/Removed.java", "class Removed {}")])
        orch, _, _ = _orchestrator(tmp_path, store, embedder, files={"src/A.java": "class A {}"})
        await orch.ingest(REPO)
        assert _paths(store) == ["src/A.java"]

    @pytest.mark.asyncio
    async def test_warm_up_precedes_chunks(self, tmp_path, store, provider, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder, files={"A.java": "class A {}"})
        await orch.ingest(REPO)
        assert provider.calls == ["model warmup test", "class A {}"]

    @pytest.mark.asyncio
    async def test_warm_up_can_be_disabled(self, tmp_path, store, provider, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder, files={"A.java": "class A {}"}, warm_up=False)
        await orch.ingest(REPO)
        assert provider.calls == ["class A {}"]

    @pytest.mark.asyncio
    async def test_state_transitions_are_recorded(self, tmp_path, store, embedder):
        ledger = JobAuditService()
        try:
            orch, _, _ = _orchestrator(tmp_path, store, embedder, ledger=ledger)
            job = await orch.ingest(REPO)
            states = [e.state for e in ledger.get_events(job_id=job.job_id)]
            assert states == [
                "pending", "validating", "fetching", "chunking", "embedding", "replacing", "done",
            ]
            assert ledger.last_state(REPO_URL).detail == "4 entries written"
        finally:
            ledger.close()


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

class TestIngestFailures:
    @pytest.mark.asyncio
    async def test_inaccessible_repository_keeps_previous_index(self, tmp_path, store, embedder):
        store.replace_all(REPO_URL, [entry("src/Old.java", "class Old {}")])
        orch, workspace, _ = _orchestrator(tmp_path, store, embedder, accessible=False)

        job = await orch.ingest(REPO)

        assert job.state is JobState.FAILED
        assert job.error_detail.startswith("RepositoryInaccessibleError")
        assert workspace.clone_calls == 0
        assert _paths(store) == ["src/Old.java"]

    @pytest.mark.asyncio
    async def test_abort_policy_fails_job_and_keeps_index(self, tmp_path, store):
        store.replace_all(REPO_URL, [entry("src/Old.java", "class Old {}")])
        provider = FakeProvider(fail_on=["poison"])
        files = {"A.java": "class A {}", "B.java": "class B poison {}"}
        orch, workspace, _ = _orchestrator(tmp_path, store, make_embedder(provider), files=files)

        job = await orch.ingest(REPO)

        assert job.state is JobState.FAILED
        assert "EmbeddingError" in job.error_detail
        assert _paths(store) == ["src/Old.java"]
        assert all(not d.exists() for d in workspace.clone_dirs)

    @pytest.mark.asyncio
    async def test_skip_policy_drops_failed_chunks(self, tmp_path, store):
        provider = FakeProvider(fail_on=["poison"])
        files = {"A.java": "class A {}", "B.java": "class B poison {}"}
        orch, _, _ = _orchestrator(tmp_path, store, make_embedder(provider), files=files, policy="skip")

        job = await orch.ingest(REPO)

        assert job.state is JobState.DONE
        assert job.entries_written == 1
        assert _paths(store) == ["A.java"]

    @pytest.mark.asyncio
    async def test_skip_policy_fails_when_every_chunk_fails(self, tmp_path, store):
        store.replace_all(REPO_URL, [entry("src/Old.java", "class Old {}")])
        provider = FakeProvider(error=RuntimeError("model offline"))
        orch, _, _ = _orchestrator(
            tmp_path, store, make_embedder(provider), files={"A.java": "class A {}"}, policy="skip"
        )

        job = await orch.ingest(REPO)

        assert job.state is JobState.FAILED
        assert _paths(store) == ["src/Old.java"]

    @pytest.mark.asyncio
    async def test_empty_repository_clears_index(self, tmp_path, store, provider, embedder):
        store.replace_all(REPO_URL, [entry("src/Old.java", "class Old {}")])
        orch, _, _ = _orchestrator(tmp_path, store, embedder, files={"README.md": "docs"})
        job = await orch.ingest(REPO)
        assert job.state is JobState.DONE
        assert job.entries_written == 0
        assert store.count(REPO_URL) == 0
        assert provider.calls == []


# ---------------------------------------------------------------------------
# Background jobs and concurrency
# ---------------------------------------------------------------------------

class TestBackgroundJobs:
    @pytest.mark.asyncio
    async def test_submit_returns_immediately(self, tmp_path, store, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder)

        job = orch.submit(REPO, job_id="job-1")

        assert job.job_id == "job-1"
        assert job.state is JobState.PENDING
        assert orch.active_job(REPO_URL) is job
        assert await job.wait(timeout=5) is True
        assert job.succeeded
        assert orch.get_job("job-1") is job
        assert orch.active_job(REPO_URL) is None
        assert job.to_info().entries_written == 4

    @pytest.mark.asyncio
    async def test_duplicate_job_id_rejected(self, tmp_path, store, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder)
        await orch.ingest(REPO, job_id="same")
        with pytest.raises(ValueError):
            orch.submit(REPO, job_id="same")

    @pytest.mark.asyncio
    async def test_same_repository_jobs_never_overlap(self, tmp_path, store, embedder):
        orch, workspace, _ = _orchestrator(tmp_path, store, embedder, files={"A.java": "class A {}"})
        workspace.clone_delay = 0.05

        jobs = [orch.submit(REPO) for _ in range(3)]
        await asyncio.gather(*(j.wait() for j in jobs))

        assert all(j.succeeded for j in jobs)
        assert workspace.max_active == 1
        assert store.count(REPO_URL) == 1

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_parallel_repositories(self, tmp_path, store, embedder):
        orch, workspace, _ = _orchestrator(
            tmp_path, store, embedder, files={"A.java": "class A {}"}, max_jobs=2
        )
        workspace.clone_delay = 0.05

        urls = [f"https://gitlab.example.com/team/r{i}.git" for i in range(4)]
        jobs = [orch.submit(RepositoryRef(url=u)) for u in urls]
        await asyncio.gather(*(j.wait() for j in jobs))

        assert all(j.succeeded for j in jobs)
        assert workspace.max_active <= 2
        assert sorted(store.repositories()) == sorted(urls)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self, tmp_path, store, embedder):
        orch, workspace, runner = _orchestrator(tmp_path, store, embedder)
        workspace.clone_delay = 10
        job = orch.submit(REPO)
        await asyncio.sleep(0.01)

        await runner.shutdown()

        assert job.state is JobState.FAILED
        assert job.error_detail == "cancelled"
        assert job.done.is_set()

    @pytest.mark.asyncio
    async def test_wipe_removes_repository(self, tmp_path, store, embedder):
        orch, _, _ = _orchestrator(tmp_path, store, embedder)
        await orch.ingest(REPO)
        assert await orch.wipe(REPO_URL) == 4
        assert store.count(REPO_URL) == 0


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_ledger_failure_does_not_break_jobs(self):
        class BrokenLedger:
            def record(self, entry):
                raise RuntimeError("disk full")

        runner = JobRunner(ledger=BrokenLedger())

        async def body(job):
            return 7

        job = await runner.run(runner.create_job(REPO_URL, JobKind.FULL), body)
        assert job.succeeded
        assert job.entries_written == 7

    @pytest.mark.asyncio
    async def test_active_job_filters_by_kind(self):
        runner = JobRunner()
        full = runner.create_job(REPO_URL, JobKind.FULL)
        delta = runner.create_job(REPO_URL, JobKind.DELTA)
        assert runner.active_job(REPO_URL, JobKind.FULL) is full
        assert runner.active_job(REPO_URL) is delta
        assert len(runner.list_jobs()) == 2

    @pytest.mark.asyncio
    async def test_wait_timeout(self):
        job = JobRunner().create_job(REPO_URL, JobKind.FULL)
        assert await job.wait(timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_finished_jobs_are_pruned_oldest_first(self):
        runner = JobRunner(max_finished_jobs=2)

        async def body(job):
            return 1

        finished = [await runner.run(runner.create_job(REPO_URL, JobKind.FULL), body) for _ in range(5)]
        pending = runner.create_job(REPO_URL, JobKind.DELTA)

        assert [j.job_id for j in runner.list_jobs()] == [
            finished[3].job_id, finished[4].job_id, pending.job_id,
        ]
        assert runner.get_job(finished[0].job_id) is None
        assert runner.active_job(REPO_URL) is pending

    @pytest.mark.asyncio
    async def test_unfinished_jobs_survive_pruning(self):
        runner = JobRunner(max_finished_jobs=0)
        waiting = runner.create_job(REPO_URL, JobKind.FULL)

        async def body(job):
            return 0

        await runner.run(runner.create_job(REPO_URL, JobKind.DELTA), body)
        assert runner.list_jobs() == [waiting]

    @pytest.mark.asyncio
    async def test_ledger_writes_run_off_the_event_loop(self):
        class SlowLedger:
            def __init__(self):
                self.threads = []
                self.states = []

            def record(self, entry):
                time.sleep(0.1)
                self.threads.append(threading.get_ident())
                self.states.append(entry.state)

        ledger = SlowLedger()
        runner = JobRunner(ledger=ledger)
        started = time.monotonic()
        job = runner.create_job(REPO_URL, JobKind.FULL)
        runner.transition(job, JobState.VALIDATING)
        assert time.monotonic() - started < 0.1

        await runner.flush_ledger()
        assert ledger.states == ["pending", "validating"]
        assert threading.get_ident() not in ledger.threads
        await runner.shutdown()


class TestRepositoryLocks:
    @pytest.mark.asyncio
    async def test_lock_released_and_forgotten(self):
        locks = RepositoryLocks()
        async with locks.hold(REPO_URL):
            assert locks.is_locked(REPO_URL)
        assert not locks.is_locked(REPO_URL)
        assert locks._locks == {}
