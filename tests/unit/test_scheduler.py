"""Tests for APScheduler job configuration and the scheduled sync job bodies."""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from ghfolio.models.remote import SyncResult
from ghfolio.models.user import User
from ghfolio.scheduler.jobs import _resume_interrupted_runs, _scheduled_sync, build_scheduler


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _client_cls():
    """Patched GithubAppClient class whose from_settings() works with `async with`."""
    mock_cls = MagicMock()
    mock_client = AsyncMock()
    mock_cls.from_settings.return_value.__aenter__.return_value = mock_client
    return mock_cls


def _service(results=None, interrupted=None):
    """RepoSyncService stand-in: sync methods plain, execute_run awaitable."""
    mock_service = MagicMock()
    mock_service.create_run.side_effect = lambda user_id, installation_id: MagicMock(
        id=f"run-{user_id}"
    )
    mock_service.execute_run = AsyncMock(
        side_effect=results or (lambda run_id: SyncResult(synced=3, errors=0, total=3))
    )
    mock_service.interrupted_run_ids.return_value = interrupted or []
    return mock_service


def _seed_users(engine, installations):
    with Session(engine) as s:
        users = [
            User(github_handle=f"user{i}", github_installation_id=inst)
            for i, inst in enumerate(installations)
        ]
        s.add_all(users)
        s.commit()
        for u in users:
            s.refresh(u)
        return [(u.id, u.github_installation_id) for u in users]


# ─── build_scheduler ──────────────────────────────────────────────────────────

class TestBuildScheduler:
    def test_returns_scheduler(self):
        scheduler = build_scheduler(MagicMock())
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_jobs_registered(self):
        scheduler = build_scheduler(MagicMock())
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"scheduled_repo_sync", "resume_interrupted_runs"}

    def test_repo_sync_is_cron(self):
        scheduler = build_scheduler(MagicMock())
        job = next(j for j in scheduler.get_jobs() if j.id == "scheduled_repo_sync")
        assert job.trigger.__class__.__name__ == "CronTrigger"

    def test_resume_job_runs_once(self):
        scheduler = build_scheduler(MagicMock())
        job = next(j for j in scheduler.get_jobs() if j.id == "resume_interrupted_runs")
        assert job.trigger.__class__.__name__ == "DateTrigger"

    def test_interval_from_settings(self):
        """Scheduler respects the REPO_SYNC_INTERVAL_HOURS setting."""
        with patch("ghfolio.scheduler.jobs.get_settings") as mock_settings:
            mock_settings.return_value.repo_sync_interval_hours = 4
            scheduler = build_scheduler(MagicMock())

        job = next(j for j in scheduler.get_jobs() if j.id == "scheduled_repo_sync")
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "*/4"
        assert str(fields["minute"]) == "0"

    def test_default_interval_is_six_hours(self):
        scheduler = build_scheduler(MagicMock())
        job = next(j for j in scheduler.get_jobs() if j.id == "scheduled_repo_sync")
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "*/6"

    def test_scheduler_not_running_on_creation(self):
        scheduler = build_scheduler(MagicMock())
        assert not scheduler.running


# ─── _scheduled_sync job body ─────────────────────────────────────────────────

class TestScheduledSyncJob:
    """GithubAppClient and RepoSyncService are imported inside the job body,
    so they are patched at their source module paths."""

    @pytest.mark.asyncio
    async def test_syncs_every_installed_user(self, engine):
        users = _seed_users(engine, ["111", "222"])
        mock_service = _service()

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _scheduled_sync(engine=engine)

        assert [c.args for c in mock_service.create_run.call_args_list] == users
        assert mock_service.execute_run.await_count == 2

    @pytest.mark.asyncio
    async def test_skips_users_without_installation(self, engine):
        _seed_users(engine, ["111", None])
        mock_service = _service()

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _scheduled_sync(engine=engine)

        assert mock_service.create_run.call_count == 1
        assert mock_service.create_run.call_args.args[1] == "111"

    @pytest.mark.asyncio
    async def test_one_user_failing_does_not_stop_others(self, engine):
        _seed_users(engine, ["111", "222", "333"])

        async def execute(run_id):
            if run_id == "run-2":
                raise RuntimeError("listing failed")
            return SyncResult(synced=1, errors=0, total=1)

        mock_service = _service(results=execute)

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _scheduled_sync(engine=engine)

        assert mock_service.execute_run.await_count == 3

    @pytest.mark.asyncio
    async def test_exception_does_not_propagate(self, engine):
        """The job catches everything so the scheduler stays alive."""
        _seed_users(engine, ["111"])
        mock_cls = MagicMock()
        mock_cls.from_settings.side_effect = Exception("GitHub App credentials not configured")

        with patch("ghfolio.github.client.GithubAppClient", mock_cls):
            await _scheduled_sync(engine=engine)

    @pytest.mark.asyncio
    async def test_no_users_no_runs(self, engine):
        mock_service = _service()

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _scheduled_sync(engine=engine)

        mock_service.create_run.assert_not_called()


# ─── _resume_interrupted_runs job body ────────────────────────────────────────

class TestResumeInterruptedRunsJob:
    @pytest.mark.asyncio
    async def test_resumes_each_interrupted_run(self):
        mock_service = _service(interrupted=["run-a", "run-b"])

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _resume_interrupted_runs(engine=MagicMock())

        mock_service.execute_run.assert_any_await("run-a")
        mock_service.execute_run.assert_any_await("run-b")

    @pytest.mark.asyncio
    async def test_failed_resume_does_not_stop_others(self):
        async def execute(run_id):
            if run_id == "run-a":
                raise RuntimeError("boom")
            return SyncResult(synced=0, errors=0, total=0)

        mock_service = _service(results=execute, interrupted=["run-a", "run-b"])

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _resume_interrupted_runs(engine=MagicMock())

        assert mock_service.execute_run.await_count == 2

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self):
        mock_service = _service()

        with patch("ghfolio.github.client.GithubAppClient", _client_cls()), \
             patch("ghfolio.github.sync_service.RepoSyncService", return_value=mock_service):
            await _resume_interrupted_runs(engine=MagicMock())

        mock_service.execute_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exception_does_not_propagate(self):
        mock_cls = MagicMock()
        mock_cls.from_settings.side_effect = Exception("not configured")

        with patch("ghfolio.github.client.GithubAppClient", mock_cls):
            await _resume_interrupted_runs(engine=MagicMock())
