"""
APScheduler jobs for background repository sync.

Every few hours (REPO_SYNC_INTERVAL_HOURS, default 6) all users with a GitHub
App installation are re-synced, catching changes that no webhook reported.
At startup, unfinished runs whose executor stopped updating them (a previous
process that died mid-sync) are resumed from their last checkpointed step.
Runs another live process is executing are left alone.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, col, select

from ghfolio.config import get_settings
from ghfolio.models.user import User

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _scheduled_sync,
        trigger="cron",
        hour=f"*/{settings.repo_sync_interval_hours}",
        minute=0,
        id="scheduled_repo_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _resume_interrupted_runs,
        trigger="date",
        id="resume_interrupted_runs",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _scheduled_sync(engine) -> None:
    """
    Periodic job: sync every user that has installed the GitHub App.

    One user's failure is logged and the remaining users are still synced.
    """
    from ghfolio.github.client import GithubAppClient
    from ghfolio.github.sync_service import RepoSyncService

    settings = get_settings()
    logger.info("Scheduled repo sync starting at %s", datetime.utcnow().isoformat())

    total_synced = 0
    total_errors = 0
    try:
        with Session(engine) as s:
            users = s.exec(
                select(User).where(col(User.github_installation_id).is_not(None))
            ).all()
        logger.info("Found %d users with GitHub App installed", len(users))

        async with GithubAppClient.from_settings(settings) as client:
            service = RepoSyncService(
                client=client,
                engine=engine,
                record_hard_failures=settings.sync_log_hard_failures,
            )
            for user in users:
                try:
                    run = service.create_run(user.id, user.github_installation_id)
                    result = await service.execute_run(run.id)
                    total_synced += result.synced
                    total_errors += result.errors
                    logger.info(
                        "Synced %d/%d repos for user %s",
                        result.synced, result.total, user.id,
                    )
                except Exception as exc:
                    logger.error("Failed to sync repos for user %s: %s", user.id, exc)

    except Exception as exc:
        logger.error("Scheduled repo sync failed: %s", exc)
        return

    logger.info(
        "Scheduled sync complete: %d repos synced, %d errors", total_synced, total_errors
    )


async def _resume_interrupted_runs(engine) -> None:
    """Startup job: finish stale runs a previous process left in a non-terminal state."""
    from ghfolio.github.client import GithubAppClient
    from ghfolio.github.sync_service import RepoSyncService

    settings = get_settings()
    try:
        async with GithubAppClient.from_settings(settings) as client:
            service = RepoSyncService(
                client=client,
                engine=engine,
                record_hard_failures=settings.sync_log_hard_failures,
            )
            run_ids = service.interrupted_run_ids()
            if run_ids:
                logger.info("Resuming %d interrupted sync runs", len(run_ids))
            for run_id in run_ids:
                try:
                    await service.execute_run(run_id)
                except Exception as exc:
                    logger.error("Resumed run %s failed: %s", run_id, exc)

    except Exception as exc:
        logger.error("Resuming interrupted runs failed: %s", exc)
