"""
Main entrypoint: runs the APScheduler sync jobs in one process.

FastAPI runs separately under uvicorn.

Usage:
    python -m ghfolio                         # starts the scheduler
    python -m ghfolio sync --user-id 1        # one-off sync for a user
    uvicorn ghfolio.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_sync(argv) -> None:
    from ghfolio.scripts.sync_user import main
    main(argv)


async def _run_scheduler() -> None:
    from ghfolio.config import get_settings
    from ghfolio.db.engine import get_engine
    from ghfolio.github.auth import AppCredentials
    from ghfolio.github.exceptions import ConfigurationError
    from ghfolio.scheduler.jobs import build_scheduler

    settings = get_settings()
    engine = get_engine()

    # Fail at startup rather than on every scheduled run
    try:
        AppCredentials.from_settings(settings)
    except ConfigurationError as exc:
        logger.error("%s. Set GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY.", exc)
        sys.exit(1)

    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (repo sync every %d hours)",
        settings.repo_sync_interval_hours,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m ghfolio sync ...` or just `python -m ghfolio`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        _run_sync(sys.argv[2:])
    else:
        asyncio.run(_run_scheduler())
