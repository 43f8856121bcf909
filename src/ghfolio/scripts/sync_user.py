"""
One-off repository sync for a single user, in the foreground.

Usage:
    python -m ghfolio.scripts.sync_user --user-id 1
    python -m ghfolio.scripts.sync_user --user-id 1 --installation-id 12345678

Uses the user's stored installation id unless one is given. Runs through the
same checkpointed SyncRun path as the API, so an interrupted sync is resumed
by the scheduler on its next start.
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _sync_user(user_id: int, installation_id: Optional[str] = None) -> int:
    """Sync one user. Returns a process exit code."""
    from ghfolio.config import get_settings
    from ghfolio.db.engine import get_engine
    from ghfolio.github.client import GithubAppClient
    from ghfolio.github.sync_service import RepoSyncService
    from ghfolio.models.user import User
    from sqlmodel import Session

    settings = get_settings()
    engine = get_engine()

    with Session(engine) as s:
        user = s.get(User, user_id)
    if user is None:
        logger.error("User %s not found", user_id)
        return 1

    installation_id = installation_id or user.github_installation_id
    if not installation_id:
        logger.error("User %s has not installed the GitHub App", user_id)
        return 1

    async with GithubAppClient.from_settings(settings) as client:
        service = RepoSyncService(
            client=client,
            engine=engine,
            record_hard_failures=settings.sync_log_hard_failures,
        )
        run = service.create_run(user_id, installation_id)
        logger.info("Sync run %s started for user %s", run.id, user_id)
        result = await service.execute_run(run.id)

    logger.info(
        "Synced %d of %d repositories (%d errors)",
        result.synced, result.total, result.errors,
    )
    for detail in result.error_details or []:
        logger.warning("  %s", detail)
    return 0 if result.status == "success" else 2


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Sync a user's GitHub repositories")
    parser.add_argument("--user-id", type=int, required=True, help="Portfolio user id")
    parser.add_argument(
        "--installation-id",
        default=None,
        help="GitHub App installation id (default: the user's stored one)",
    )
    args = parser.parse_args(argv)
    sys.exit(asyncio.run(_sync_user(args.user_id, args.installation_id)))


if __name__ == "__main__":
    main()
