"""
RepoSyncService: mirrors an installation's repositories into the database.

Flow for one sync run (each numbered item is a named step):
  1. fetch-repos            list every repository visible to the installation
  2. sync-<name>, per repo  fetch languages + commit count, upsert Repo row
  3. update-sync-timestamp  User.last_synced_at = now (even if every repo failed)
  4. log-sync-activity      append SyncLog (success / partial / error)

Repositories are processed one at a time, in the order GitHub lists them.

Failure policy:
  - enrichment failures are soft: the repo is stored without languages / with
    0 commits (see RepoEnricher)
  - an exception while syncing one repo is counted and the run moves on
  - anything else (token exchange, listing, timestamp, log write) aborts the
    run. No SyncLog is written in that case unless record_hard_failures is
    set, so a status poller keeps seeing "processing".

Recorded runs: execute_run() first claims the SyncRun for this service
instance (SyncRun.owner). A run can only be claimed while unowned or once its
owner has stopped refreshing updated_at for stale_after. Every state change
refreshes updated_at and fails with SyncError if the claim was lost, and the
SyncLog row is committed in the same transaction as its step checkpoint, so a
run writes one SyncLog no matter how many workers try to execute it.

Idempotency: Repo rows are keyed on (user_id, name). Re-syncing overwrites
the GitHub-derived columns and leaves portfolio settings (visibility, pins,
views) alone. Two runs for the same user racing on one repository resolve to
last writer wins; there is no per-user lock.
"""
import functools
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ghfolio.github.enricher import RepoEnricher
from ghfolio.github.exceptions import SyncError
from ghfolio.models.remote import RemoteRepo, RepoEnrichment, SyncResult
from ghfolio.models.repo import Repo
from ghfolio.models.sync import RUN_STATES, TERMINAL_RUN_STATES, SyncLog, SyncRun
from ghfolio.models.user import User
from ghfolio.steps import DatabaseStepRunner, StepRunner

logger = logging.getLogger(__name__)

RUN_STALE_AFTER = timedelta(minutes=10)


class RepoSyncService:
    """Orchestrates GitHub → DB repository sync for one user at a time."""

    def __init__(
        self,
        client,
        engine,
        enricher: Optional[RepoEnricher] = None,
        record_hard_failures: bool = False,
        stale_after: timedelta = RUN_STALE_AFTER,
    ):
        """
        Args:
            client: GithubAppClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            enricher: Defaults to a RepoEnricher over the same client.
            record_hard_failures: Write an "error" SyncLog before re-raising
                when a run aborts.
            stale_after: How long a claimed run may go without a state update
                before another worker may take it over.
        """
        self.client = client
        self.engine = engine
        self.enricher = enricher or RepoEnricher(client)
        self.record_hard_failures = record_hard_failures
        self.stale_after = stale_after
        self.executor_id = uuid.uuid4().hex

    # ─── Runs ─────────────────────────────────────────────────────────────────

    def create_run(self, user_id: int, installation_id: str) -> SyncRun:
        """Record a pending run. execute_run() does the work."""
        run = SyncRun(
            id=uuid.uuid4().hex,
            user_id=user_id,
            installation_id=str(installation_id),
        )
        with Session(self.engine) as s:
            s.add(run)
            s.commit()
            s.refresh(run)
        return run

    async def execute_run(self, run_id: str) -> SyncResult:
        """
        Claim and execute (or resume) a recorded run with checkpointed steps.

        Steps a previous attempt already completed are not repeated.

        Raises:
            SyncError: if the run does not exist, already finished, or is
                held by another live executor.
            AuthError / ListingError: see sync_installation().
        """
        with Session(self.engine) as s:
            run = s.get(SyncRun, run_id)
        if run is None:
            raise SyncError(f"Unknown sync run {run_id}")
        if run.state in TERMINAL_RUN_STATES:
            raise SyncError(f"Sync run {run_id} already {run.state}")
        if not self._claim_run(run_id):
            raise SyncError(f"Sync run {run_id} is being executed by another worker")

        steps = DatabaseStepRunner(self.engine, run_id)
        return await self.sync_installation(
            run.user_id, run.installation_id, steps=steps, run_id=run_id
        )

    def interrupted_run_ids(self) -> List[str]:
        """Ids of unfinished runs nobody has touched for stale_after, oldest first."""
        cutoff = datetime.utcnow() - self.stale_after
        with Session(self.engine) as s:
            runs = s.exec(
                select(SyncRun)
                .where(
                    col(SyncRun.state).not_in(TERMINAL_RUN_STATES),
                    col(SyncRun.updated_at) < cutoff,
                )
                .order_by(SyncRun.created_at)
            ).all()
        return [r.id for r in runs]

    async def sync_installation(
        self,
        user_id: int,
        installation_id: str,
        *,
        steps: Optional[StepRunner] = None,
        run_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Sync every repository of one installation into the user's portfolio.

        Args:
            user_id: Owner of the Repo rows.
            installation_id: GitHub App installation to read from.
            steps: Step runner; a fresh in-memory one if omitted.
            run_id: SyncRun claimed by this service, moved through its states.

        Returns:
            SyncResult with per-repo error details (None when nothing failed).

        Raises:
            AuthError: if no installation token could be obtained.
            ListingError: if the repository list could not be fetched.
            SyncError: if another worker took over the run.
        """
        steps = steps or StepRunner()
        try:
            self._advance(run_id, "listing")
            raw_repos = await steps.run(
                "fetch-repos", functools.partial(self._fetch_repos, installation_id)
            )
            repos = [RemoteRepo(**raw) for raw in raw_repos]

            self._advance(run_id, "syncing")
            synced = 0
            errors: List[str] = []
            for repo in repos:
                try:
                    await steps.run(
                        f"sync-{repo.name}",
                        functools.partial(self._sync_repo, user_id, installation_id, repo),
                    )
                    synced += 1
                    logger.info("Synced %s (%d/%d)", repo.name, synced, len(repos))
                except Exception as exc:
                    errors.append(f"{repo.name}: {exc}")
                    logger.exception("Failed to sync %s", repo.name)
                # Heartbeat
                self._advance(run_id, "syncing")

            result = SyncResult(
                synced=synced,
                errors=len(errors),
                total=len(repos),
                error_details=errors or None,
            )

            self._advance(run_id, "summarizing")
            await steps.run(
                "update-sync-timestamp", functools.partial(self._touch_last_synced, user_id)
            )
            steps.run_in_session(
                self.engine,
                "log-sync-activity",
                functools.partial(self._add_sync_log, user_id, result),
            )
            self._advance(run_id, "done")

        except Exception as exc:
            owned = self._set_run_state(run_id, "failed", error_message=str(exc))
            if (
                self.record_hard_failures
                and owned
                and "log-sync-activity" not in steps.completed()
            ):
                self._insert_sync_log(
                    user_id, status="error", message=f"Sync failed: {exc}"
                )
            raise

        logger.info(
            "Sync complete for user %s: %d synced, %d errors",
            user_id, result.synced, result.errors,
        )
        return result

    # ─── Reconciliation ───────────────────────────────────────────────────────

    def upsert_repo(
        self, user_id: int, repo: RemoteRepo, enrichment: RepoEnrichment
    ) -> int:
        """
        Create or overwrite the Repo row for (user_id, repo.name).

        New rows start visible only when the source repository is public, and
        unpinned. Returns the row id.
        """
        fields = {
            "description": repo.description,
            "stars": repo.stargazers_count,
            "commits": enrichment.commits,
            "last_pushed": repo.pushed_at,
            "url": repo.html_url,
            "language": repo.language,
            "languages": enrichment.languages,
            "is_private": repo.private,
            "is_fork": repo.fork,
        }

        with Session(self.engine) as s:
            existing = self._find_repo(s, user_id, repo.name)
            if existing:
                return self._update_repo(s, existing, fields)

            row = Repo(
                user_id=user_id,
                name=repo.name,
                is_visible=not repo.private,
                is_pinned=False,
                **fields,
            )
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                # Created by a concurrent run between our select and insert
                s.rollback()
                existing = self._find_repo(s, user_id, repo.name)
                if existing is None:
                    raise
                return self._update_repo(s, existing, fields)
            s.refresh(row)
            return row.id

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _fetch_repos(self, installation_id: str) -> List[Dict[str, Any]]:
        repos = await self.client.list_installation_repos(installation_id)
        logger.info("Found %d repositories", len(repos))
        # Plain dicts so the step result can be checkpointed as JSON
        return [r.model_dump(mode="json") for r in repos]

    async def _sync_repo(
        self, user_id: int, installation_id: str, repo: RemoteRepo
    ) -> Dict[str, Any]:
        enrichment = await self.enricher.enrich(installation_id, repo)
        repo_id = self.upsert_repo(user_id, repo, enrichment)
        return {"repo_id": repo_id, "commits": enrichment.commits}

    @staticmethod
    def _find_repo(s: Session, user_id: int, name: str) -> Optional[Repo]:
        return s.exec(
            select(Repo).where(Repo.user_id == user_id, Repo.name == name)
        ).first()

    @staticmethod
    def _update_repo(s: Session, row: Repo, fields: Dict[str, Any]) -> int:
        for k, v in fields.items():
            setattr(row, k, v)
        row.synced_at = datetime.utcnow()
        s.add(row)
        s.commit()
        s.refresh(row)
        return row.id

    async def _touch_last_synced(self, user_id: int) -> str:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            user = s.get(User, user_id)
            if user is None:
                raise SyncError(f"User {user_id} not found")
            user.last_synced_at = now
            s.add(user)
            s.commit()
        return now.isoformat()

    @staticmethod
    def _add_sync_log(user_id: int, result: SyncResult, s: Session) -> int:
        """Stage the summary SyncLog in the step's session. Committed by the runner."""
        log = _new_sync_log(
            user_id,
            status=result.status,
            repos_synced=result.synced,
            errors=result.errors,
            message=f"Synced {result.synced} of {result.total} repositories",
        )
        s.add(log)
        s.flush()
        return log.id

    def _insert_sync_log(self, user_id: int, **fields) -> int:
        log = _new_sync_log(user_id, **fields)
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log.id

    def _claim_run(self, run_id: str) -> bool:
        """Take ownership of a run that is unowned, already ours, or stale."""
        now = datetime.utcnow()
        stmt = (
            update(SyncRun)
            .where(
                col(SyncRun.id) == run_id,
                col(SyncRun.state).not_in(TERMINAL_RUN_STATES),
                or_(
                    col(SyncRun.owner).is_(None),
                    col(SyncRun.owner) == self.executor_id,
                    col(SyncRun.updated_at) < now - self.stale_after,
                ),
            )
            .values(owner=self.executor_id, updated_at=now)
        )
        with Session(self.engine) as s:
            claimed = s.connection().execute(stmt).rowcount == 1
            s.commit()
        if claimed:
            logger.info("Run %s claimed by executor %s", run_id, self.executor_id)
        return claimed

    def _set_run_state(
        self, run_id: Optional[str], state: str, error_message: Optional[str] = None
    ) -> bool:
        """
        Move a run we own to `state` and refresh its heartbeat.

        Returns False if the run is not (or no longer) ours. Without a run_id
        there is nothing to record and the call counts as owned.
        """
        if state not in RUN_STATES:
            raise ValueError(f"Unknown sync run state {state!r}")
        if run_id is None:
            return True
        stmt = (
            update(SyncRun)
            .where(col(SyncRun.id) == run_id, col(SyncRun.owner) == self.executor_id)
            .values(state=state, error_message=error_message, updated_at=datetime.utcnow())
        )
        with Session(self.engine) as s:
            updated = s.connection().execute(stmt).rowcount == 1
            s.commit()
        return updated

    def _advance(self, run_id: Optional[str], state: str) -> None:
        if not self._set_run_state(run_id, state):
            raise SyncError(f"Sync run {run_id} was taken over by another worker")


def _new_sync_log(
    user_id: int,
    *,
    status: str,
    repos_synced: int = 0,
    errors: int = 0,
    message: Optional[str] = None,
) -> SyncLog:
    return SyncLog(
        user_id=user_id,
        status=status,
        repos_synced=repos_synced,
        errors=errors,
        message=message,
        created_at=datetime.utcnow(),
    )
