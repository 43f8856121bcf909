"""
Step execution for sync runs.

A sync run is a sequence of named steps. A runner executes each step at most
once per run: completed results are memoized and returned on repeat calls, so
a run that is executed again after a crash resumes instead of repeating the
work. A step that raises is not recorded and will run again next time.

StepRunner keeps results in memory (one process, one run instance).
DatabaseStepRunner checkpoints them in the SyncStep table, so a new runner for
the same run id picks up where the previous process stopped. Results must be
JSON-serialisable.

Steps whose whole effect is a database write can use run_in_session(): the
write and the checkpoint are committed together, so a step that two executors
race on takes effect exactly once.
"""
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from ghfolio.models.sync import SyncStep

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[Any]]
SessionStepFn = Callable[[Session], Any]


class StepRunner:
    """In-memory step memoization."""

    def __init__(self):
        self._results: Dict[str, Any] = {}

    async def run(self, name: str, fn: StepFn) -> Any:
        if name in self._results:
            logger.debug("Step %s already completed, reusing result", name)
            return self._results[name]
        result = await fn()
        self._record(name, result)
        return result

    def run_in_session(self, engine, name: str, fn: SessionStepFn) -> Any:
        """Run fn(session) and commit its writes as one step."""
        if name in self._results:
            return self._results[name]
        with Session(engine) as s:
            result = fn(s)
            s.commit()
        self._results[name] = result
        return result

    def completed(self) -> List[str]:
        """Names of completed steps, in completion order."""
        return list(self._results)

    def _record(self, name: str, result: Any) -> None:
        self._results[name] = result


class DatabaseStepRunner(StepRunner):
    """Step memoization checkpointed to the SyncStep table."""

    def __init__(self, engine, run_id: str):
        super().__init__()
        self.engine = engine
        self.run_id = run_id
        with Session(engine) as s:
            rows = s.exec(
                select(SyncStep)
                .where(SyncStep.run_id == run_id)
                .order_by(SyncStep.id)
            ).all()
        for row in rows:
            self._results[row.name] = _load(row)
        if rows:
            logger.info("Run %s: resuming with %d completed steps", run_id, len(rows))

    def run_in_session(self, engine, name: str, fn: SessionStepFn) -> Any:
        """
        Run fn(session) and commit its writes together with the checkpoint.

        If another executor checkpointed the step first, the unique
        (run_id, name) constraint fails, fn's writes are rolled back and the
        stored result is returned instead.
        """
        if name in self._results:
            return self._results[name]
        with Session(engine) as s:
            result = fn(s)
            s.add(self._step(name, result))
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.warning(
                    "Run %s: step %s was already completed elsewhere, discarding", self.run_id, name
                )
                row = s.exec(
                    select(SyncStep).where(SyncStep.run_id == self.run_id, SyncStep.name == name)
                ).one()
                result = _load(row)
        self._results[name] = result
        return result

    def _record(self, name: str, result: Any) -> None:
        with Session(self.engine) as s:
            s.add(self._step(name, result))
            try:
                s.commit()
            except IntegrityError:
                # Another executor of the same run checkpointed this step first
                s.rollback()
                logger.warning("Run %s: step %s was already checkpointed", self.run_id, name)
        super()._record(name, result)

    def _step(self, name: str, result: Any) -> SyncStep:
        return SyncStep(
            run_id=self.run_id,
            name=name,
            result_json=json.dumps(result),
            completed_at=datetime.utcnow(),
        )


def _load(row: SyncStep) -> Any:
    return json.loads(row.result_json) if row.result_json is not None else None
