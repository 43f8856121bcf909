"""Tests for step memoization, in memory and checkpointed to the DB."""
import json

import pytest
from sqlmodel import Session, select

from ghfolio.models.sync import SyncLog, SyncRun, SyncStep
from ghfolio.steps import DatabaseStepRunner, StepRunner


class Counter:
    """Async step body that counts its invocations."""

    def __init__(self, result=None):
        self.calls = 0
        self.result = result

    async def __call__(self):
        self.calls += 1
        return self.result


@pytest.fixture(name="run_id")
def run_id_fixture(test_session: Session, seeded_user) -> str:
    run = SyncRun(id="run-abc", user_id=seeded_user.id, installation_id="424242")
    test_session.add(run)
    test_session.commit()
    return run.id


class TestStepRunner:
    async def test_runs_step_and_returns_result(self):
        step = Counter({"repo_id": 1})
        assert await StepRunner().run("sync-hello", step) == {"repo_id": 1}
        assert step.calls == 1

    async def test_completed_step_not_repeated(self):
        runner = StepRunner()
        step = Counter([1, 2, 3])
        first = await runner.run("fetch-repos", step)
        second = await runner.run("fetch-repos", step)
        assert first == second == [1, 2, 3]
        assert step.calls == 1

    async def test_failed_step_not_memoized(self):
        runner = StepRunner()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return "ok"

        with pytest.raises(RuntimeError):
            await runner.run("sync-hello", flaky)
        assert await runner.run("sync-hello", flaky) == "ok"
        assert len(calls) == 2
        assert runner.completed() == ["sync-hello"]

    async def test_completed_in_order(self):
        runner = StepRunner()
        await runner.run("fetch-repos", Counter())
        await runner.run("sync-a", Counter())
        await runner.run("sync-b", Counter())
        assert runner.completed() == ["fetch-repos", "sync-a", "sync-b"]


class TestDatabaseStepRunner:
    async def test_checkpoints_result_as_json(self, engine, run_id):
        runner = DatabaseStepRunner(engine, run_id)
        await runner.run("sync-hello", Counter({"repo_id": 7, "commits": 3}))

        with Session(engine) as s:
            step = s.exec(select(SyncStep)).one()
        assert step.run_id == run_id
        assert step.name == "sync-hello"
        assert step.result_json == '{"repo_id": 7, "commits": 3}'

    async def test_new_runner_resumes_completed_steps(self, engine, run_id):
        first = DatabaseStepRunner(engine, run_id)
        await first.run("fetch-repos", Counter([{"name": "hello"}]))

        step = Counter("should not run")
        resumed = DatabaseStepRunner(engine, run_id)
        result = await resumed.run("fetch-repos", step)

        assert result == [{"name": "hello"}]
        assert step.calls == 0
        assert resumed.completed() == ["fetch-repos"]

    async def test_failed_step_not_checkpointed(self, engine, run_id):
        async def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await DatabaseStepRunner(engine, run_id).run("sync-hello", boom)

        with Session(engine) as s:
            assert s.exec(select(SyncStep)).all() == []

    async def test_none_result_still_counts_as_completed(self, engine, run_id):
        await DatabaseStepRunner(engine, run_id).run("update-sync-timestamp", Counter(None))

        step = Counter("again")
        result = await DatabaseStepRunner(engine, run_id).run("update-sync-timestamp", step)
        assert result is None
        assert step.calls == 0

    async def test_steps_scoped_to_run(self, engine, run_id, test_session, seeded_user):
        test_session.add(SyncRun(id="run-other", user_id=seeded_user.id, installation_id="1"))
        test_session.commit()
        await DatabaseStepRunner(engine, run_id).run("fetch-repos", Counter([]))

        other = DatabaseStepRunner(engine, "run-other")
        assert other.completed() == []

    async def test_duplicate_checkpoint_tolerated(self, engine, run_id):
        """Two executors of one run both finishing a step keep the first row."""
        a = DatabaseStepRunner(engine, run_id)
        b = DatabaseStepRunner(engine, run_id)
        await a.run("sync-hello", Counter({"repo_id": 1}))
        assert await b.run("sync-hello", Counter({"repo_id": 1})) == {"repo_id": 1}

        with Session(engine) as s:
            assert len(s.exec(select(SyncStep)).all()) == 1


def write_log(message):
    """Session step body staging one SyncLog."""

    def fn(s: Session):
        log = SyncLog(user_id=1, status="success", message=message)
        s.add(log)
        s.flush()
        return log.id

    return fn


def _log_messages(engine):
    with Session(engine) as s:
        return [log.message for log in s.exec(select(SyncLog).order_by(SyncLog.id)).all()]


class TestRunInSession:
    def test_in_memory_runner_commits_once(self, engine):
        runner = StepRunner()
        first = runner.run_in_session(engine, "log-sync-activity", write_log("first"))
        second = runner.run_in_session(engine, "log-sync-activity", write_log("second"))

        assert first == second
        assert runner.completed() == ["log-sync-activity"]
        assert _log_messages(engine) == ["first"]

    def test_write_and_checkpoint_committed_together(self, engine, run_id):
        runner = DatabaseStepRunner(engine, run_id)
        log_id = runner.run_in_session(engine, "log-sync-activity", write_log("done"))

        with Session(engine) as s:
            step = s.exec(select(SyncStep)).one()
        assert step.name == "log-sync-activity"
        assert json.loads(step.result_json) == log_id
        assert _log_messages(engine) == ["done"]

    def test_losing_executor_rolls_back_its_write(self, engine, run_id):
        """Both runners loaded before either finished the step: one log survives."""
        a = DatabaseStepRunner(engine, run_id)
        b = DatabaseStepRunner(engine, run_id)

        a_id = a.run_in_session(engine, "log-sync-activity", write_log("from a"))
        b_id = b.run_in_session(engine, "log-sync-activity", write_log("from b"))

        assert a_id == b_id
        assert b.completed() == ["log-sync-activity"]
        assert _log_messages(engine) == ["from a"]
        with Session(engine) as s:
            assert len(s.exec(select(SyncStep)).all()) == 1

    def test_failing_body_writes_nothing(self, engine, run_id):
        def boom(s: Session):
            s.add(SyncLog(user_id=1, status="success"))
            s.flush()
            raise RuntimeError("boom")

        runner = DatabaseStepRunner(engine, run_id)
        with pytest.raises(RuntimeError):
            runner.run_in_session(engine, "log-sync-activity", boom)

        assert runner.completed() == []
        assert _log_messages(engine) == []
        with Session(engine) as s:
            assert s.exec(select(SyncStep)).all() == []

    def test_resumed_runner_skips_completed_step(self, engine, run_id):
        DatabaseStepRunner(engine, run_id).run_in_session(
            engine, "log-sync-activity", write_log("first")
        )
        DatabaseStepRunner(engine, run_id).run_in_session(
            engine, "log-sync-activity", write_log("second")
        )
        assert _log_messages(engine) == ["first"]
