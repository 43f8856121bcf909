"""Sync run bookkeeping: summary log, run state and step checkpoints."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

RUN_STATES = ("pending", "listing", "syncing", "summarizing", "done", "failed")
TERMINAL_RUN_STATES = ("done", "failed")


class SyncLog(SQLModel, table=True):
    """One row per completed sync run. Never updated after insert."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    status: str  # "success", "partial", "error"
    repos_synced: int = 0
    errors: int = 0
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class SyncRun(SQLModel, table=True):
    """A requested sync and where it got to."""

    id: str = Field(primary_key=True)  # uuid4 hex
    user_id: int = Field(foreign_key="user.id", index=True)
    installation_id: str
    state: str = "pending"  # one of RUN_STATES
    error_message: Optional[str] = None
    # Executor currently holding the run; updated_at doubles as its heartbeat
    owner: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncStep(SQLModel, table=True):
    """Checkpointed result of one completed step of a SyncRun."""

    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_syncstep_run_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="syncrun.id", index=True)
    name: str
    result_json: Optional[str] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)
