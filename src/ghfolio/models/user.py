"""Portfolio owner."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    github_handle: Optional[str] = Field(default=None, unique=True, index=True)
    # Set when the user installs the GitHub App; None means nothing to sync
    github_installation_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
