"""Persisted repositories shown on a user's portfolio page."""
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class Repo(SQLModel, table=True):
    """
    One row per (user, repository name). Created by the first sync that sees
    the repository, overwritten by every later sync, never deleted by sync.
    """

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_repo_user_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str

    description: Optional[str] = None
    stars: int = 0
    commits: int = 0
    last_pushed: Optional[datetime] = None
    url: str = ""
    language: Optional[str] = None  # primary language as reported by GitHub
    languages: Optional[Dict[str, int]] = Field(default=None, sa_column=Column(JSON))  # language -> bytes

    is_private: bool = False
    is_fork: bool = False

    # Portfolio presentation, owned by the user after creation
    is_visible: bool = True
    is_pinned: bool = False
    pin_order: Optional[int] = None
    views: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    synced_at: datetime = Field(default_factory=datetime.utcnow)
