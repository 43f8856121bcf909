"""Value types passed between the GitHub client, enricher and sync service."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, field_validator


class RemoteRepo(BaseModel):
    """One item of GET /installation/repositories, validated on construction.

    Unknown keys from GitHub's payload are ignored.
    """

    name: str
    full_name: str
    description: Optional[str] = None
    stargazers_count: int = 0
    pushed_at: Optional[datetime] = None
    html_url: str
    language: Optional[str] = None
    languages_url: Optional[str] = None
    private: bool = False
    fork: bool = False

    class Config:
        extra = "ignore"
        frozen = True

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("repository name is empty")
        return v

    @field_validator("full_name")
    @classmethod
    def _full_name_has_owner(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(f"full_name {v!r} is not owner/repo")
        return v

    @field_validator("stargazers_count", mode="before")
    @classmethod
    def _stars_default(cls, v):
        return 0 if v is None else v

    @field_validator("stargazers_count")
    @classmethod
    def _stars_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("stargazers_count is negative")
        return v

    @field_validator("private", "fork", mode="before")
    @classmethod
    def _flag_default(cls, v):
        return False if v is None else v

    @field_validator("pushed_at")
    @classmethod
    def _pushed_at_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # DB timestamps are naive UTC throughout
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


@dataclass(frozen=True)
class RepoEnrichment:
    languages: Optional[Dict[str, int]] = None
    commits: int = 0


@dataclass
class SyncResult:
    synced: int
    errors: int
    total: int
    error_details: Optional[List[str]] = field(default=None)

    @property
    def status(self) -> str:
        """SyncLog status: success, partial (some failed) or error (all failed)."""
        if self.errors == 0:
            return "success"
        if self.errors < self.total:
            return "partial"
        return "error"
