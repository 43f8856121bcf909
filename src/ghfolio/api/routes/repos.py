"""Repository query routes."""
from typing import List

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ghfolio.db.engine import get_session
from ghfolio.models.repo import Repo

router = APIRouter()


@router.get("/", response_model=List[Repo])
def list_repos(
    user_id: int,
    include_hidden: bool = False,
    session: Session = Depends(get_session),
):
    """A user's repositories: pinned first (by pin order), then most recently pushed."""
    query = select(Repo).where(Repo.user_id == user_id)
    if not include_hidden:
        query = query.where(Repo.is_visible == True)  # noqa: E712
    repos = session.exec(query).all()
    return sorted(
        repos,
        key=lambda r: (
            not r.is_pinned,
            r.pin_order if r.pin_order is not None else float("inf"),
            -(r.last_pushed.timestamp() if r.last_pushed else float("-inf")),
        ),
    )
