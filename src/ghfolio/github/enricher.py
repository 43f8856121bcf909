"""
Per-repository enrichment: language breakdown and total commit count.

Commit counting uses GitHub's pagination instead of downloading history. The
commits endpoint is requested with per_page=1, so every page holds exactly one
commit and the page number of the rel="last" link in the Link header equals
the number of commits:

    Link: <https://api.github.com/repositories/1/commits?per_page=1&page=2>; rel="next",
          <https://api.github.com/repositories/1/commits?per_page=1&page=7>; rel="last"

    -> 7 commits, one API call.

When there is only one page GitHub sends no "last" link (or no Link header at
all) and the commits in the body are counted instead.

Both lookups are best effort. A failure leaves languages as None or commits as
0 and is logged; enrich() itself never raises.
"""
import logging
from typing import Dict, Optional
from urllib.parse import parse_qs, urlparse

from ghfolio.github.client import GithubAppClient
from ghfolio.models.remote import RemoteRepo, RepoEnrichment

logger = logging.getLogger(__name__)


def parse_last_page(link_header: Optional[str]) -> Optional[int]:
    """Return the page number of the rel="last" link, or None if there is none."""
    if not link_header:
        return None
    for part in link_header.split(","):
        segments = part.split(";")
        target = segments[0].strip()
        rels = {
            seg.strip().replace(" ", "")
            for seg in segments[1:]
        }
        if 'rel="last"' not in rels:
            continue
        if not (target.startswith("<") and target.endswith(">")):
            return None
        pages = parse_qs(urlparse(target[1:-1]).query).get("page")
        if pages and pages[0].isdigit():
            return int(pages[0])
        return None
    return None


class RepoEnricher:
    """Fetches derived metadata for one repository at a time."""

    def __init__(self, client: GithubAppClient):
        self.client = client

    async def enrich(self, installation_id: str, repo: RemoteRepo) -> RepoEnrichment:
        languages = await self._fetch_languages(installation_id, repo)
        commits = await self._fetch_commit_count(installation_id, repo)
        return RepoEnrichment(languages=languages, commits=commits)

    async def _fetch_languages(
        self, installation_id: str, repo: RemoteRepo
    ) -> Optional[Dict[str, int]]:
        if not repo.languages_url:
            return None
        try:
            response = await self.client.fetch(installation_id, repo.languages_url)
            if not response.is_success:
                logger.warning(
                    "Languages for %s unavailable: HTTP %d",
                    repo.full_name, response.status_code,
                )
                return None
            data = response.json()
        except Exception as exc:
            logger.warning("Failed to fetch languages for %s: %s", repo.full_name, exc)
            return None

        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, int) and not isinstance(v, bool)
            for k, v in data.items()
        ):
            logger.warning("Unexpected languages payload for %s", repo.full_name)
            return None
        return data

    async def _fetch_commit_count(self, installation_id: str, repo: RemoteRepo) -> int:
        url = f"{self.client.api_url}/repos/{repo.full_name}/commits?per_page=1"
        try:
            response = await self.client.fetch(installation_id, url)
            if not response.is_success:
                # 409 for an empty repository
                logger.warning(
                    "Commits for %s unavailable: HTTP %d",
                    repo.full_name, response.status_code,
                )
                return 0

            last_page = parse_last_page(response.headers.get("Link"))
            if last_page is not None:
                return last_page

            data = response.json()
            return len(data) if isinstance(data, list) else 0
        except Exception as exc:
            logger.warning("Failed to fetch commits for %s: %s", repo.full_name, exc)
            return 0
