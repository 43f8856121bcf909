"""
Async GitHub REST client authenticated as a GitHub App installation.

Every call to fetch() asks the token provider for an installation token and
sends it with GitHub's accept and API-version headers. The default provider is
the InstallationTokenBroker itself, so each call costs one extra token
exchange; wrap it in CachingTokenProvider to reuse tokens until they are close
to expiry. Call sites are the same either way.

fetch() returns the raw httpx.Response. Callers decide what a non-2xx status
means for them.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from ghfolio.config import Settings
from ghfolio.github.auth import (
    DEFAULT_API_URL,
    DEFAULT_API_VERSION,
    GITHUB_ACCEPT,
    AppCredentials,
    AppJWTSigner,
    InstallationToken,
    InstallationTokenBroker,
)
from ghfolio.github.exceptions import ListingError
from ghfolio.models.remote import RemoteRepo

logger = logging.getLogger(__name__)

REPOS_PER_PAGE = 100


class TokenProvider(Protocol):
    async def get_token(self, installation_id: str) -> InstallationToken:
        ...


class CachingTokenProvider:
    """
    Reuses installation tokens per installation until they are within
    refresh_margin of expiry. Tokens without a known expiry are never reused.
    """

    def __init__(
        self,
        inner: TokenProvider,
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._inner = inner
        self._margin = refresh_margin
        self._clock = clock
        self._tokens: Dict[str, InstallationToken] = {}

    async def get_token(self, installation_id: str) -> InstallationToken:
        cached = self._tokens.get(installation_id)
        if cached and cached.expires_at and cached.expires_at - self._margin > self._clock():
            return cached

        token = await self._inner.get_token(installation_id)
        self._tokens[installation_id] = token
        return token


class GithubAppClient:
    """
    GitHub API access on behalf of one or more installations.

    Build with from_settings() for normal use; it owns its httpx client and
    should be used as an async context manager so the client gets closed:

        async with GithubAppClient.from_settings(get_settings()) as client:
            repos = await client.list_installation_repos(installation_id)
    """

    def __init__(
        self,
        tokens: TokenProvider,
        http: httpx.AsyncClient,
        api_url: str = DEFAULT_API_URL,
        api_version: str = DEFAULT_API_VERSION,
        owns_http: bool = False,
    ):
        self._tokens = tokens
        self._http = http
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self._owns_http = owns_http

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GithubAppClient":
        """
        Wire signer, broker and (optionally) token cache from settings.

        Raises:
            ConfigurationError: if the app id or private key is missing.
        """
        signer = AppJWTSigner(AppCredentials.from_settings(settings))
        http = httpx.AsyncClient(
            timeout=settings.github_http_timeout_seconds,
            transport=transport,
        )
        tokens: TokenProvider = InstallationTokenBroker(
            signer,
            http,
            api_url=settings.github_api_url,
            api_version=settings.github_api_version,
        )
        if settings.github_cache_tokens:
            tokens = CachingTokenProvider(tokens)
        return cls(
            tokens,
            http,
            api_url=settings.github_api_url,
            api_version=settings.github_api_version,
            owns_http=True,
        )

    async def __aenter__(self) -> "GithubAppClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── Authenticated fetch ───────────────────────────────────────────────────

    async def fetch(
        self,
        installation_id: str,
        url: str,
        *,
        method: str = "GET",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request with a fresh installation token.

        Raises:
            AuthError: if the token exchange fails.
            httpx.HTTPError: on transport failures (timeouts, connection errors).
        """
        token = await self._tokens.get_token(installation_id)
        merged = dict(headers or {})
        merged.update({
            "Authorization": f"Bearer {token.token}",
            "Accept": GITHUB_ACCEPT,
            "X-GitHub-Api-Version": self.api_version,
        })
        return await self._http.request(method, url, json=json, headers=merged)

    # ── Repositories ──────────────────────────────────────────────────────────

    async def list_installation_repos(self, installation_id: str) -> List[RemoteRepo]:
        """
        Return every repository the installation can see.

        Walks GET /installation/repositories page by page (100 per page) until
        a page comes back empty or short.

        Raises:
            ListingError: if any page fails; nothing from earlier pages is kept.
            AuthError: if the token exchange fails.
        """
        repos: List[RemoteRepo] = []
        page = 1
        logger.info("Fetching repos for installation %s", installation_id)

        while True:
            url = (
                f"{self.api_url}/installation/repositories"
                f"?per_page={REPOS_PER_PAGE}&page={page}"
            )
            try:
                response = await self.fetch(installation_id, url)
            except httpx.HTTPError as exc:
                raise ListingError(
                    f"Failed to fetch installation repositories (page {page}): {exc}"
                ) from exc

            if not response.is_success:
                logger.error(
                    "Failed to fetch repos page %d: %s", page, response.text
                )
                raise ListingError(
                    f"Failed to fetch installation repositories: {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as exc:
                raise ListingError(
                    f"Unreadable repositories page {page}: {exc}"
                ) from exc
            if not isinstance(data, dict):
                raise ListingError(
                    f"Unexpected repositories page {page}: {type(data).__name__}"
                )
            batch = data.get("repositories") or []
            logger.debug(
                "Page %d: %d repos (total available: %s)",
                page, len(batch), data.get("total_count", "unknown"),
            )
            if not batch:
                break

            try:
                repos.extend(RemoteRepo(**raw) for raw in batch)
            except ValidationError as exc:
                raise ListingError(
                    f"Malformed repository record on page {page}: {exc}"
                ) from exc

            if len(batch) < REPOS_PER_PAGE:
                break
            page += 1

        logger.info("Installation %s: %d repos fetched", installation_id, len(repos))
        return repos
