"""
GitHub App authentication: app JWTs and installation access tokens.

A GitHub App proves its identity with a short-lived RS256 JWT signed by the
app's private key:

    {
        "iat": now - 60,   # backdated to tolerate clock drift with GitHub
        "exp": now + 600,  # GitHub rejects anything longer than 10 minutes
        "iss": app_id,
    }

The JWT is only ever used to call

    POST /app/installations/{installation_id}/access_tokens

which returns an installation token ({"token": ..., "expires_at": ...}) valid
for one hour and scoped to the repositories the user granted to the app.

Private keys usually arrive through environment variables and are frequently
mangled on the way (literal "\\n" instead of newlines, wrapped in quotes), so
the key is normalized before it reaches the JOSE backend.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from ghfolio.config import Settings
from ghfolio.github.exceptions import AuthError, ConfigurationError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

JWT_ALGORITHM = "RS256"
JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 600
GITHUB_ACCEPT = "application/vnd.github+json"
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_API_VERSION = "2022-11-28"

_PEM_MARKER = "-----BEGIN"


# ── Credentials ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AppCredentials:
    """App id + private key, loaded once at startup and never mutated."""

    app_id: str
    private_key: str

    def __post_init__(self):
        if not str(self.app_id or "").strip() or not str(self.private_key or "").strip():
            raise ConfigurationError("GitHub App credentials not configured")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppCredentials":
        return cls(
            app_id=settings.github_app_id.strip(),
            private_key=settings.github_app_private_key,
        )


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: Optional[datetime] = None


def normalize_private_key(raw: str) -> str:
    """
    Turn a private key as found in configuration into PEM text.

    Converts literal backslash-n sequences to newlines, strips one pair of
    surrounding quotes and whitespace. If what remains is not PEM but names an
    existing file, the key is read from that file.

    Raises:
        ConfigurationError: if nothing usable is left.
    """
    key = (raw or "").replace("\\n", "\n").strip()
    for quote in ('"', "'"):
        if len(key) >= 2 and key.startswith(quote) and key.endswith(quote):
            key = key[1:-1]
    key = key.strip()

    if key and _PEM_MARKER not in key:
        path = Path(key).expanduser()
        try:
            is_file = path.is_file()
        except OSError:
            # e.g. a headerless key too long to be a file name
            is_file = False
        if is_file:
            key = path.read_text().strip()

    if not key:
        raise ConfigurationError("GitHub App private key is empty")
    return key


# ── Signer ────────────────────────────────────────────────────────────────────

class AppJWTSigner:
    """
    Produces app JWTs for the token exchange.

    Usage:
        signer = AppJWTSigner(AppCredentials.from_settings(get_settings()))
        assertion = signer.sign()
    """

    def __init__(self, credentials: AppCredentials):
        self.app_id = credentials.app_id
        self._private_key = normalize_private_key(credentials.private_key)

    def sign(self, now: Optional[int] = None) -> str:
        """
        Return a signed JWT valid for ten minutes.

        Args:
            now: Unix timestamp to sign at. Defaults to the current time.

        Raises:
            ConfigurationError: if the private key cannot be used for RS256.
        """
        issued = int(time.time()) if now is None else int(now)
        payload = {
            "iat": issued - JWT_BACKDATE_SECONDS,
            "exp": issued + JWT_LIFETIME_SECONDS,
            "iss": self.app_id,
        }
        try:
            return jwt.encode(payload, self._private_key, algorithm=JWT_ALGORITHM)
        except JOSEError as exc:
            raise ConfigurationError(
                f"GitHub App private key could not be used to sign a JWT: {exc}"
            ) from exc


# ── Token broker ──────────────────────────────────────────────────────────────

class InstallationTokenBroker:
    """Exchanges app JWTs for installation access tokens. No retries, no caching."""

    def __init__(
        self,
        signer: AppJWTSigner,
        http: httpx.AsyncClient,
        api_url: str = DEFAULT_API_URL,
        api_version: str = DEFAULT_API_VERSION,
    ):
        self._signer = signer
        self._http = http
        self._api_url = api_url.rstrip("/")
        self._api_version = api_version

    async def get_token(self, installation_id: str) -> InstallationToken:
        """
        Request a fresh installation token.

        Raises:
            AuthError: on any non-2xx response (message includes the body),
                or if the response is not a JSON object carrying a token.
        """
        url = f"{self._api_url}/app/installations/{installation_id}/access_tokens"
        response = await self._http.post(
            url,
            headers={
                "Authorization": f"Bearer {self._signer.sign()}",
                "Accept": GITHUB_ACCEPT,
                "X-GitHub-Api-Version": self._api_version,
            },
        )
        if not response.is_success:
            raise AuthError(
                f"Failed to get installation token: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError(
                f"Unreadable installation token response: {exc}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise AuthError(
                f"Unexpected installation token response: {type(data).__name__}",
                status_code=response.status_code,
            )
        token = data.get("token")
        if not token:
            raise AuthError(
                "GitHub installation token response missing token",
                status_code=response.status_code,
            )
        return InstallationToken(token=token, expires_at=_parse_expiry(data.get("expires_at")))


def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError:
        logger.warning("Unparseable installation token expiry %r", raw)
        return None
