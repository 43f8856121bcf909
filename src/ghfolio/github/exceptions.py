"""Errors raised by the GitHub App integration and the repo sync pipeline."""
from typing import Optional


class GithubError(Exception):
    pass


class ConfigurationError(GithubError):
    """App id or private key missing or unusable."""


class AuthError(GithubError):
    """GitHub rejected the installation token exchange."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncError(GithubError):
    pass


class ListingError(SyncError):
    """Installation repositories could not be enumerated."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
