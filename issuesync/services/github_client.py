"""GitHub API client wrapper"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from github import Auth, Github, GithubException
from github.GithubException import RateLimitExceededException
from requests.utils import parse_header_links

from issuesync.errors import (
    AuthenticationFailure,
    ConfigurationError,
    IssueSyncError,
    PermissionDenied,
    RateLimitExceeded,
    TransientNetworkFailure,
)

logger = logging.getLogger(__name__)

TOKEN_EXPIRATION_HEADER = "github-authentication-token-expiration"


@dataclass
class PageRequest:
    """Where to fetch a page from: a path plus params, or an absolute next-link"""

    url: str
    params: Optional[Dict[str, Any]] = None
    page: int = 1


@dataclass
class IssuePage:
    """One page of raw issue payloads and the headers it came with"""

    items: List[Dict[str, Any]]
    headers: Dict[str, str] = field(default_factory=dict)
    page: int = 1
    next_request: Optional[PageRequest] = None

    @property
    def token_expiration(self) -> Optional[str]:
        return self.headers.get(TOKEN_EXPIRATION_HEADER)

    @property
    def rate_limit_remaining(self) -> Optional[int]:
        value = self.headers.get("x-ratelimit-remaining")
        return int(value) if value not in (None, "") else None


def _lower_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def _reset_time(headers: Dict[str, str]) -> Optional[datetime]:
    raw = headers.get("x-ratelimit-reset")
    if raw:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc).replace(tzinfo=None)
        except (TypeError, ValueError):
            return None
    return None


def format_since(since: datetime) -> str:
    """ISO8601 UTC timestamp accepted by the `since` parameter."""
    if since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    return since.strftime("%Y-%m-%dT%H:%M:%SZ")


def classify_github_error(exc: Exception) -> IssueSyncError:
    """Map a PyGithub/requests failure onto the engine's error taxonomy."""
    if isinstance(exc, IssueSyncError):
        return exc

    if isinstance(exc, GithubException):
        status = exc.status
        headers = _lower_headers(exc.headers)

        if status == 401:
            expiration = headers.get(TOKEN_EXPIRATION_HEADER)
            return AuthenticationFailure(
                "GitHub API authentication failed (401). The token is invalid, expired "
                "or revoked; generate a new one.",
                token_expiration=expiration,
            )

        rate_limited = (
            isinstance(exc, RateLimitExceededException)
            or headers.get("x-ratelimit-remaining") == "0"
            or status == 429
        )
        if status in (403, 429) and rate_limited:
            reset_at = _reset_time(headers)
            when = f" The limit resets at {reset_at.isoformat()}Z." if reset_at else ""
            return RateLimitExceeded(
                f"GitHub API rate limit exceeded ({status}).{when}",
                reset_at=reset_at,
            )

        if status == 403:
            return PermissionDenied(
                "GitHub API permission denied (403). The token is valid but lacks the "
                "scopes required for this repository."
            )

        return TransientNetworkFailure(
            f"Unexpected GitHub API error. Status: {status}, Message: {exc}",
            status=status,
        )

    if isinstance(exc, requests.exceptions.Timeout):
        return TransientNetworkFailure(f"GitHub API request timed out: {exc}")

    if isinstance(exc, requests.exceptions.RequestException):
        return TransientNetworkFailure(f"GitHub API transport error: {exc}")

    return TransientNetworkFailure(f"Unexpected error talking to GitHub: {exc}")


class GitHubClient:
    """Wrapper for the GitHub issue-list endpoint"""

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        app_id: Optional[int] = None,
        private_key: Optional[str] = None,
        installation_id: Optional[int] = None,
        base_url: str = "https://api.github.com",
        timeout: int = 30,
    ):
        """Initialize GitHub client (PAT, or GitHub App installation auth)"""
        self.base_url = base_url.rstrip("/")
        auth = self._build_auth(
            token=token, app_id=app_id, private_key=private_key, installation_id=installation_id
        )
        # Retries are the caller's/scheduler's decision, never the client's.
        self.gh = Github(auth=auth, base_url=self.base_url, timeout=timeout, retry=None)

    @staticmethod
    def _build_auth(
        *,
        token: Optional[str],
        app_id: Optional[int],
        private_key: Optional[str],
        installation_id: Optional[int],
    ):
        if token:
            return Auth.Token(token)
        if app_id and private_key and installation_id:
            return Auth.AppAuth(app_id, private_key).get_installation_auth(int(installation_id))
        raise ConfigurationError(
            "GitHub credentials missing: set GITHUB_TOKEN, or GITHUB_APP_ID + "
            "GITHUB_APP_PRIVATE_KEY(_PATH) + GITHUB_INSTALLATION_ID"
        )

    @classmethod
    def from_settings(cls, settings) -> "GitHubClient":
        private_key = settings.github_app_private_key
        if private_key:
            private_key = private_key.replace("\\n", "\n")
        elif settings.github_app_private_key_path:
            try:
                with open(settings.github_app_private_key_path, "r", encoding="utf-8") as fh:
                    private_key = fh.read()
            except OSError as e:
                raise ConfigurationError(f"Failed to read GitHub App private key: {e}") from e
        return cls(
            token=settings.github_token,
            app_id=settings.github_app_id,
            private_key=private_key,
            installation_id=settings.github_installation_id,
            base_url=settings.github_api_url,
            timeout=settings.request_timeout_seconds,
        )

    @staticmethod
    def first_page_request(
        owner: str,
        repo: str,
        *,
        state: str = "all",
        since: Optional[datetime] = None,
        labels: Optional[List[str]] = None,
        per_page: int = 100,
    ) -> PageRequest:
        """Build the request for the first page of the repository issue list."""
        params: Dict[str, Any] = {"state": state, "per_page": per_page}
        if since is not None:
            params["since"] = format_since(since)
        if labels:
            params["labels"] = ",".join(labels)
        return PageRequest(url=f"/repos/{owner}/{repo}/issues", params=params, page=1)

    @staticmethod
    def _next_request(headers: Dict[str, str], page: int) -> Optional[PageRequest]:
        link = headers.get("link")
        if not link:
            return None
        for entry in parse_header_links(link):
            if entry.get("rel") == "next" and entry.get("url"):
                return PageRequest(url=entry["url"], params=None, page=page + 1)
        return None

    def fetch_page(self, request: PageRequest) -> IssuePage:
        """Fetch one page; failures are raised already classified."""
        try:
            headers, data = self.gh.requester.requestJsonAndCheck(
                "GET", request.url, parameters=request.params
            )
        except Exception as e:
            error = classify_github_error(e)
            logger.error(f"Failed to fetch issue page {request.page}: {error.message}")
            raise error from e

        headers = _lower_headers(headers)
        items = data if isinstance(data, list) else []
        logger.debug(
            f"Fetched issue page {request.page} ({len(items)} items, "
            f"rate limit remaining: {headers.get('x-ratelimit-remaining')})"
        )
        return IssuePage(
            items=items,
            headers=headers,
            page=request.page,
            next_request=self._next_request(headers, request.page),
        )

    def check_token(self) -> Dict[str, Any]:
        """Lightweight credential check; returns remaining quota and token expiration."""
        try:
            headers, _data = self.gh.requester.requestJsonAndCheck("GET", "/rate_limit")
        except Exception as e:
            raise classify_github_error(e) from e
        headers = _lower_headers(headers)
        return {
            "rate_limit_remaining": headers.get("x-ratelimit-remaining"),
            "token_expiration": headers.get(TOKEN_EXPIRATION_HEADER),
        }
