"""GitHub App connector.

Authentication is the GitHub App flow: a short-lived RS256 JWT signed with
the app's private key is exchanged for an installation access token, which
is cached until shortly before it expires.

Backfill paging walks two streams per repository, one after the other:

1. ``timeline``: issues and pull requests updated inside the window, from
   the search API (sorted by update time, capped at 1000 results).
2. ``commits``: the REST commit listing for the same window.

The cursor handed back to callers is an opaque string (``"timeline:3"``,
``"commits:1"``). Cursors only ever move forward: within a stream by page
number, and from ``timeline`` to ``commits``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import jwt

from activity_ops.config import get_github_api_url, get_github_app_credentials
from activity_ops.connectors.exceptions import (
    APIException,
    AuthenticationException,
    NotFoundException,
    RateLimitException,
)
from activity_ops.connectors.rate_limit import (
    RateLimitSnapshot,
    extract_retry_after,
    parse_rate_limit,
)
from activity_ops.ingest.canonicalize import SourceKind
from activity_ops.utils.datetime import isoformat_z, parse_iso_datetime
from activity_ops.utils.logging import sanitize_for_log

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
APP_JWT_TTL = timedelta(minutes=8)
APP_JWT_SKEW = timedelta(seconds=30)
TOKEN_REFRESH_BUFFER = timedelta(seconds=60)
DEFAULT_PER_PAGE = 100
SEARCH_MAX_RESULTS = 1000

TIMELINE_PHASE = "timeline"
COMMITS_PHASE = "commits"
_PHASES = (TIMELINE_PHASE, COMMITS_PHASE)


@dataclass(frozen=True)
class PageItem:
    kind: SourceKind
    payload: dict


@dataclass
class TimelinePage:
    items: list[PageItem]
    has_next_page: bool
    end_cursor: Optional[str]
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)
    total_count: Optional[int] = None


def parse_cursor(cursor: Optional[str]) -> tuple[str, int]:
    """Split a cursor into (phase, page). ``None`` is the first timeline page."""
    if not cursor:
        return TIMELINE_PHASE, 1
    phase, _, page = cursor.partition(":")
    if phase not in _PHASES:
        raise ValueError(f"Unknown cursor phase: {cursor!r}")
    try:
        return phase, max(int(page), 1)
    except ValueError:
        raise ValueError(f"Malformed cursor: {cursor!r}") from None


def format_cursor(phase: str, page: int) -> str:
    return f"{phase}:{page}"


def cursor_position(cursor: Optional[str]) -> tuple[int, int]:
    """Sortable position of a cursor, for the never-regress check."""
    phase, page = parse_cursor(cursor)
    return _PHASES.index(phase), page


class GitHubAppClient:
    """Authenticates as a GitHub App and hands out per-installation clients."""

    def __init__(
        self,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> None:
        env_app_id, env_key = get_github_app_credentials()
        self.app_id = app_id or env_app_id
        self.private_key = private_key or env_key
        self.base_url = (base_url or get_github_api_url()).rstrip("/")
        self.per_page = per_page
        self._http = http_client or httpx.Client(timeout=httpx.Timeout(30.0))
        self._lock = threading.Lock()
        self._app_jwt: Optional[str] = None
        self._app_jwt_expires_at: Optional[datetime] = None
        self._installation_tokens: dict[int, tuple[str, datetime]] = {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubAppClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- authentication ------------------------------------------------------

    def app_jwt(self, now: Optional[datetime] = None) -> str:
        if not self.app_id or not self.private_key:
            raise AuthenticationException(
                "GitHub App credentials not configured. "
                "Set GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY."
            )
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if (
                self._app_jwt
                and self._app_jwt_expires_at
                and self._app_jwt_expires_at - TOKEN_REFRESH_BUFFER > now
            ):
                return self._app_jwt
            issued_at = now - APP_JWT_SKEW
            expires_at = now + APP_JWT_TTL
            token = jwt.encode(
                {
                    "iat": int(issued_at.timestamp()),
                    "exp": int(expires_at.timestamp()),
                    "iss": str(self.app_id),
                },
                self.private_key,
                algorithm="RS256",
            )
            self._app_jwt = token
            self._app_jwt_expires_at = expires_at
            return token

    def mint_installation_token(
        self, installation_id: int, now: Optional[datetime] = None
    ) -> str:
        """Return a cached installation token, minting a new one when needed."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            cached = self._installation_tokens.get(installation_id)
        if cached and cached[1] - TOKEN_REFRESH_BUFFER > now:
            return cached[0]

        response = self._send(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            token=self.app_jwt(now),
        )
        data = response.json()
        token = data.get("token")
        if not token:
            raise AuthenticationException(
                f"No token returned for installation {installation_id}"
            )
        expires_at = parse_iso_datetime(data.get("expires_at")) or (
            now + timedelta(hours=1)
        )
        with self._lock:
            self._installation_tokens[installation_id] = (token, expires_at)
        logger.debug("Minted installation token for %s", installation_id)
        return token

    def installation(self, installation_id: int) -> "InstallationClient":
        return InstallationClient(self, installation_id)

    # -- transport -----------------------------------------------------------

    def _send(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": API_VERSION,
        }
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            raise APIException(f"GitHub request failed: {exc}") from exc

        if response.status_code < 400:
            return response

        snapshot = parse_rate_limit(response.headers)
        body = response.text
        if response.status_code in (403, 429) and (
            snapshot.remaining == 0
            or extract_retry_after(response.headers) is not None
            or "rate limit" in body.lower()
        ):
            reset_at = snapshot.reset_at
            retry_after = extract_retry_after(response.headers)
            if retry_after is not None:
                reset_at = datetime.now(timezone.utc) + timedelta(seconds=retry_after)
            raise RateLimitException(
                f"GitHub rate limit hit on {method} {path}",
                reset_at=reset_at,
                remaining=snapshot.remaining,
                status_code=response.status_code,
            )
        if response.status_code == 401:
            raise AuthenticationException(
                "GitHub rejected credentials", status_code=401
            )
        if response.status_code == 404:
            raise NotFoundException(f"Not found: {path}", status_code=404)

        logger.warning(
            "GitHub API error %s on %s %s: %s",
            response.status_code,
            method,
            path,
            sanitize_for_log(body, 300),
        )
        raise APIException(
            f"GitHub API error ({response.status_code}): {body[:300]}",
            status_code=response.status_code,
        )


class InstallationClient:
    """API calls made with one installation's access token."""

    def __init__(self, app: GitHubAppClient, installation_id: int) -> None:
        self.app = app
        self.installation_id = installation_id

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        token = self.app.mint_installation_token(self.installation_id)
        return self.app._send("GET", path, token=token, params=params)

    def get_repository(self, repo_full_name: str) -> dict:
        if "/" not in repo_full_name:
            raise ValueError(f"Invalid repo format: {repo_full_name}")
        return self._get(f"/repos/{repo_full_name}").json()

    def fetch_page(
        self,
        repo_full_name: str,
        cursor: Optional[str],
        since: datetime,
        until: Optional[datetime] = None,
    ) -> TimelinePage:
        """Fetch the page at ``cursor``; ``end_cursor`` points at the next one."""
        if "/" not in repo_full_name:
            raise ValueError(f"Invalid repo format: {repo_full_name}")
        phase, page = parse_cursor(cursor)
        if phase == TIMELINE_PHASE:
            return self._fetch_timeline_page(repo_full_name, page, since, until)
        return self._fetch_commits_page(repo_full_name, page, since, until)

    def _fetch_timeline_page(
        self,
        repo_full_name: str,
        page: int,
        since: datetime,
        until: Optional[datetime],
    ) -> TimelinePage:
        per_page = self.app.per_page
        query = [f"repo:{repo_full_name}", f"updated:>={isoformat_z(since)}"]
        if until is not None:
            query.append(f"updated:<{isoformat_z(until)}")
        response = self._get(
            "/search/issues",
            params={
                "q": " ".join(query),
                "sort": "updated",
                "order": "asc",
                "per_page": per_page,
                "page": page,
            },
        )
        data = response.json()
        raw_items = data.get("items") or []
        total = int(data.get("total_count") or 0)
        capped_total = min(total, SEARCH_MAX_RESULTS)
        more_timeline = len(raw_items) == per_page and page * per_page < capped_total

        # The commits stream always follows the timeline stream.
        next_cursor = (
            format_cursor(TIMELINE_PHASE, page + 1)
            if more_timeline
            else format_cursor(COMMITS_PHASE, 1)
        )
        return TimelinePage(
            items=[PageItem(SourceKind.TIMELINE_ITEM, item) for item in raw_items],
            has_next_page=True,
            end_cursor=next_cursor,
            rate_limit=parse_rate_limit(response.headers),
            total_count=total,
        )

    def _fetch_commits_page(
        self,
        repo_full_name: str,
        page: int,
        since: datetime,
        until: Optional[datetime],
    ) -> TimelinePage:
        per_page = self.app.per_page
        params: dict[str, Any] = {
            "since": isoformat_z(since),
            "per_page": per_page,
            "page": page,
        }
        if until is not None:
            params["until"] = isoformat_z(until)
        try:
            response = self._get(f"/repos/{repo_full_name}/commits", params=params)
        except APIException as exc:
            # Empty repositories answer 409 on the commits listing.
            if exc.status_code == 409:
                return TimelinePage(items=[], has_next_page=False, end_cursor=None)
            raise
        raw_items = response.json() or []
        has_next = "next" in response.links or len(raw_items) == per_page
        return TimelinePage(
            items=[PageItem(SourceKind.COMMIT, item) for item in raw_items],
            has_next_page=has_next,
            end_cursor=format_cursor(COMMITS_PHASE, page + 1) if has_next else None,
            rate_limit=parse_rate_limit(response.headers),
        )
