from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from activity_ops.connectors.exceptions import (
    APIException,
    AuthenticationException,
    NotFoundException,
    RateLimitException,
)
from activity_ops.connectors.github import (
    GitHubAppClient,
    cursor_position,
    format_cursor,
    parse_cursor,
)
from activity_ops.ingest.canonicalize import SourceKind

SINCE = datetime(2025, 2, 8, 12, 0, tzinfo=timezone.utc)
RESET_EPOCH = 1_900_000_000


@pytest.fixture(scope="module")
def rsa_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return pem, key.public_key()


class FakeGitHub:
    """Routes requests to canned responses and records what was asked."""

    def __init__(self):
        self.requests = []
        self.token_requests = 0
        self.search_pages = {
            1: [{"id": 1, "number": 1}, {"id": 2, "number": 2}],
            2: [{"id": 3, "number": 3}],
        }
        self.commit_pages = {1: [{"sha": "a"}, {"sha": "b"}], 2: []}
        self.overrides = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            override = self.overrides[path]
            return override() if callable(override) else override
        headers = {"x-ratelimit-remaining": "4999", "x-ratelimit-reset": str(RESET_EPOCH)}
        if request.method == "POST" and path == "/app/installations/1001/access_tokens":
            self.token_requests += 1
            return httpx.Response(
                201, json={"token": "ghs_test", "expires_at": "2099-01-01T00:00:00Z"}
            )
        if path == "/repos/acme/api":
            return httpx.Response(200, json={"id": 42, "full_name": "acme/api"}, headers=headers)
        if path == "/search/issues":
            page = int(request.url.params["page"])
            return httpx.Response(
                200,
                json={"total_count": 3, "items": self.search_pages.get(page, [])},
                headers=headers,
            )
        if path == "/repos/acme/api/commits":
            page = int(request.url.params["page"])
            return httpx.Response(200, json=self.commit_pages.get(page, []), headers=headers)
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def app_client(rsa_key, github):
    pem, _ = rsa_key
    return GitHubAppClient(
        app_id="123",
        private_key=pem,
        base_url="https://api.github.test",
        http_client=httpx.Client(transport=httpx.MockTransport(github)),
        per_page=2,
    )


class TestCursor:
    def test_parse_and_format(self):
        assert parse_cursor(None) == ("timeline", 1)
        assert parse_cursor("commits:4") == ("commits", 4)
        assert format_cursor("timeline", 2) == "timeline:2"

    def test_positions_order_phases(self):
        assert cursor_position("timeline:9") < cursor_position("commits:1")
        assert cursor_position(None) < cursor_position("timeline:2")

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_cursor("graphql:abc")
        with pytest.raises(ValueError):
            parse_cursor("commits:x")


class TestAuthentication:
    def test_app_jwt_claims(self, app_client, rsa_key):
        _, public_key = rsa_key
        token = app_client.app_jwt()
        claims = jwt.decode(token, public_key, algorithms=["RS256"])

        assert claims["iss"] == "123"
        assert claims["exp"] - claims["iat"] <= 10 * 60

    def test_app_jwt_is_cached(self, app_client):
        assert app_client.app_jwt() == app_client.app_jwt()

    def test_installation_token_cached(self, app_client, github):
        installation = app_client.installation(1001)
        installation.get_repository("acme/api")
        installation.get_repository("acme/api")

        assert github.token_requests == 1
        repo_request = github.requests[-1]
        assert repo_request.headers["Authorization"] == "Bearer ghs_test"
        assert repo_request.headers["X-GitHub-Api-Version"] == "2022-11-28"

    def test_expiring_token_is_refreshed(self, app_client, github):
        github.overrides["/app/installations/1001/access_tokens"] = lambda: httpx.Response(
            201,
            json={
                "token": "ghs_short",
                "expires_at": (datetime.now(timezone.utc) + timedelta(seconds=30)).isoformat(),
            },
        )
        app_client.mint_installation_token(1001)
        app_client.mint_installation_token(1001)

        token_calls = [r for r in github.requests if r.method == "POST"]
        assert len(token_calls) == 2

    def test_missing_credentials(self, github, monkeypatch):
        monkeypatch.delenv("GITHUB_APP_ID", raising=False)
        monkeypatch.delenv("GITHUB_APP_PRIVATE_KEY", raising=False)
        client = GitHubAppClient(
            http_client=httpx.Client(transport=httpx.MockTransport(github))
        )
        with pytest.raises(AuthenticationException):
            client.app_jwt()


class TestFetchPage:
    def test_walks_timeline_then_commits(self, app_client):
        installation = app_client.installation(1001)

        first = installation.fetch_page("acme/api", None, SINCE)
        second = installation.fetch_page("acme/api", first.end_cursor, SINCE)
        third = installation.fetch_page("acme/api", second.end_cursor, SINCE)
        fourth = installation.fetch_page("acme/api", third.end_cursor, SINCE)

        assert first.end_cursor == "timeline:2"
        assert [item.kind for item in first.items] == [SourceKind.TIMELINE_ITEM] * 2
        assert first.total_count == 3
        assert first.rate_limit.remaining == 4999
        assert second.end_cursor == "commits:1"
        assert second.has_next_page is True
        assert [item.kind for item in third.items] == [SourceKind.COMMIT] * 2
        assert third.end_cursor == "commits:2"
        assert fourth.items == []
        assert fourth.has_next_page is False
        assert fourth.end_cursor is None

    def test_search_query(self, app_client, github):
        until = SINCE + timedelta(days=1)
        app_client.installation(1001).fetch_page("acme/api", None, SINCE, until)

        params = github.requests[-1].url.params
        assert params["q"] == (
            "repo:acme/api updated:>=2025-02-08T12:00:00Z updated:<2025-02-09T12:00:00Z"
        )
        assert params["sort"] == "updated"
        assert params["order"] == "asc"

    def test_empty_repository(self, app_client, github):
        github.overrides["/repos/acme/api/commits"] = httpx.Response(
            409, json={"message": "Git Repository is empty."}
        )

        page = app_client.installation(1001).fetch_page("acme/api", "commits:1", SINCE)

        assert page.items == []
        assert page.has_next_page is False

    def test_rate_limited(self, app_client, github):
        github.overrides["/search/issues"] = httpx.Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": str(RESET_EPOCH)},
        )

        with pytest.raises(RateLimitException) as excinfo:
            app_client.installation(1001).fetch_page("acme/api", None, SINCE)

        assert excinfo.value.reset_at == datetime.fromtimestamp(RESET_EPOCH, tz=timezone.utc)
        assert excinfo.value.remaining == 0
        assert excinfo.value.status_code == 403

    def test_secondary_rate_limit_uses_retry_after(self, app_client, github):
        github.overrides["/search/issues"] = httpx.Response(
            429, json={"message": "slow down"}, headers={"retry-after": "30"}
        )

        with pytest.raises(RateLimitException) as excinfo:
            app_client.installation(1001).fetch_page("acme/api", None, SINCE)

        delay = (excinfo.value.reset_at - datetime.now(timezone.utc)).total_seconds()
        assert 25 < delay <= 30

    def test_forbidden_without_rate_limit(self, app_client, github):
        github.overrides["/repos/acme/api/commits"] = httpx.Response(
            403, json={"message": "Resource not accessible by integration"}
        )

        with pytest.raises(APIException) as excinfo:
            app_client.installation(1001).fetch_page("acme/api", "commits:1", SINCE)

        assert not isinstance(excinfo.value, RateLimitException)
        assert excinfo.value.status_code == 403

    def test_not_found(self, app_client):
        with pytest.raises(NotFoundException):
            app_client.installation(1001).get_repository("acme/missing")

    def test_unauthorized(self, app_client, github):
        github.overrides["/repos/acme/api"] = httpx.Response(401, json={})
        with pytest.raises(AuthenticationException):
            app_client.installation(1001).get_repository("acme/api")

    def test_invalid_repo_name(self, app_client):
        with pytest.raises(ValueError):
            app_client.installation(1001).fetch_page("acme", None, SINCE)
