from datetime import datetime, timezone

import pytest

from activity_ops.ingest.canonicalize import (
    TEXT_LIMIT,
    RepoRef,
    SourceKind,
    canonicalize,
    normalize_actor,
    truncate_text,
)
from activity_ops.models.events import EventType

REPO = {
    "id": 42,
    "full_name": "acme/api",
    "html_url": "https://github.com/acme/api",
}
ALICE = {"login": "alice", "id": 7, "node_id": "U_alice"}


def _pr_payload(action="opened", **pr_overrides):
    pr = {
        "id": 900,
        "node_id": "PR_900",
        "number": 12,
        "title": "Add retry to client",
        "html_url": "https://github.com/acme/api/pull/12",
        "created_at": "2025-01-01T10:00:00Z",
        "closed_at": None,
        "merged_at": None,
        "merged": False,
        "user": ALICE,
    }
    pr.update(pr_overrides)
    return {"action": action, "pull_request": pr, "repository": REPO, "sender": ALICE}


class TestPullRequest:
    def test_opened(self):
        fact = canonicalize(SourceKind.PULL_REQUEST, _pr_payload())

        assert fact.type == EventType.PR_OPENED
        assert fact.occurred_at == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert fact.canonical_text == "PR #12 – Add retry to client opened by alice"
        assert fact.source_url == "https://github.com/acme/api/pull/12"
        assert fact.actor.login == "alice"
        assert fact.repo.full_name == "acme/api"
        assert fact.metrics is None

    def test_merged_uses_merged_at(self):
        payload = _pr_payload(
            "closed",
            merged=True,
            merged_at="2025-01-02T00:00:00Z",
            closed_at="2025-01-02T00:00:05Z",
        )
        fact = canonicalize(SourceKind.PULL_REQUEST, payload)

        assert fact.type == EventType.PR_MERGED
        assert fact.occurred_at == datetime(2025, 1, 2, 0, 0, tzinfo=timezone.utc)
        assert "merged by alice" in fact.canonical_text

    def test_merged_falls_back_to_closed_at(self):
        payload = _pr_payload("closed", merged=True, closed_at="2025-01-03T00:00:00Z")
        fact = canonicalize(SourceKind.PULL_REQUEST, payload)

        assert fact.type == EventType.PR_MERGED
        assert fact.occurred_at == datetime(2025, 1, 3, tzinfo=timezone.utc)

    def test_closed_without_merge(self):
        payload = _pr_payload("closed", closed_at="2025-01-03T00:00:00Z")
        fact = canonicalize(SourceKind.PULL_REQUEST, payload)

        assert fact.type == EventType.PR_CLOSED
        assert fact.occurred_at == datetime(2025, 1, 3, tzinfo=timezone.utc)

    def test_unsupported_action_is_skipped(self):
        assert canonicalize(SourceKind.PULL_REQUEST, _pr_payload("labeled")) is None

    def test_missing_timestamp_is_skipped(self):
        assert canonicalize(SourceKind.PULL_REQUEST, _pr_payload(created_at=None)) is None

    def test_metrics_carried_when_present(self):
        payload = _pr_payload(additions=10, deletions=0, changed_files=3)
        fact = canonicalize(SourceKind.PULL_REQUEST, payload)

        assert fact.metrics == {"additions": 10, "deletions": 0, "files_changed": 3}
        assert fact.canonical_text.endswith("(+10, -0, 3 files)")

    def test_partial_metrics_omit_absent_keys(self):
        fact = canonicalize(SourceKind.PULL_REQUEST, _pr_payload(additions=5))
        assert fact.metrics == {"additions": 5}

    def test_source_url_falls_back_to_repository(self):
        repo = {"id": 42, "full_name": "acme/api"}
        payload = _pr_payload(html_url=None)
        payload["repository"] = repo

        fact = canonicalize(SourceKind.PULL_REQUEST, payload)

        assert fact.source_url == "https://github.com/acme/api"

    def test_long_title_is_bounded(self):
        fact = canonicalize(SourceKind.PULL_REQUEST, _pr_payload(title="t" * 500))

        assert len(fact.canonical_text) == TEXT_LIMIT
        assert fact.canonical_text.endswith("…")

    def test_non_ascii_preserved(self):
        fact = canonicalize(SourceKind.PULL_REQUEST, _pr_payload(title="Café ☕ über"))
        assert "Café ☕ über" in fact.canonical_text

    def test_deterministic(self):
        first = canonicalize(SourceKind.PULL_REQUEST, _pr_payload(additions=1))
        second = canonicalize(SourceKind.PULL_REQUEST, _pr_payload(additions=1))

        assert first.canonical_text == second.canonical_text
        assert first.content_hash == second.content_hash


class TestReviewAndIssues:
    def test_review_submitted(self):
        payload = {
            "action": "submitted",
            "review": {
                "id": 5,
                "state": "approved",
                "body": "Looks   good\n\nto me",
                "submitted_at": "2025-01-05T09:00:00Z",
                "html_url": "https://github.com/acme/api/pull/12#review-5",
                "user": {"login": "bob"},
            },
            "pull_request": {"number": 12, "html_url": "https://github.com/acme/api/pull/12"},
            "repository": REPO,
        }
        fact = canonicalize(SourceKind.PULL_REQUEST_REVIEW, payload)

        assert fact.type == EventType.REVIEW_SUBMITTED
        assert fact.actor.login == "bob"
        assert fact.canonical_text == "Review on PR #12 by bob [approved] – Looks good to me"

    def test_review_other_actions_skipped(self):
        payload = {"action": "dismissed", "review": {}, "pull_request": {"number": 1}}
        assert canonicalize(SourceKind.PULL_REQUEST_REVIEW, payload) is None

    def test_issue_closed_uses_closed_at(self):
        payload = {
            "action": "closed",
            "issue": {
                "id": 3,
                "number": 8,
                "title": "Crash on start",
                "created_at": "2025-01-01T00:00:00Z",
                "closed_at": "2025-01-04T00:00:00Z",
                "html_url": "https://github.com/acme/api/issues/8",
            },
            "repository": REPO,
            "sender": ALICE,
        }
        fact = canonicalize(SourceKind.ISSUES, payload)

        assert fact.type == EventType.ISSUE_CLOSED
        assert fact.occurred_at == datetime(2025, 1, 4, tzinfo=timezone.utc)

    def test_long_comment_is_snipped(self):
        payload = {
            "action": "created",
            "issue": {"number": 5},
            "comment": {
                "id": 77,
                "body": "x" * 1200,
                "created_at": "2025-01-06T00:00:00Z",
                "html_url": "https://github.com/acme/api/issues/5#issuecomment-77",
                "user": ALICE,
            },
            "repository": REPO,
        }
        fact = canonicalize(SourceKind.ISSUE_COMMENT, payload)

        assert fact.type == EventType.ISSUE_COMMENT
        assert "x" * 200 in fact.canonical_text
        assert "x" * 201 not in fact.canonical_text
        assert len(fact.canonical_text) <= TEXT_LIMIT


class TestCommit:
    def test_push_commit(self):
        repo = RepoRef.from_payload(REPO)
        payload = {
            "id": "abcdef1234567890",
            "message": "Fix flaky test",
            "timestamp": "2025-01-07T12:00:00+02:00",
            "url": "https://github.com/acme/api/commit/abcdef1",
            "author": {"name": "Alice", "email": "alice@example.com", "username": "alice"},
        }
        fact = canonicalize(SourceKind.COMMIT, payload, repo_context=repo)

        assert fact.type == EventType.COMMIT
        assert fact.actor.login == "alice"
        assert fact.occurred_at == datetime(2025, 1, 7, 10, 0, tzinfo=timezone.utc)
        assert fact.canonical_text == "Commit abcdef1 by alice – Fix flaky test"
        assert fact.repo.full_name == "acme/api"

    def test_rest_commit(self):
        repo = RepoRef.from_payload(REPO)
        payload = {
            "sha": "1234567abcdef",
            "html_url": "https://github.com/acme/api/commit/1234567",
            "author": {"login": "carol", "id": 9},
            "commit": {
                "message": "Bump deps",
                "author": {"name": "Carol", "date": "2025-01-08T00:00:00Z"},
            },
            "stats": {"additions": 4, "deletions": 2},
        }
        fact = canonicalize(SourceKind.COMMIT, payload, repo_context=repo)

        assert fact.actor.login == "carol"
        assert fact.platform_id == "1234567abcdef"
        assert fact.metrics == {"additions": 4, "deletions": 2}

    def test_commit_without_author_is_skipped(self):
        repo = RepoRef.from_payload(REPO)
        payload = {
            "id": "abc",
            "message": "system commit",
            "timestamp": "2025-01-07T12:00:00Z",
            "url": "https://github.com/acme/api/commit/abc",
        }
        assert canonicalize(SourceKind.COMMIT, payload, repo_context=repo) is None


class TestTimelineItem:
    def test_merged_pull_request(self):
        item = {
            "id": 1,
            "node_id": "I_1",
            "number": 30,
            "title": "Ship it",
            "state": "closed",
            "user": ALICE,
            "created_at": "2025-01-01T00:00:00Z",
            "updated_at": "2025-01-09T00:00:00Z",
            "closed_at": "2025-01-09T00:00:00Z",
            "html_url": "https://github.com/acme/api/pull/30",
            "pull_request": {"merged_at": "2025-01-09T00:00:00Z"},
        }
        fact = canonicalize(
            SourceKind.TIMELINE_ITEM, item, repo_context=RepoRef.from_payload(REPO)
        )

        assert fact.type == EventType.PR_MERGED
        assert fact.canonical_text == "PR #30 – Ship it merged by alice"

    def test_open_issue(self):
        item = {
            "id": 2,
            "number": 31,
            "title": "Docs",
            "state": "open",
            "user": ALICE,
            "created_at": "2025-01-02T00:00:00Z",
            "html_url": "https://github.com/acme/api/issues/31",
        }
        fact = canonicalize(
            SourceKind.TIMELINE_ITEM, item, repo_context=RepoRef.from_payload(REPO)
        )

        assert fact.type == EventType.ISSUE_OPENED
        assert fact.occurred_at == datetime(2025, 1, 2, tzinfo=timezone.utc)


class TestHelpers:
    def test_actor_fallbacks(self):
        assert normalize_actor({"login": "a", "name": "b"}).login == "a"
        assert normalize_actor({"name": "Jane Doe"}).login == "Jane Doe"
        assert normalize_actor({"name": "  ", "email": "jd@example.com"}).login == "jd"
        assert normalize_actor({"name": " "}) is None
        assert normalize_actor(None) is None

    def test_truncate_text(self):
        assert truncate_text("short") == "short"
        assert truncate_text("a" * 300) == "a" * 259 + "…"

    def test_repo_url_fallback(self):
        repo = RepoRef.from_payload({"name": "web", "owner": {"login": "acme"}})
        assert repo.full_name == "acme/web"
        assert repo.url == "https://github.com/acme/web"

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            canonicalize("deployment", {"action": "created"})
