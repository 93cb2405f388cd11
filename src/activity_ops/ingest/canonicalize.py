"""Canonicalization of GitHub payloads into event facts.

Every source shape (webhook payloads, REST commit records, search-API
timeline items) is mapped onto one ``EventFactData`` by a dedicated function
per ``SourceKind``. The mapping is pure: same payload in, byte-identical
fact out, no clock reads.

A payload that lacks a resolvable actor, a timestamp or a URL yields
``None``. That is not an error; bot/system commits and unsupported actions
are expected and simply skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from activity_ops.ingest.content_hash import compute_hash, normalize_metrics
from activity_ops.models.events import EventType
from activity_ops.utils.datetime import parse_iso_datetime

TEXT_LIMIT = 260
BODY_SNIPPET_LIMIT = 200
REVIEW_SNIPPET_LIMIT = 160
ELLIPSIS = "…"
EN_DASH = "–"

_WHITESPACE_RE = re.compile(r"\s+")


class SourceKind(str, Enum):
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"
    ISSUES = "issues"
    ISSUE_COMMENT = "issue_comment"
    COMMIT = "commit"
    TIMELINE_ITEM = "timeline_item"


@dataclass(frozen=True)
class RepoRef:
    full_name: str
    platform_id: Optional[int] = None
    url: Optional[str] = None

    @classmethod
    def from_payload(cls, repo: Optional[Mapping[str, Any]]) -> Optional["RepoRef"]:
        if not repo:
            return None
        full_name = repo.get("full_name")
        owner = repo.get("owner") or {}
        if not full_name and owner.get("login") and repo.get("name"):
            full_name = f"{owner['login']}/{repo['name']}"
        if not full_name:
            return None
        return cls(
            full_name=full_name,
            platform_id=repo.get("id"),
            url=repo.get("html_url") or f"https://github.com/{full_name}",
        )


@dataclass(frozen=True)
class ActorRef:
    login: str
    platform_id: Optional[int] = None
    node_id: Optional[str] = None


@dataclass
class EventFactData:
    type: EventType
    repo: RepoRef
    actor: ActorRef
    occurred_at: datetime
    canonical_text: str
    source_url: str
    metrics: Optional[dict] = None
    details: dict = field(default_factory=dict)
    platform_id: Optional[str] = None
    platform_node_id: Optional[str] = None

    @property
    def content_hash(self) -> str:
        return compute_hash(self.canonical_text, self.source_url, self.metrics)


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def truncate_text(value: str, limit: int = TEXT_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1] + ELLIPSIS


def _join(*parts: Optional[str]) -> str:
    return " ".join(part for part in parts if part and part.strip()).strip()


def _snippet(body: Optional[str], limit: int) -> Optional[str]:
    if not body:
        return None
    text = collapse_whitespace(body)[:limit]
    return f"{EN_DASH} {text}" if text else None


def _title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    return f"{EN_DASH} {collapse_whitespace(title)}"


def _compact(values: Mapping[str, Any]) -> dict:
    return {key: val for key, val in values.items() if val is not None}


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def normalize_actor(user: Optional[Mapping[str, Any]]) -> Optional[ActorRef]:
    """Resolve an actor from a user or git author record.

    Precedence: ``login``, ``username`` (push payloads), non-blank ``name``,
    then the local part of ``email``.
    """
    if not user:
        return None
    login = user.get("login") or user.get("username")
    if not login:
        name = user.get("name")
        if isinstance(name, str) and name.strip():
            login = name.strip()
    if not login:
        email = user.get("email")
        if isinstance(email, str) and "@" in email:
            login = email.split("@", 1)[0] or None
    if not login:
        return None
    platform_id = user.get("id")
    return ActorRef(
        login=login,
        platform_id=platform_id if isinstance(platform_id, int) else None,
        node_id=user.get("node_id"),
    )


def extract_metrics(
    additions: Any = None, deletions: Any = None, files_changed: Any = None
) -> Optional[dict]:
    metrics = {}
    if isinstance(additions, int) and not isinstance(additions, bool):
        metrics["additions"] = additions
    if isinstance(deletions, int) and not isinstance(deletions, bool):
        metrics["deletions"] = deletions
    if isinstance(files_changed, int) and not isinstance(files_changed, bool):
        metrics["files_changed"] = files_changed
    return normalize_metrics(metrics)


def format_metrics(metrics: Optional[Mapping[str, int]]) -> Optional[str]:
    if not metrics:
        return None
    parts = []
    if "additions" in metrics:
        parts.append(f"+{metrics['additions']}")
    if "deletions" in metrics:
        parts.append(f"-{metrics['deletions']}")
    if "files_changed" in metrics:
        parts.append(f"{metrics['files_changed']} files")
    return f"({', '.join(parts)})" if parts else None


def _resolve_repo(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[RepoRef]:
    return RepoRef.from_payload(payload.get("repository")) or repo_context


# -- per-kind canonicalizers ------------------------------------------------


def _pull_request(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    pr = payload.get("pull_request") or {}
    repo = _resolve_repo(payload, repo_context)
    actor = normalize_actor(payload.get("sender") or pr.get("user"))
    if repo is None or actor is None or pr.get("number") is None:
        return None

    action = payload.get("action")
    if action in ("opened", "reopened", "ready_for_review"):
        event_type = EventType.PR_OPENED
        occurred_at = parse_iso_datetime(pr.get("created_at"))
        verb = "opened"
    elif action == "closed":
        if pr.get("merged"):
            event_type = EventType.PR_MERGED
            occurred_at = parse_iso_datetime(pr.get("merged_at") or pr.get("closed_at"))
            verb = "merged"
        else:
            event_type = EventType.PR_CLOSED
            occurred_at = parse_iso_datetime(pr.get("closed_at"))
            verb = "closed"
    else:
        return None

    source_url = pr.get("html_url") or repo.url
    if occurred_at is None or not source_url:
        return None

    metrics = extract_metrics(
        pr.get("additions"), pr.get("deletions"), pr.get("changed_files")
    )
    text = truncate_text(
        _join(
            f"PR #{pr['number']}",
            _title(pr.get("title")),
            f"{verb} by {actor.login}",
            format_metrics(metrics),
        )
    )
    return EventFactData(
        type=event_type,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        metrics=metrics,
        details=_compact(
            {
                "number": pr.get("number"),
                "title": pr.get("title"),
                "merged": pr.get("merged"),
                "state": pr.get("state"),
                "base_branch": (pr.get("base") or {}).get("ref"),
                "head_branch": (pr.get("head") or {}).get("ref"),
            }
        ),
        platform_id=_str_id(pr.get("id")),
        platform_node_id=pr.get("node_id"),
    )


def _pull_request_review(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    if payload.get("action") != "submitted":
        return None
    review = payload.get("review") or {}
    pr = payload.get("pull_request") or {}
    repo = _resolve_repo(payload, repo_context)
    actor = normalize_actor(review.get("user"))
    if repo is None or actor is None or pr.get("number") is None:
        return None

    occurred_at = parse_iso_datetime(review.get("submitted_at"))
    source_url = review.get("html_url") or pr.get("html_url") or repo.url
    if occurred_at is None or not source_url:
        return None

    state = review.get("state")
    text = truncate_text(
        _join(
            f"Review on PR #{pr['number']}",
            f"by {actor.login}",
            f"[{state}]" if state else None,
            _snippet(review.get("body"), REVIEW_SNIPPET_LIMIT),
        )
    )
    return EventFactData(
        type=EventType.REVIEW_SUBMITTED,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        details=_compact(
            {"pr_number": pr.get("number"), "review_id": review.get("id"), "state": state}
        ),
        platform_id=_str_id(review.get("id")),
        platform_node_id=review.get("node_id"),
    )


def _issues(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    issue = payload.get("issue") or {}
    repo = _resolve_repo(payload, repo_context)
    actor = normalize_actor(payload.get("sender") or issue.get("user"))
    if repo is None or actor is None or issue.get("number") is None:
        return None

    action = payload.get("action")
    if action in ("opened", "reopened"):
        event_type = EventType.ISSUE_OPENED
        occurred_at = parse_iso_datetime(issue.get("created_at"))
        verb = "opened"
    elif action == "closed":
        event_type = EventType.ISSUE_CLOSED
        occurred_at = parse_iso_datetime(issue.get("closed_at"))
        verb = "closed"
    else:
        return None

    source_url = issue.get("html_url") or repo.url
    if occurred_at is None or not source_url:
        return None

    text = truncate_text(
        _join(
            f"Issue #{issue['number']}",
            _title(issue.get("title")),
            f"{verb} by {actor.login}",
        )
    )
    return EventFactData(
        type=event_type,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        details=_compact(
            {
                "issue_number": issue.get("number"),
                "is_pull_request": bool(issue.get("pull_request")),
                "state": issue.get("state"),
            }
        ),
        platform_id=_str_id(issue.get("id")),
        platform_node_id=issue.get("node_id"),
    )


def _issue_comment(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    if payload.get("action") not in ("created", "edited"):
        return None
    comment = payload.get("comment") or {}
    issue = payload.get("issue") or {}
    repo = _resolve_repo(payload, repo_context)
    actor = normalize_actor(comment.get("user") or payload.get("sender"))
    if repo is None or actor is None or issue.get("number") is None:
        return None

    occurred_at = parse_iso_datetime(
        comment.get("updated_at") or comment.get("created_at")
    )
    source_url = comment.get("html_url") or repo.url
    if occurred_at is None or not source_url:
        return None

    target = "pull request" if issue.get("pull_request") else "issue"
    text = truncate_text(
        _join(
            f"Comment on {target} #{issue['number']}",
            f"by {actor.login}",
            _snippet(comment.get("body"), BODY_SNIPPET_LIMIT),
        )
    )
    return EventFactData(
        type=EventType.ISSUE_COMMENT,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        details=_compact(
            {
                "issue_number": issue.get("number"),
                "is_pull_request": bool(issue.get("pull_request")),
                "comment_id": comment.get("id"),
            }
        ),
        platform_id=_str_id(comment.get("id")),
        platform_node_id=comment.get("node_id"),
    )


def _commit(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    """Commit from a push webhook or from the REST commits listing.

    Push commits carry ``id``, ``message``, ``timestamp`` and a git
    ``author``; REST commits carry ``sha``, a platform ``author`` user and
    the git data under ``commit``.
    """
    git = payload.get("commit") or {}
    repo = _resolve_repo(payload, repo_context)
    author = payload.get("author") or git.get("author") or payload.get("committer")
    actor = normalize_actor(author)
    if repo is None or actor is None:
        return None

    occurred_at = parse_iso_datetime(
        payload.get("timestamp")
        or (git.get("author") or {}).get("date")
        or (git.get("committer") or {}).get("date")
    )
    source_url = payload.get("html_url") or payload.get("url") or repo.url
    if occurred_at is None or not source_url:
        return None

    sha = payload.get("sha") or payload.get("id") or ""
    message = payload.get("message") or git.get("message")
    stats = payload.get("stats") or {}
    metrics = extract_metrics(
        stats.get("additions"), stats.get("deletions"), stats.get("files_changed")
    )
    text = truncate_text(
        _join(
            f"Commit {sha[:7]}".strip(),
            f"by {actor.login}",
            _snippet(message, BODY_SNIPPET_LIMIT),
            format_metrics(metrics),
        )
    )
    return EventFactData(
        type=EventType.COMMIT,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        metrics=metrics,
        details=_compact({"sha": sha or None, "message": message}),
        platform_id=sha or None,
        platform_node_id=payload.get("node_id"),
    )


_TIMELINE_VERBS = {
    EventType.PR_OPENED: "opened",
    EventType.PR_MERGED: "merged",
    EventType.PR_CLOSED: "closed",
    EventType.ISSUE_OPENED: "opened",
    EventType.ISSUE_CLOSED: "closed",
}


def _timeline_item(
    payload: Mapping[str, Any], repo_context: Optional[RepoRef]
) -> Optional[EventFactData]:
    """Issue or pull request from the search API used during backfill."""
    repo = _resolve_repo(payload, repo_context)
    actor = normalize_actor(payload.get("user"))
    if repo is None or actor is None:
        return None

    pr_info = payload.get("pull_request")
    is_pr = bool(pr_info)
    closed = (payload.get("state") or "").lower() == "closed"
    merged_at = (pr_info or {}).get("merged_at")
    if is_pr and closed and merged_at:
        event_type = EventType.PR_MERGED
        occurred_at = parse_iso_datetime(merged_at)
    elif closed:
        event_type = EventType.PR_CLOSED if is_pr else EventType.ISSUE_CLOSED
        occurred_at = parse_iso_datetime(
            payload.get("closed_at") or payload.get("updated_at")
        )
    else:
        event_type = EventType.PR_OPENED if is_pr else EventType.ISSUE_OPENED
        occurred_at = parse_iso_datetime(
            payload.get("created_at") or payload.get("updated_at")
        )

    source_url = payload.get("html_url") or repo.url
    if occurred_at is None or not source_url:
        return None

    # Same wording as the webhook templates so both channels hash alike.
    verb = _TIMELINE_VERBS[event_type]
    number = payload.get("number")
    label = f"{'PR' if is_pr else 'Issue'} #{number if number is not None else ''}".strip()
    text = truncate_text(
        _join(label, _title(payload.get("title")), f"{verb} by {actor.login}")
    )
    return EventFactData(
        type=event_type,
        repo=repo,
        actor=actor,
        occurred_at=occurred_at,
        canonical_text=text,
        source_url=source_url,
        details=_compact(
            {
                "number": number,
                "state": payload.get("state"),
                "item_id": payload.get("node_id"),
                "timeline": True,
            }
        ),
        platform_id=_str_id(payload.get("id")),
        platform_node_id=payload.get("node_id"),
    )


Canonicalizer = Callable[[Mapping[str, Any], Optional[RepoRef]], Optional[EventFactData]]

_CANONICALIZERS: dict[SourceKind, Canonicalizer] = {
    SourceKind.PULL_REQUEST: _pull_request,
    SourceKind.PULL_REQUEST_REVIEW: _pull_request_review,
    SourceKind.ISSUES: _issues,
    SourceKind.ISSUE_COMMENT: _issue_comment,
    SourceKind.COMMIT: _commit,
    SourceKind.TIMELINE_ITEM: _timeline_item,
}

_missing = set(SourceKind) - set(_CANONICALIZERS)
if _missing:
    raise RuntimeError(f"No canonicalizer registered for: {sorted(_missing)}")


def canonicalize(
    kind: SourceKind | str,
    payload: Optional[Mapping[str, Any]],
    repo_context: Optional[RepoRef] = None,
) -> Optional[EventFactData]:
    """Map one source payload to a canonical fact, or None when unusable.

    Raises:
        ValueError: ``kind`` is not a known ``SourceKind``.
    """
    source_kind = SourceKind(kind)
    if not payload:
        return None
    return _CANONICALIZERS[source_kind](payload, repo_context)
