"""Data-access functions for Account records.

Accounts are created and updated by installation lifecycle webhooks and are
never deleted; an uninstalled app only deactivates its account.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from activity_ops.connectors.rate_limit import RateLimitSnapshot
from activity_ops.models.accounts import Account, SyncStatus


def get_account(session: Session, account_id: uuid.UUID) -> Optional[Account]:
    return session.query(Account).filter(Account.id == account_id).first()


def get_account_by_installation(
    session: Session, installation_id: int
) -> Optional[Account]:
    return (
        session.query(Account)
        .filter(Account.installation_id == installation_id)
        .first()
    )


# (session, account_login) -> user id, or None when the login is unknown.
UserResolver = Callable[[Session, Optional[str]], Optional[str]]


def _unique(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        if name and "/" in name:
            seen.setdefault(name, None)
    return list(seen)


def upsert_installation(
    session: Session,
    installation_id: int,
    account_login: Optional[str] = None,
    account_type: Optional[str] = None,
    repositories: Optional[Iterable[str]] = None,
    is_active: bool = True,
) -> tuple[Account, bool]:
    """Create or refresh the account for an installation.

    ``repositories`` replaces the tracked list when given; ``None`` leaves
    it untouched.

    Returns:
        (account, created)
    """
    account = get_account_by_installation(session, installation_id)
    created = account is None
    if account is None:
        account = Account(
            installation_id=installation_id,
            account_login=account_login,
            account_type=account_type,
            repositories=_unique(repositories or []),
            is_active=is_active,
        )
        session.add(account)
    else:
        if account_login:
            account.account_login = account_login
        if account_type:
            account.account_type = account_type
        if repositories is not None:
            account.repositories = _unique(repositories)
        account.is_active = is_active
    session.flush()
    return account, created


def find_user_for_login(session: Session, account_login: Optional[str]) -> Optional[str]:
    """User already linked to another installation of the same GitHub login.

    Covers re-installs, which arrive with a new installation id.
    """
    if not account_login:
        return None
    linked = (
        session.query(Account)
        .filter(
            Account.account_login == account_login,
            Account.user_id.isnot(None),
        )
        .order_by(Account.updated_at.desc())
        .first()
    )
    return linked.user_id if linked is not None else None


def link_user(
    session: Session, installation_id: int, user_id: str
) -> tuple[Account, bool]:
    """Attach the owning user to an installation's account.

    The account is created when the link arrives before the installation
    webhook; that webhook later fills in the login and repositories.

    Returns:
        (account, newly_linked); ``newly_linked`` is False when the account
        already belonged to ``user_id``
    """
    account = get_account_by_installation(session, installation_id)
    if account is None:
        account = Account(installation_id=installation_id, user_id=user_id, repositories=[])
        session.add(account)
        session.flush()
        return account, True
    newly_linked = account.user_id != user_id
    account.user_id = user_id
    session.flush()
    return account, newly_linked


def set_repositories(
    session: Session,
    account: Account,
    added: Iterable[str] = (),
    removed: Iterable[str] = (),
) -> list[str]:
    removed_set = set(removed)
    current = [name for name in (account.repositories or []) if name not in removed_set]
    account.repositories = _unique([*current, *added])
    session.flush()
    return account.repositories


def deactivate(session: Session, account: Account) -> Account:
    account.is_active = False
    account.sync_status = SyncStatus.IDLE.value
    session.flush()
    return account


def update_rate_limit(
    session: Session, account_id: uuid.UUID, snapshot: RateLimitSnapshot
) -> None:
    """Record the latest known API budget; unknown values are not written."""
    if not snapshot.is_known:
        return
    account = get_account(session, account_id)
    if account is None:
        return
    account.rate_limit_remaining = snapshot.remaining
    if snapshot.reset_at is not None:
        account.rate_limit_reset = snapshot.reset_at
    session.flush()


def list_accounts_due_for_sync(
    session: Session,
    stale_after: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> list[Account]:
    """Active accounts with repositories and a linked user.

    With ``stale_after`` only accounts whose last sync is older than that
    (or that never synced) are returned.
    """
    query = session.query(Account).filter(
        Account.is_active.is_(True),
        Account.user_id.isnot(None),
    )
    if stale_after is not None:
        cutoff = (now or datetime.now(timezone.utc)) - stale_after
        query = query.filter(
            or_(Account.last_synced_at.is_(None), Account.last_synced_at < cutoff)
        )
    return [account for account in query.order_by(Account.created_at).all() if account.repositories]
