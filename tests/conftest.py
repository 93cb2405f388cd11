from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from activity_ops.models import Account, Base


@pytest.fixture
def db_session():
    # One shared connection so TestClient worker threads see the same database.
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    with Session(engine, expire_on_commit=False) as session:
        yield session
    engine.dispose()


@pytest.fixture
def make_account(db_session):
    def _make(
        installation_id: int = 1001,
        user_id: str | None = "user_1",
        repositories: list[str] | None = None,
        **kwargs,
    ) -> Account:
        account = Account(
            installation_id=installation_id,
            account_login="acme",
            user_id=user_id,
            repositories=["acme/api", "acme/web"] if repositories is None else repositories,
            **kwargs,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make
