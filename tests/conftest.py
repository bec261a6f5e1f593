"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from iorinav import nav
from iorinav.nav import app, get_db, init_db

CSRF = "test-csrf-token"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        SESSION_COOKIE_SECURE=False,
        KV_BACKEND="sqlite",
        ENABLE_PUBLIC_SUBMISSION="false",
        SITE_NAME="",
        SITE_DESCRIPTION="",
        FOOTER_TEXT="",
    )
    app.extensions.pop("iorinav.kv", None)
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _empty_tables() -> None:
    """Every test starts without bookmarks, settings or cached pages."""
    with app.app_context():
        db = get_db()
        for table in ("sites", "category", "pending_sites", "settings", "kv"):
            db.execute(f"DELETE FROM {table}")
        db.commit()


@pytest.fixture(autouse=True)
def _sync_background(monkeypatch: pytest.MonkeyPatch) -> None:
    """Run fire-and-forget work inline so its effects are visible at once."""
    monkeypatch.setattr(nav, "run_in_background", lambda fn, *a, **kw: fn(*a, **kw))


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """The same client, with an authenticated session and a CSRF token."""
    with client.session_transaction() as s:
        s["logged_in"] = True
        s["csrf"] = CSRF
    return client


# ───────────────────────── data factories ─────────────────────────────
@pytest.fixture
def make_category() -> Callable[..., int]:
    def _make(name: str, *, sort_order=9999, parent_id: int = 0, is_private: int = 0) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO category (catelog, sort_order, parent_id, is_private) VALUES (?,?,?,?)",
            (name, sort_order, parent_id, is_private),
        )
        db.commit()
        return cur.lastrowid

    return _make


@pytest.fixture
def make_site() -> Callable[..., int]:
    def _make(
        name: str,
        catelog_id: int,
        *,
        url: str = "https://example.com/",
        desc: str = "",
        logo: str = "",
        sort_order=9999,
        is_private: int = 0,
    ) -> int:
        db = get_db()
        row = db.execute("SELECT catelog FROM category WHERE id=?", (catelog_id,)).fetchone()
        cur = db.execute(
            'INSERT INTO sites (name, url, logo, "desc", catelog_id, catelog_name, sort_order, is_private) '
            "VALUES (?,?,?,?,?,?,?,?)",
            (name, url, logo, desc, catelog_id, row["catelog"] if row else None, sort_order, is_private),
        )
        db.commit()
        return cur.lastrowid

    return _make


@pytest.fixture
def put_setting() -> Callable[[str, str], None]:
    def _put(key: str, value: str) -> None:
        nav.set_setting(key, value)

    return _put
