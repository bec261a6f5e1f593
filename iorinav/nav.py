#!/usr/bin/env python3
"""
A single-file bookmark directory.
"""

import json
import math
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import quote, urlsplit

import boto3
import click
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    g,
    make_response,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from jinja2 import DebugUndefined
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "nav.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

SCHEMA_VERSION = "v2"
SORT_ORDER_FALLBACK = 9999

CACHE_KEY_PRIVATE = "home_html_private"
CACHE_KEY_PUBLIC = "home_html_public"

COOKIE_CACHE_STALE = "iori_cache_stale"
COOKIE_LAST_CATEGORY = "iori_last_category"
COOKIE_WALLPAPER_INDEX = "wallpaper_index"
COOKIE_MAX_AGE = 31536000  # one year

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}

WALLPAPER_360_API = (
    "http://cdn.apc.360.cn/index.php"
    "?c=WallPaper&a=getAppsByCategory&from=360chrome&cid={cid}&start=0&count=8"
)
WALLPAPER_BING_FEED = "https://peapix.com/bing/feed"
WALLPAPER_SPOTLIGHT_FEED = "https://peapix.com/spotlight/feed"
WALLPAPER_FEED_SIZE = 7

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)

DEFAULT_SITE_NAME = "灰色轨迹"
DEFAULT_SITE_DESCRIPTION = (
    "一个优雅、快速、易于部署的书签（网址）收藏与分享平台"
)
DEFAULT_FOOTER_TEXT = "曾梦想仗剑走天涯"
DEFAULT_HITOKOTO = "疏影横斜水清浅,暗香浮动月黄昏。"
DEFAULT_BG_COLOR = "#fdf8f3"
NO_URL_PLACEHOLDER = "未提供链接"

FONT_MAP = {
    "Noto Sans SC": "https://fonts.googleapis.com/css2?family=Noto+Sans+SC:wght@400;500;700&display=swap",
    "Noto Serif SC": "https://fonts.googleapis.com/css2?family=Noto+Serif+SC:wght@400;700&display=swap",
    "ZCOOL KuaiLe": "https://fonts.googleapis.com/css2?family=ZCOOL+KuaiLe&display=swap",
    "ZCOOL XiaoWei": "https://fonts.googleapis.com/css2?family=ZCOOL+XiaoWei&display=swap",
    "Ma Shan Zheng": "https://fonts.googleapis.com/css2?family=Ma+Shan+Zheng&display=swap",
    "Long Cang": "https://fonts.googleapis.com/css2?family=Long+Cang&display=swap",
    "LXGW WenKai": "https://cdn.jsdelivr.net/npm/lxgw-wenkai-webfont@1.7.0/style.css",
    "Inter": "https://fonts.googleapis.com/css2?family=Inter:wght@400;500;700&display=swap",
    "Roboto": "https://fonts.googleapis.com/css2?family=Roboto:wght@400;500;700&display=swap",
}

# key, field, kind, default
#   bool → only the literal "true" is truthy
#   flag → "true" or "1"
#   text → stored verbatim
SETTING_SPECS = (
    ("layout_hide_desc", "hide_desc", "bool", False),
    ("layout_hide_links", "hide_links", "bool", False),
    ("layout_hide_category", "hide_category", "bool", False),
    ("layout_hide_title", "hide_title", "bool", False),
    ("home_title_size", "title_size", "text", ""),
    ("home_title_color", "title_color", "text", ""),
    ("layout_hide_subtitle", "hide_subtitle", "bool", False),
    ("home_subtitle_size", "subtitle_size", "text", ""),
    ("home_subtitle_color", "subtitle_color", "text", ""),
    ("home_hide_stats", "hide_stats", "bool", False),
    ("home_stats_size", "stats_size", "text", ""),
    ("home_stats_color", "stats_color", "text", ""),
    ("home_hide_hitokoto", "hide_hitokoto", "bool", False),
    ("home_hitokoto_size", "hitokoto_size", "text", ""),
    ("home_hitokoto_color", "hitokoto_color", "text", ""),
    ("home_hide_github", "hide_github", "flag", False),
    ("home_hide_admin", "hide_admin", "flag", False),
    ("home_custom_font_url", "custom_font_url", "text", ""),
    ("home_title_font", "title_font", "text", ""),
    ("home_subtitle_font", "subtitle_font", "text", ""),
    ("home_stats_font", "stats_font", "text", ""),
    ("home_hitokoto_font", "hitokoto_font", "text", ""),
    ("home_site_name", "site_name", "text", ""),
    ("home_site_description", "site_description", "text", ""),
    ("home_search_engine_enabled", "search_engine_enabled", "bool", False),
    ("home_default_category", "default_category", "text", ""),
    ("home_remember_last_category", "remember_last_category", "bool", False),
    ("layout_grid_cols", "grid_cols", "text", "4"),
    ("layout_custom_wallpaper", "custom_wallpaper", "text", ""),
    ("layout_menu_layout", "menu_layout", "text", "horizontal"),
    ("layout_random_wallpaper", "random_wallpaper", "bool", False),
    ("bing_country", "bing_country", "text", ""),
    ("layout_enable_frosted_glass", "frosted_glass", "bool", False),
    ("layout_frosted_glass_intensity", "frosted_glass_intensity", "text", "15"),
    ("layout_enable_bg_blur", "bg_blur", "bool", False),
    ("layout_bg_blur_intensity", "bg_blur_intensity", "text", "0"),
    ("layout_card_style", "card_style", "text", "style1"),
    ("layout_card_border_radius", "card_border_radius", "text", "12"),
    ("wallpaper_source", "wallpaper_source", "text", "bing"),
    ("wallpaper_cid_360", "wallpaper_cid_360", "text", "36"),
    ("card_title_font", "card_title_font", "text", ""),
    ("card_title_size", "card_title_size", "text", ""),
    ("card_title_color", "card_title_color", "text", ""),
    ("card_desc_font", "card_desc_font", "text", ""),
    ("card_desc_size", "card_desc_size", "text", ""),
    ("card_desc_color", "card_desc_color", "text", ""),
)
SETTING_KEYS = tuple(spec[0] for spec in SETTING_SPECS)

try:
    __version__ = version("iorinav")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + config
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    DATABASE=os.environ.get("DATABASE", str(DB_FILE)),
    SITE_NAME=os.environ.get("SITE_NAME", ""),
    SITE_DESCRIPTION=os.environ.get("SITE_DESCRIPTION", ""),
    FOOTER_TEXT=os.environ.get("FOOTER_TEXT", ""),
    PROJECT_URL=os.environ.get("PROJECT_URL", "https://slink.661388.xyz/iori-nav"),
    ENABLE_PUBLIC_SUBMISSION=os.environ.get("ENABLE_PUBLIC_SUBMISSION", "false"),
    KV_BACKEND=os.environ.get("KV_BACKEND", "sqlite"),
    WALLPAPER_TIMEOUT=float(os.environ.get("WALLPAPER_TIMEOUT", "5")),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def submission_enabled() -> bool:
    return str(app.config.get("ENABLE_PUBLIC_SUBMISSION")) == "true"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


################################################################################
# Sanitizers
################################################################################
_HTML_ESCAPES = (
    ("&", "&amp;"),  # must run first
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#39;"),
)
_LOOSE_URL_RE = re.compile(r"^https?://", re.I)
_WEB_SCHEME_RE = re.compile(r"^(https?):[/\\]*([^?#]*)(.*)$", re.I | re.S)
_DEFAULT_PORTS = {"http": 80, "https": 443}
_DIGITS_RE = re.compile(r"[0-9]+")
_LEADING_INT_RE = re.compile(r"\s*([+-]?[0-9]+)")


def escape_html(value) -> str:
    if not value:
        return ""
    text = str(value)
    for raw, entity in _HTML_ESCAPES:
        text = text.replace(raw, entity)
    return text


def _strict_url(raw: str) -> str | None:
    """
    Parse *raw* as an absolute URL.

    Returns the normalised form for http(s), ``None`` for any other scheme
    and raises ``ValueError`` when *raw* is not an absolute URL at all.
    Like browsers, web schemes tolerate missing or backslashed slashes
    (``http:foo``, ``https:\\a.com``) and IDN hosts come back punycoded.
    """
    m = _WEB_SCHEME_RE.match(raw)
    if m:
        raw = f"{m.group(1)}://{m.group(2).replace(chr(92), '/')}{m.group(3)}"
    parts = urlsplit(raw)
    if not parts.scheme:
        raise ValueError("relative URL")
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return None
    host = parts.hostname
    if not host or any(ch.isspace() for ch in parts.netloc):
        raise ValueError("missing or malformed host")
    port = parts.port  # ValueError on junk ports
    if ":" in host:
        host = f"[{host}]"
    elif not host.isascii():
        host = host.encode("idna").decode("ascii")  # UnicodeError is a ValueError
    userinfo, at, _ = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{host}"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc += f":{port}"
    path = quote(parts.path or "/", safe="/%:@!$&'()*+,;=-._~")
    url = f"{scheme}://{netloc}{path}"
    if parts.query:
        url += "?" + quote(parts.query, safe="/%:@!$&'()*+,;=-._~?")
    if parts.fragment:
        url += "#" + quote(parts.fragment, safe="/%:@!$&'()*+,;=-._~?#")
    return url


def sanitize_url(url) -> str:
    """
    Only http(s) links survive.  Values that do not parse as absolute URLs
    are kept verbatim when they at least start with ``http(s)://`` so that
    historic, slightly broken rows still render.
    """
    if not url:
        return ""
    trimmed = str(url).strip()
    if not trimmed:
        return ""
    try:
        return _strict_url(trimmed) or ""
    except ValueError:
        return trimmed if _LOOSE_URL_RE.match(trimmed) else ""


def normalize_sort_order(value):
    if value is None:
        return 0
    if isinstance(value, str):
        if "_" in value:  # float() accepts digit separators, browsers don't
            return SORT_ORDER_FALLBACK
        value = value.strip() or 0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return SORT_ORDER_FALLBACK
    if not math.isfinite(num):
        return SORT_ORDER_FALLBACK
    return int(num) if num.is_integer() else num


def _parse_int(value, default: int) -> int:
    """Leading-integer parse; zero and garbage both fall back to *default*."""
    m = _LEADING_INT_RE.match(str(value or ""))
    return int(m.group(1)) or default if m else default


################################################################################
# Database helpers
################################################################################
def _connect(path: str) -> sqlite3.Connection:
    db = sqlite3.connect(path, timeout=10)
    db.execute("PRAGMA foreign_keys = ON;")
    db.row_factory = sqlite3.Row
    return db


def get_db():
    if "db" not in g:
        g.db = _connect(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Categories (tree via parent_id, 0 = root)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS category (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            catelog     TEXT NOT NULL,
            sort_order  INTEGER DEFAULT 9999,
            parent_id   INTEGER DEFAULT 0,
            is_private  INTEGER DEFAULT 0,
            create_time TEXT DEFAULT CURRENT_TIMESTAMP
        );

        ------------------------------------------------------------
        -- 3.  Bookmarks
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS sites (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            name         TEXT NOT NULL,
            url          TEXT NOT NULL,
            logo         TEXT,
            "desc"       TEXT,
            catelog_id   INTEGER NOT NULL,
            catelog_name TEXT,
            sort_order   INTEGER DEFAULT 9999,
            is_private   INTEGER DEFAULT 0,
            create_time  TEXT DEFAULT CURRENT_TIMESTAMP,
            update_time  TEXT DEFAULT CURRENT_TIMESTAMP
        );

        ------------------------------------------------------------
        -- 4.  Public submissions waiting for moderation
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS pending_sites (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            name         TEXT NOT NULL,
            url          TEXT NOT NULL,
            logo         TEXT,
            "desc"       TEXT,
            catelog_id   INTEGER NOT NULL,
            catelog_name TEXT,
            create_time  TEXT DEFAULT CURRENT_TIMESTAMP
        );

        ------------------------------------------------------------
        -- 5.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        ------------------------------------------------------------
        -- 6.  Key/value store (rendered pages, migration flags)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS kv (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sites_catelog_id ON sites(catelog_id);
        CREATE INDEX IF NOT EXISTS idx_sites_sort_order ON sites(sort_order);
        """
    )
    db.commit()


def table_columns(db, table: str) -> set[str]:
    return {row["name"] for row in db.execute(f"PRAGMA table_info({table})")}


def query_all(path: str, sql: str, params: tuple = ()) -> dict:
    """
    Run one SELECT on its own connection.

    Returns ``{"results": [...]}`` or ``{"results": [], "error": exc}`` –
    callers decide whether a failed slice is fatal.
    """
    try:
        with closing(_connect(path)) as db:
            rows = db.execute(sql, params).fetchall()
    except sqlite3.Error as exc:
        return {"results": [], "error": exc}
    return {"results": [dict(r) for r in rows]}


def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value, *, commit: bool = True):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    if commit:
        db.commit()


################################################################################
# Key/value store
################################################################################
class KVError(Exception):
    """The key/value backend could not be read or written."""


class SqliteKV:
    """``kv`` table in the main database; one short connection per call."""

    def __init__(self, path: str):
        self.path = path
        self._table_ready = False

    def _open(self) -> sqlite3.Connection:
        db = _connect(self.path)
        if not self._table_ready:
            db.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT)")
            self._table_ready = True
        return db

    def get(self, key: str) -> str | None:
        try:
            with closing(self._open()) as db:
                row = db.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise KVError(f"kv get {key}: {exc}") from exc
        return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        try:
            with closing(self._open()) as db:
                db.execute(
                    "INSERT INTO kv (key,value) VALUES (?,?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (key, value),
                )
                db.commit()
        except sqlite3.Error as exc:
            raise KVError(f"kv put {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with closing(self._open()) as db:
                db.execute("DELETE FROM kv WHERE key=?", (key,))
                db.commit()
        except sqlite3.Error as exc:
            raise KVError(f"kv delete {key}: {exc}") from exc


class R2KV:
    """Objects under *prefix* in an R2 (S3-compatible) bucket."""

    def __init__(self, cfg: dict[str, str], *, prefix: str = "kv/", client=None):
        self.bucket = cfg["R2_BUCKET"]
        self.prefix = prefix
        self.client = client or _r2_client(cfg)

    def get(self, key: str) -> str | None:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=self.prefix + key)
            return obj["Body"].read().decode("utf-8")
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return None
            raise KVError(f"kv get {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise KVError(f"kv get {key}: {exc}") from exc

    def put(self, key: str, value: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self.prefix + key,
                Body=value.encode("utf-8"),
                ContentType="text/plain; charset=utf-8",
            )
        except (BotoCoreError, ClientError) as exc:
            raise KVError(f"kv put {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.prefix + key)
        except (BotoCoreError, ClientError) as exc:
            raise KVError(f"kv delete {key}: {exc}") from exc


def kv_store():
    """Process-wide KV backend, built on first use from the app config."""
    store = app.extensions.get("iorinav.kv")
    if store is None:
        cfg = r2_config()
        if app.config.get("KV_BACKEND") == "r2" and r2_is_configured(cfg):
            store = R2KV(cfg)
        else:
            if app.config.get("KV_BACKEND") == "r2":
                app.logger.warning("KV_BACKEND=r2 but R2 is not configured; using sqlite")
            store = SqliteKV(app.config["DATABASE"])
        app.extensions["iorinav.kv"] = store
    return store


################################################################################
# Schema guard
################################################################################
SCHEMA_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_sites_catelog_id ON sites(catelog_id)",
    "CREATE INDEX IF NOT EXISTS idx_sites_sort_order ON sites(sort_order)",
)
SCHEMA_COLUMNS = (
    ("sites", "is_private", "INTEGER DEFAULT 0"),
    ("sites", "catelog_name", "TEXT"),
    ("pending_sites", "catelog_name", "TEXT"),
    ("category", "is_private", "INTEGER DEFAULT 0"),
    ("category", "parent_id", "INTEGER DEFAULT 0"),
)
BACKFILL_CATELOG_NAME_SQL = """
    UPDATE sites
       SET catelog_name = (SELECT catelog FROM category WHERE category.id = sites.catelog_id)
     WHERE catelog_name IS NULL
"""


class SchemaGuard:
    """
    Bring databases created by older releases up to the current columns.

    ``ensure()`` runs on every request.  After one successful pass the
    in-memory ``migrated`` flag short-circuits it for the rest of the
    process; the ``schema_migrated_<version>`` KV key does the same for
    every other process.  Nothing here ever fails the request.
    """

    def __init__(self, version: str = SCHEMA_VERSION):
        self.version = version
        self.migrated = False

    @property
    def flag_key(self) -> str:
        return f"schema_migrated_{self.version}"

    def reset(self) -> None:
        self.migrated = False

    def ensure(self, db, kv) -> None:
        if self.migrated:
            return
        try:
            if kv.get(self.flag_key):
                self.migrated = True
                return
            self._migrate(db)
            kv.put(self.flag_key, "true")
        except (sqlite3.Error, KVError):
            app.logger.exception("Schema migration failed")
            return
        self.migrated = True
        app.logger.info("Schema migration %s completed", self.version)

    def _migrate(self, db) -> None:
        for stmt in SCHEMA_INDEXES:
            db.execute(stmt)

        existing = {
            table: table_columns(db, table)
            for table in {table for table, _, _ in SCHEMA_COLUMNS}
        }
        added = set()
        # ALTER TABLE can't be batched in SQLite; each column stands alone
        for table, column, ddl in SCHEMA_COLUMNS:
            if column in existing[table]:
                continue
            try:
                db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            except sqlite3.OperationalError as exc:
                app.logger.warning("Column %s.%s not added: %s", table, column, exc)
            else:
                added.add((table, column))

        if ("sites", "catelog_name") in added:
            db.execute(BACKFILL_CATELOG_NAME_SQL)
        db.commit()


app.extensions["iorinav.schema_guard"] = SchemaGuard()


def schema_guard() -> SchemaGuard:
    return app.extensions["iorinav.schema_guard"]


################################################################################
# Cache gateway
################################################################################
_BACKGROUND = ThreadPoolExecutor(max_workers=2, thread_name_prefix="iorinav-bg")


def _log_background_failure(future) -> None:
    exc = future.exception()
    if exc is not None:
        app.logger.error("Background task failed: %s", exc)


def run_in_background(fn, *args, **kwargs):
    """Fire-and-forget: the caller never waits and failures are only logged."""
    future = _BACKGROUND.submit(fn, *args, **kwargs)
    future.add_done_callback(_log_background_failure)
    return future


class HomeCache:
    """Rendered home page, one entry per authentication class."""

    def __init__(self, kv):
        self.kv = kv

    @staticmethod
    def key_for(authenticated: bool) -> str:
        return CACHE_KEY_PRIVATE if authenticated else CACHE_KEY_PUBLIC

    def read(self, authenticated: bool) -> str | None:
        try:
            return self.kv.get(self.key_for(authenticated))
        except KVError:
            app.logger.warning("Failed to read home cache", exc_info=True)
            return None

    def write(self, authenticated: bool, html: str) -> None:
        try:
            self.kv.put(self.key_for(authenticated), html)
        except KVError:
            app.logger.warning("Failed to write home cache", exc_info=True)

    def clear(self) -> None:
        """Delete both entries; a failed delete does not spare the other one."""
        error = None
        for key in (CACHE_KEY_PRIVATE, CACHE_KEY_PUBLIC):
            try:
                self.kv.delete(key)
            except KVError as exc:
                error = error or exc
        if error is not None:
            raise error


def home_cache() -> HomeCache:
    return HomeCache(kv_store())


def mark_cache_stale(resp):
    """Tell the admin's next home-page visit to drop the cached HTML first."""
    resp.set_cookie(
        COOKIE_CACHE_STALE, "1", max_age=COOKIE_MAX_AGE, path="/", samesite="Lax"
    )
    return resp


def parse_nav_cookies(cookies) -> dict:
    """
    Typed view of the cookies the home page cares about.

      cache_stale      → True when ``iori_cache_stale=1``
      last_category    → "all", a category id, or None
      wallpaper_index  → last shown wallpaper, -1 when unknown
    """
    last_raw = (cookies.get(COOKIE_LAST_CATEGORY) or "").strip()
    if last_raw == "all":
        last_category = "all"
    elif _DIGITS_RE.fullmatch(last_raw):
        last_category = int(last_raw)
    else:
        last_category = None

    idx_raw = (cookies.get(COOKIE_WALLPAPER_INDEX) or "").strip()
    return {
        "cache_stale": cookies.get(COOKIE_CACHE_STALE) == "1",
        "last_category": last_category,
        "wallpaper_index": int(idx_raw) if _DIGITS_RE.fullmatch(idx_raw) else -1,
    }


################################################################################
# Categories, settings, active category
################################################################################
def _sort_categories(cats: list[dict]) -> None:
    cats.sort(key=lambda c: (c["sort_order"], c["id"]))
    for cat in cats:
        _sort_categories(cat["children"])


def build_category_tree(rows) -> tuple[list[dict], dict[int, dict]]:
    """
    Flat category rows → ``(roots, by_id)``.

    Linking is one pass over the flat list, so a self-referencing or cyclic
    ``parent_id`` can't loop; such nodes simply never hang off a root.
    A ``parent_id`` that points nowhere makes the node a root.
    """
    by_id: dict[int, dict] = {}
    for row in rows:
        cat = dict(row)
        cat["children"] = []
        cat["sort_order"] = normalize_sort_order(cat.get("sort_order"))
        by_id[cat["id"]] = cat

    roots = []
    for cat in by_id.values():
        parent = cat.get("parent_id")
        if parent and parent in by_id:
            by_id[parent]["children"].append(cat)
        else:
            roots.append(cat)

    _sort_categories(roots)
    return roots, by_id


def active_branch(by_id: dict[int, dict], current_id: int | None) -> set[int]:
    """Ids of the active category and all of its ancestors."""
    seen: set[int] = set()
    node = by_id.get(current_id)
    while node is not None and node["id"] not in seen:
        seen.add(node["id"])
        node = by_id.get(node.get("parent_id"))
    return seen


def resolve_settings(rows) -> dict:
    layout = {field: default for _, field, _, default in SETTING_SPECS}
    kinds = {key: (field, kind) for key, field, kind, _ in SETTING_SPECS}
    for row in rows:
        spec = kinds.get(row["key"])
        if spec is None:
            continue
        field, kind = spec
        value = row["value"]
        if kind == "bool":
            layout[field] = value == "true"
        elif kind == "flag":
            layout[field] = value in ("true", "1")
        else:
            layout[field] = "" if value is None else value
    return layout


def resolve_active_category(
    requested: str | None, cookies: dict, layout: dict, by_id: dict[int, dict]
) -> tuple[list[int], str, bool]:
    """
    Decide which category the page shows.

    Priority: ``?catalog=`` → remembered cookie (when enabled) → configured
    default → everything.  ``all`` (any case) always means everything.
    Only the chosen category's own sites are shown, never its descendants'.
    """
    name_to_id = {cat["catelog"]: cat["id"] for cat in by_id.values() if cat.get("catelog")}
    requested = (requested or "").strip()

    if not requested:
        last = cookies.get("last_category") if layout["remember_last_category"] else None
        if last == "all":
            requested = "all"
        elif last is not None and last in by_id:
            requested = by_id[last]["catelog"]
        else:
            default = (layout["default_category"] or "").strip()
            if default and default in name_to_id:
                requested = default

    if requested.lower() == "all" or requested not in name_to_id:
        return [], "", False
    return [name_to_id[requested]], requested, True


def filter_sites(sites: list[dict], target_ids: list[int]) -> list[dict]:
    if not target_ids:
        return sites
    return [s for s in sites if s.get("catelog_id") in target_ids]


################################################################################
# Wallpaper rotation
################################################################################
def _fetch_json(url: str, *, params=None, timeout: float):
    resp = requests.get(
        url, params=params, timeout=timeout, headers={"Accept": "application/json"}
    )
    if not resp.ok:
        app.logger.warning("Wallpaper feed %s answered %s", url, resp.status_code)
        return None
    return resp.json()


def rotate_wallpaper(
    layout: dict, current_index: int, *, timeout: float = 5
) -> tuple[str | None, int]:
    """
    Advance to the next image of the configured feed.

    Returns ``(url, index)``; on any failure ``(None, current_index)`` so the
    configured wallpaper and the stored position stay as they were.
    """
    try:
        if layout["wallpaper_source"] == "360":
            cid = layout["wallpaper_cid_360"] or "36"
            payload = _fetch_json(WALLPAPER_360_API.format(cid=quote(cid)), timeout=timeout)
            if not isinstance(payload, dict) or payload.get("errno") != "0":
                return None, current_index
            items = payload.get("data") or []
        else:
            country = layout["bing_country"]
            if country == "spotlight":
                payload = _fetch_json(
                    WALLPAPER_SPOTLIGHT_FEED,
                    params={"n": WALLPAPER_FEED_SIZE},
                    timeout=timeout,
                )
            else:
                payload = _fetch_json(
                    WALLPAPER_BING_FEED,
                    params={"n": WALLPAPER_FEED_SIZE, "country": country},
                    timeout=timeout,
                )
            items = payload if isinstance(payload, list) else []
    except (requests.RequestException, ValueError) as exc:
        app.logger.warning("Random wallpaper fetch failed: %s", exc)
        return None, current_index

    if not isinstance(items, list) or not items:
        return None, current_index

    index = (current_index + 1) % len(items)
    item = items[index] if isinstance(items[index], dict) else {}
    if layout["wallpaper_source"] == "360":
        url = item.get("url") or None
        if url:
            url = url.replace("http://", "https://", 1)
    else:
        url = item.get("fullUrl") or item.get("url") or None
    return url, index


################################################################################
# Page rendering
################################################################################
class TemplateTokenUndefined(DebugUndefined):
    """A placeholder nobody filled: log it and leave ``{{ TOKEN }}`` in the page."""

    def __str__(self):
        app.logger.warning("Unreplaced template token: %s", self._undefined_name)
        return super().__str__()


PAGE_ENV = app.jinja_env.overlay(undefined=TemplateTokenUndefined)

THEME_CLASSES = {
    "default": {
        "theme": "",
        "header": "bg-primary-700 text-white border-b border-primary-600 shadow-sm dark:bg-gray-900 dark:border-gray-800",
        "container": "rounded-2xl border border-primary-100/60 bg-white/80 backdrop-blur-sm shadow-sm dark:bg-gray-800/80 dark:border-gray-700",
        "title": "text-white",
        "subtext": "text-primary-100/90 dark:text-gray-400",
        "search_input": "bg-white/15 text-white placeholder-primary-200 focus:ring-white/30 focus:bg-white/20 border-none dark:bg-gray-800/50 dark:text-gray-200 dark:placeholder-gray-500",
        "search_icon": "text-primary-200 dark:text-gray-500",
        "footer": "bg-white py-8 px-6 mt-12 border-t border-primary-100 dark:bg-gray-900 dark:border-gray-800 dark:text-gray-400",
        "hitokoto": "text-gray-500 dark:text-gray-400 ml-auto",
        "sidebar_icon": "text-gray-400 dark:text-gray-500",
    },
    "wallpaper": {
        "theme": "custom-wallpaper",
        "header": "bg-transparent border-none shadow-none transition-colors duration-300",
        "container": "rounded-2xl",
        "title": "text-gray-900 dark:text-gray-100",
        "subtext": "text-gray-600 dark:text-gray-300",
        "search_input": "bg-white/90 backdrop-blur border border-gray-200 text-gray-800 placeholder-gray-400 focus:ring-primary-200 focus:border-primary-400 focus:bg-white dark:bg-gray-800/90 dark:border-gray-600 dark:text-gray-200 dark:focus:bg-gray-800",
        "search_icon": "text-gray-400 dark:text-gray-500",
        "footer": "bg-transparent py-8 px-6 mt-12 border-none shadow-none text-black dark:text-gray-200",
        "hitokoto": "text-black dark:text-gray-200 ml-auto",
        "sidebar_icon": "text-gray-600",
    },
}

MENU_LAYOUT_CLASSES = {
    "horizontal": {
        "sidebar": "min-[550px]:hidden",
        "main": "",
        "sidebar_toggle": "!hidden",
        "mobile_toggle": "min-[550px]:hidden",
    },
    "vertical": {
        "sidebar": "",
        "main": "lg:ml-64",
        "sidebar_toggle": "",
        "mobile_toggle": "lg:hidden",
    },
}

GRID_CLASSES = {
    "5": "grid grid-cols-2 md:grid-cols-3 lg:grid-cols-5 gap-3 sm:gap-6 justify-items-center",
    "6": "grid grid-cols-2 md:grid-cols-3 lg:grid-cols-5 min-[1200px]:grid-cols-6 gap-3 sm:gap-6 justify-items-center",
    "7": "grid grid-cols-2 md:grid-cols-3 lg:grid-cols-5 xl:grid-cols-7 gap-3 sm:gap-6 justify-items-center",
}
GRID_CLASS_DEFAULT = "grid grid-cols-2 md:grid-cols-3 lg:grid-cols-4 gap-3 sm:gap-6 justify-items-center"


def resolve_theme_classes(custom_wallpaper: bool) -> dict[str, str]:
    return THEME_CLASSES["wallpaper" if custom_wallpaper else "default"]


def resolve_menu_layout(menu_layout: str) -> dict[str, str]:
    return MENU_LAYOUT_CLASSES.get(menu_layout, MENU_LAYOUT_CLASSES["vertical"])


def grid_class(grid_cols: str) -> str:
    return GRID_CLASSES.get(grid_cols, GRID_CLASS_DEFAULT)


def _style_decl(size: str, color: str, font: str) -> str:
    # admin-authored values, inserted verbatim
    decl = ""
    if size:
        decl += f"font-size: {size}px;"
    if color:
        decl += f"color: {color} !important;"
    if font:
        decl += f"font-family: {font} !important;"
    return decl


def style_attr(size: str, color: str, font: str) -> str:
    decl = _style_decl(size, color, font)
    return f'style="{decl}"' if decl else ""


def _catalog_href(name: str) -> str:
    return "?catalog=" + quote(name, safe="!*'()")


ICON_CHEVRON_DOWN = '<svg class="w-3 h-3 ml-1 opacity-70" fill="none" stroke="currentColor" viewBox="0 0 24 24"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M19 9l-7 7-7-7"></path></svg>'
ICON_CHEVRON_RIGHT = '<svg class="dropdown-arrow-icon" fill="none" stroke="currentColor" viewBox="0 0 24 24"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M9 5l7 7-7 7"></path></svg>'
ICON_TAG = '<svg xmlns="http://www.w3.org/2000/svg" class="h-5 w-5 mr-2 {cls}" fill="none" viewBox="0 0 24 24" stroke="currentColor"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M7 7h.01M7 3h5c.512 0 1.024.195 1.414.586l7 7a2 2 0 010 2.828l-7 7a2 2 0 01-2.828 0l-7-7A1.994 1.994 0 013 12V7a4 4 0 014-4z" /></svg>'
ICON_COPY = '<svg xmlns="http://www.w3.org/2000/svg" class="h-3 w-3 {cls}" fill="none" viewBox="0 0 24 24" stroke="currentColor"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M8 5H6a2 2 0 00-2 2v12a2 2 0 002 2h10a2 2 0 002-2v-1M8 5a2 2 0 002 2h2a2 2 0 002-2M8 5a2 2 0 012-2h2a2 2 0 012 2m0 0h2a2 2 0 012 2v3m2 4H10m0 0l3-3m-3 3l3 3" /></svg>'
ICON_FOLDER = '<svg xmlns="http://www.w3.org/2000/svg" fill="none" viewBox="0 0 24 24" stroke="currentColor" stroke-width="1"><path stroke-linecap="round" stroke-linejoin="round" d="M5 19a2 2 0 01-2-2V7a2 2 0 012-2h4l2 2h4a2 2 0 012 2v1M5 19h14a2 2 0 002-2v-5a2 2 0 00-2-2H9a2 2 0 00-2 2v5a2 2 0 01-2 2z" /></svg>'
ICON_SEARCH = '<svg xmlns="http://www.w3.org/2000/svg" class="h-6 w-6 absolute left-4 top-3.5 {cls}" fill="none" viewBox="0 0 24 24" stroke="currentColor"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M21 21l-6-6m2-5a7 7 0 11-14 0 7 7 0 0114 0z" /></svg>'
ICON_MORE = '<svg xmlns="http://www.w3.org/2000/svg" class="h-5 w-5" viewBox="0 0 20 20" fill="currentColor"><path d="M6 10a2 2 0 11-4 0 2 2 0 014 0zM12 10a2 2 0 11-4 0 2 2 0 014 0zM16 12a2 2 0 100-4 2 2 0 000 4z" /></svg>'
ICON_MENU = '<svg xmlns="http://www.w3.org/2000/svg" class="h-6 w-6 text-primary-500 dark:text-primary-400" fill="none" viewBox="0 0 24 24" stroke="currentColor"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M4 6h16M4 12h16M4 18h16" /></svg>'
ICON_GITHUB = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><path d="M15 22v-4a4.8 4.8 0 0 0-1-3.5c3 0 6-2 6-5.5.08-1.25-.27-2.48-1-3.5.28-1.15.28-2.35 0-3.5 0 0-1 0-3 1.5-2.64-.5-5.36-.5-8 0C6 2 5 2 5 2c-.3 1.15-.3 2.35 0 3.5A5.403 5.403 0 0 0 4 9c0 3.5 3 5.5 6 5.5-.39.49-.68 1.05-.85 1.65-.17.6-.22 1.23-.15 1.85v4"></path><path d="M9 18c-4.51 2-5-2-7-2"></path></svg>'
ICON_SHIELD = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><path d="M12 22s8-4 8-10V5l-8-3-8 3v7c0 6 8 10 8 10z"/><path d="M12 11a3 3 0 1 0 0-6 3 3 0 0 0 0 6z"/><path d="M7 18a5 5 0 0 1 10 0"/></svg>'
ICON_GEAR = '<svg xmlns="http://www.w3.org/2000/svg" class="h-5 w-5 mr-2" fill="none" viewBox="0 0 24 24" stroke="currentColor"><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M10.325 4.317c.426-1.756 2.924-1.756 3.35 0a1.724 1.724 0 002.573 1.066c1.543-.94 3.31.826 2.37 2.37a1.724 1.724 0 001.065 2.572c1.756.426 1.756 2.924 0 3.35a1.724 1.724 0 00-1.066 2.573c.94 1.543-.826 3.31-2.37 2.37a1.724 1.724 0 00-2.572 1.065c-.426 1.756-2.924 1.756-3.35 0a1.724 1.724 0 00-2.573-1.066c-1.543.94-3.31-.826-2.37-2.37a1.724 1.724 0 00-1.065-2.572c-1.756-.426-1.756-2.924 0-3.35a1.724 1.724 0 001.066-2.573c-.94-1.543.826-3.31 2.37-2.37.996.608 2.296.07 2.572-1.065z" /><path stroke-linecap="round" stroke-linejoin="round" stroke-width="2" d="M15 12a3 3 0 11-6 0 3 3 0 016 0z" /></svg>'
ICON_THEME = """<button id="themeToggleBtn" class="flex items-center justify-center p-2 rounded-lg bg-white/80 backdrop-blur shadow-md hover:bg-white text-gray-700 hover:text-amber-500 dark:bg-gray-800/80 dark:text-gray-200 dark:hover:text-yellow-300 transition-all cursor-pointer" title="切换主题">
  <svg id="themeIconSun" xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round" class="block dark:hidden"><circle cx="12" cy="12" r="5"></circle><path d="M12 1v2M12 21v2M4.22 4.22l1.42 1.42M18.36 18.36l1.42 1.42M1 12h2M21 12h2M4.22 19.78l1.42-1.42M18.36 5.64l1.42-1.42"></path></svg>
  <svg id="themeIconMoon" xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round" class="hidden dark:block"><path d="M21 12.79A9 9 0 1 1 11.21 3 7 7 0 0 0 21 12.79z"></path></svg>
</button>"""


def render_horizontal_menu(
    cats: list[dict], current: str, active_ids: set[int] = frozenset(), level: int = 0
) -> str:
    """Top-level buttons with nested dropdowns; ancestors of the active category light up too."""
    parts = []
    for cat in cats:
        exact = current == cat["catelog"]
        active = exact or cat["id"] in active_ids
        children = cat.get("children") or []
        marker = "nav-item-active" if exact else ""
        if level == 0:
            wrapper = "menu-item-wrapper relative inline-block text-left"
            link_cls = f"nav-btn {'active' if active else 'inactive'} {marker}"
            arrow = ICON_CHEVRON_DOWN if children else ""
        else:
            wrapper = "menu-item-wrapper relative block w-full"
            link_cls = f"dropdown-item {'active' if active else ''} {marker}"
            arrow = ICON_CHEVRON_RIGHT if children else ""

        html = (
            f'<div class="{wrapper}">'
            f'<a href="{_catalog_href(cat["catelog"])}" class="{link_cls}" data-id="{cat["id"]}">'
            f"{escape_html(cat['catelog'])}{arrow}</a>"
        )
        if children:
            html += (
                '<div class="dropdown-menu">'
                + render_horizontal_menu(children, current, active_ids, level + 1)
                + "</div>"
            )
        parts.append(html + "</div>")
    return "".join(parts)


def render_all_link(catalog_exists: bool) -> str:
    state = "inactive" if catalog_exists else "active nav-item-active"
    return (
        '<div class="menu-item-wrapper relative inline-block text-left">'
        f'<a href="?catalog=all" class="nav-btn {state}">全部</a>'
        "</div>"
    )


def render_vertical_menu(
    cats: list[dict], current: str, *, custom_wallpaper: bool = False, level: int = 0
) -> str:
    base = "flex items-center px-3 py-2 rounded-lg w-full transition-colors duration-200"
    idle_icon = resolve_theme_classes(custom_wallpaper)["sidebar_icon"]
    parts = []
    for cat in cats:
        active = current == cat["catelog"]
        state = (
            "bg-secondary-100 text-primary-700 dark:bg-gray-800 dark:text-primary-400"
            if active
            else "hover:bg-gray-100 text-gray-700 dark:text-gray-300 dark:hover:bg-gray-800"
        )
        icon_cls = "text-primary-600 dark:text-primary-400" if active else idle_icon
        parts.append(
            f'<a href="{_catalog_href(cat["catelog"])}" data-id="{cat["id"]}" '
            f'class="{base} {state}" style="padding-left: {12 + level * 12}px">'
            f"{ICON_TAG.format(cls=icon_cls)}{escape_html(cat['catelog'])}</a>"
        )
        if cat.get("children"):
            parts.append(
                render_vertical_menu(
                    cat["children"],
                    current,
                    custom_wallpaper=custom_wallpaper,
                    level=level + 1,
                )
            )
    return "".join(parts)


def render_site_card(site: dict, index: int, layout: dict) -> str:
    raw_name = site.get("name") or "未命名"
    raw_catalog = site.get("catelog_name") or "未分类"
    raw_desc = site.get("desc") or "暂无描述"
    url = sanitize_url(site.get("url"))
    display_url = url or NO_URL_PLACEHOLDER
    logo = sanitize_url(site.get("logo"))
    initial = escape_html((raw_name.strip()[:1] or "站").upper())
    name = escape_html(raw_name)
    catalog = escape_html(raw_catalog)
    desc = escape_html(raw_desc)
    compact = _parse_int(layout["grid_cols"], 4) >= 5

    desc_html = (
        ""
        if layout["hide_desc"]
        else f'<p class="mt-2 text-sm text-gray-600 dark:text-gray-400 leading-relaxed line-clamp-2" title="{desc}">{desc}</p>'
    )

    links_html = ""
    if not layout["hide_links"]:
        btn_state = (
            "bg-accent-100 text-accent-700 hover:bg-accent-200 dark:bg-accent-900/30 dark:text-accent-300 dark:hover:bg-accent-900/50"
            if url
            else "bg-gray-200 text-gray-400 cursor-not-allowed dark:bg-gray-700 dark:text-gray-500"
        )
        links_html = (
            '<div class="mt-3 flex items-center justify-between">'
            f'<span class="text-xs text-primary-600 dark:text-primary-400 truncate flex-1 min-w-0 mr-2" title="{escape_html(display_url)}">{escape_html(display_url)}</span>'
            f'<button class="copy-btn relative flex items-center px-2 py-1 {btn_state} rounded-full text-xs font-medium transition-colors" data-url="{escape_html(url)}" {"" if url else "disabled"}>'
            + ICON_COPY.format(cls="" if compact else "mr-1")
            + ("" if compact else '<span class="copy-text">复制</span>')
            + '<span class="copy-success hidden absolute -top-8 right-0 bg-accent-500 text-white text-xs px-2 py-1 rounded shadow-md">已复制!</span>'
            "</button></div>"
        )

    category_html = (
        ""
        if layout["hide_category"]
        else f'<span class="inline-flex items-center px-2 py-0.5 mt-1 rounded-full text-xs font-medium bg-secondary-100 text-primary-700 dark:bg-secondary-800 dark:text-primary-300">{catalog}</span>'
    )

    if logo:
        icon_html = f'<img src="{escape_html(logo)}" alt="{name}" class="w-10 h-10 rounded-lg object-cover bg-gray-100 dark:bg-gray-700" decoding="async" loading="lazy">'
    else:
        icon_html = f'<div class="w-10 h-10 rounded-lg bg-primary-600 flex items-center justify-center text-white font-semibold text-lg shadow-inner">{initial}</div>'

    if layout["frosted_glass"]:
        card_cls = "site-card group h-full flex flex-col overflow-hidden transition-all frosted-glass-effect"
    else:
        card_cls = "site-card group h-full flex flex-col bg-white border border-primary-100/60 shadow-sm overflow-hidden dark:bg-gray-800 dark:border-gray-700"
    if layout["card_style"] == "style2":
        card_cls += " style-2"

    delay = min(index, 20) * 30  # later cards share the 20th card's delay
    anim = f' style="animation-delay: {delay}ms"' if delay > 0 else ""
    target = ' target="_blank" rel="noopener noreferrer"' if url else ""

    return (
        f'<div class="{card_cls} card-anim-enter"{anim} data-id="{site.get("id")}" '
        f'data-name="{escape_html(site.get("name"))}" data-url="{escape_html(url)}" '
        f'data-catalog="{catalog}" data-desc="{desc}">'
        '<div class="site-card-content">'
        f'<a href="{escape_html(url or "#")}"{target} class="block">'
        '<div class="flex items-start">'
        f'<div class="site-icon flex-shrink-0 mr-4 transition-all duration-300">{icon_html}</div>'
        '<div class="flex-1 min-w-0">'
        f'<h3 class="site-title text-base font-medium text-gray-900 dark:text-gray-100 truncate transition-all duration-300 origin-left" title="{name}">{name}</h3>'
        f"{category_html}</div></div>{desc_html}</a>{links_html}</div></div>"
    )


def render_empty_state(has_categories: bool, *, show_admin_link: bool) -> str:
    if has_categories:
        title, sub = "暂无书签", "该分类下还没有添加任何书签。"
    else:
        title, sub = "欢迎使用 iori-nav", "项目初始化完成，请前往后台添加分类和书签。"
    admin = ""
    if show_admin_link:
        admin = (
            '<a href="/admin" target="_blank" class="inline-flex items-center px-6 py-3 bg-primary-600 hover:bg-primary-700 text-white rounded-xl transition-all shadow-lg">'
            f"{ICON_GEAR}前往管理后台</a>"
        )
    return (
        '<div class="col-span-full flex flex-col items-center justify-center py-24 text-center animate-fade-in">'
        f'<div class="w-32 h-32 mb-6 text-gray-200 dark:text-gray-700/50">{ICON_FOLDER}</div>'
        f'<h3 class="text-xl font-medium text-gray-600 dark:text-gray-300 mb-2">{title}</h3>'
        f'<p class="text-gray-400 dark:text-gray-500 max-w-md mx-auto mb-8">{sub}</p>'
        f"{admin}</div>"
    )


def render_sites_grid(sites: list[dict], layout: dict, *, has_categories: bool) -> str:
    if not sites:
        return render_empty_state(has_categories, show_admin_link=not layout["hide_admin"])
    return "".join(render_site_card(site, i, layout) for i, site in enumerate(sites))


SEARCH_ENGINES = (("local", "站内"), ("google", "Google"), ("baidu", "Baidu"), ("bing", "Bing"))


def render_search_box(layout: dict, theme: dict, *, input_id: str = "") -> str:
    engines = ""
    if layout["search_engine_enabled"]:
        options = "".join(
            f'<label class="search-engine-option{" active" if key == "local" else ""}" data-engine="{key}"><span>{label}</span></label>'
            for key, label in SEARCH_ENGINES
        )
        engines = f'<div class="flex justify-center items-center gap-3 mb-4 text-sm select-none search-engine-wrapper">{options}</div>'
    id_attr = f'id="{input_id}" ' if input_id else ""
    return (
        f"{engines}<div class=\"relative\">"
        f'<input {id_attr}type="text" name="search" placeholder="搜索书签..." '
        f'class="search-input-target w-full pl-12 pr-4 py-3.5 rounded-2xl transition-all shadow-lg outline-none focus:outline-none focus:ring-2 {theme["search_input"]}" autocomplete="off">'
        f'{ICON_SEARCH.format(cls=theme["search_icon"])}</div>'
    )


def render_header(layout: dict, theme: dict, *, site_name: str, site_description: str, horizontal_menu: str) -> str:
    title_html = (
        ""
        if layout["hide_title"]
        else f'<h1 class="text-3xl md:text-4xl font-bold tracking-tight mb-3 {theme["title"]}" {style_attr(layout["title_size"], layout["title_color"], layout["title_font"])}>{site_name}</h1>'
    )
    subtitle_html = (
        ""
        if layout["hide_subtitle"]
        else f'<p class="{theme["subtext"]} opacity-90 text-sm md:text-base" {style_attr(layout["subtitle_size"], layout["subtitle_color"], layout["subtitle_font"])}>{site_description}</p>'
    )
    vertical = (
        f'<div class="max-w-4xl mx-auto text-center relative z-10 {theme["theme"]} py-8">'
        f'<div class="mb-8">{title_html}{subtitle_html}</div>'
        f'<div class="relative max-w-xl mx-auto">{render_search_box(layout, theme)}</div>'
        "</div>"
    )
    if layout["menu_layout"] != "horizontal":
        return vertical

    horizontal = (
        f'<div class="max-w-5xl mx-auto text-center relative z-10 {theme["theme"]}">'
        f'<div class="max-w-4xl mx-auto mb-8">{title_html}{subtitle_html}</div>'
        f'<div class="relative max-w-xl mx-auto mb-8">{render_search_box(layout, theme, input_id="headerSearchInput")}</div>'
        '<div class="relative max-w-5xl mx-auto">'
        '<div id="horizontalCategoryNav" class="flex flex-wrap justify-center items-center gap-3 overflow-hidden transition-all duration-300" style="max-height: 60px;">'
        f"{horizontal_menu}"
        '<div id="horizontalMoreWrapper" class="relative hidden">'
        f'<button id="horizontalMoreBtn" class="nav-btn inactive">{ICON_MORE}</button>'
        '<div id="horizontalMoreDropdown" class="dropdown-menu hidden absolute mt-2 w-auto z-50"></div>'
        "</div></div></div></div>"
    )
    return (
        f'<div class="min-[550px]:hidden">{vertical}</div>'
        f'<div class="hidden min-[550px]:block">{horizontal}</div>'
    )


def render_corner_actions(layout: dict, menu: dict, *, project_url: str) -> tuple[str, str]:
    """Left (sidebar toggle, project link) and right (theme, admin) floating buttons."""
    horizontal = layout["menu_layout"] == "horizontal"
    github = ""
    admin = ""
    if horizontal and not layout["hide_github"]:
        github = (
            f'<a href="{escape_html(project_url)}" target="_blank" class="fixed top-4 left-4 z-50 hidden min-[550px]:flex items-center justify-center p-2 rounded-lg bg-white/80 backdrop-blur shadow-md hover:bg-white text-gray-700 dark:bg-gray-800/80 dark:text-gray-200 transition-all" title="GitHub">'
            f"{ICON_GITHUB}</a>"
        )
    if horizontal and not layout["hide_admin"]:
        admin = (
            '<a href="/admin" target="_blank" class="flex items-center justify-center p-2 rounded-lg bg-white/80 backdrop-blur shadow-md hover:bg-white text-gray-700 hover:text-primary-600 dark:bg-gray-800/80 dark:text-gray-200 transition-all" title="后台管理">'
            f"{ICON_SHIELD}</a>"
        )
    left = (
        f'<div class="fixed top-4 left-4 z-50 {menu["mobile_toggle"]}">'
        '<button id="sidebarToggle" class="p-2 rounded-lg bg-white dark:bg-gray-800 shadow-md hover:bg-gray-100 dark:hover:bg-gray-700">'
        f"{ICON_MENU}</button></div>{github}"
    )
    right = f'<div class="fixed top-4 right-4 z-50 flex items-center gap-3">{ICON_THEME}{admin}</div>'
    return left, right


def render_background_layer(layout: dict) -> str:
    wallpaper = sanitize_url(layout["custom_wallpaper"])
    base = "position: fixed; top: 0; left: 0; width: 100%; height: 100%; z-index: -9999; pointer-events: none;"
    if not wallpaper:
        return f'<div id="fixed-background" style="{base} background-color: {DEFAULT_BG_COLOR};"></div>'
    # scale(1.02) hides the blurred edge
    blur = (
        f"filter: blur({layout['bg_blur_intensity']}px); transform: scale(1.02);"
        if layout["bg_blur"]
        else ""
    )
    return (
        f'<div id="fixed-background" style="{base} overflow: hidden;">'
        f'<img src="{escape_html(wallpaper)}" alt="" style="width: 100%; height: 100%; object-fit: cover; {blur}" />'
        "</div>"
    )


def used_font_links(layout: dict) -> list[str]:
    """Stylesheet URLs for the fonts that visible elements actually use."""
    fonts: list[str] = []
    candidates = (
        (not layout["hide_title"], layout["title_font"]),
        (not layout["hide_subtitle"], layout["subtitle_font"]),
        (not layout["hide_stats"], layout["stats_font"]),
        (not layout["hide_hitokoto"], layout["hitokoto_font"]),
        (True, layout["card_title_font"]),
        (True, layout["card_desc_font"]),
    )
    for visible, font in candidates:
        if visible and font and font not in fonts:
            fonts.append(font)
    links = [FONT_MAP[f] for f in fonts if f in FONT_MAP]
    custom = sanitize_url(layout["custom_font_url"])
    if custom:
        links.append(custom)
    return links


def _script_json(value) -> str:
    return json.dumps(value, ensure_ascii=False).replace("<", "\\u003c")


def client_layout_config(layout: dict) -> dict:
    return {
        "hideDesc": layout["hide_desc"],
        "hideLinks": layout["hide_links"],
        "hideCategory": layout["hide_category"],
        "gridCols": layout["grid_cols"],
        "cardStyle": layout["card_style"],
        "enableFrostedGlass": layout["frosted_glass"],
        "rememberLastCategory": layout["remember_last_category"],
        "randomWallpaper": layout["random_wallpaper"],
        "wallpaperSource": layout["wallpaper_source"],
        "wallpaperCid360": layout["wallpaper_cid_360"],
        "bingCountry": layout["bing_country"],
    }


def render_head_extra(layout: dict, all_sites: list[dict]) -> str:
    parts = []

    hide_rules = ""
    if layout["hide_github"]:
        hide_rules += 'a[title="GitHub"] { display: none !important; }'
    if layout["hide_admin"]:
        hide_rules += 'a[href^="/admin"] { display: none !important; }'
    if hide_rules:
        parts.append(f"<style>{hide_rules}</style>")

    parts.append(GLOBAL_SCROLL_CSS)

    radius = _parse_int(layout["card_border_radius"], 12)
    blur = re.sub(r"[^0-9]", "", str(layout["frosted_glass_intensity"] or "15")) or "15"
    parts.append(
        f"<style>:root {{ --card-padding: 1.25rem; --card-radius: {radius}px; --frosted-glass-blur: {blur}px; }}</style>"
    )

    parts.extend(f'<link rel="stylesheet" href="{escape_html(href)}">' for href in used_font_links(layout))

    card_css = ""
    title_decl = _style_decl(layout["card_title_size"], layout["card_title_color"], layout["card_title_font"])
    if title_decl:
        card_css += f".site-title {{ {title_decl} }}"
    desc_decl = _style_decl(layout["card_desc_size"], layout["card_desc_color"], layout["card_desc_font"])
    if desc_decl:
        card_css += f".site-card p {{ {desc_decl} }}"
    if card_css:
        parts.append(f"<style>{card_css}</style>")

    parts.append(f"<script>window.IORI_SITES = {_script_json(all_sites)};</script>")
    parts.append(
        f"<script>window.IORI_LAYOUT_CONFIG = {_script_json(client_layout_config(layout))};</script>"
    )
    return "\n".join(parts)


def site_identity(layout: dict) -> dict[str, str]:
    return {
        "site_name": layout["site_name"] or app.config.get("SITE_NAME") or DEFAULT_SITE_NAME,
        "site_description": layout["site_description"]
        or app.config.get("SITE_DESCRIPTION")
        or DEFAULT_SITE_DESCRIPTION,
        "footer_text": app.config.get("FOOTER_TEXT") or DEFAULT_FOOTER_TEXT,
    }


def render_page_template(source: str, tokens: dict) -> str:
    return PAGE_ENV.from_string(source).render(
        {k: Markup(v) for k, v in tokens.items()}
    )


def render_home_page(
    *,
    layout: dict,
    roots: list[dict],
    categories: list[dict],
    by_id: dict[int, dict],
    sites: list[dict],
    all_sites: list[dict],
    current: str,
    catalog_exists: bool,
) -> str:
    """Everything the home page shows, as one HTML string."""
    custom_wallpaper = bool(layout["custom_wallpaper"])
    theme = resolve_theme_classes(custom_wallpaper)
    menu = resolve_menu_layout(layout["menu_layout"])
    identity = site_identity(layout)
    site_name = escape_html(identity["site_name"])
    site_description = escape_html(identity["site_description"])

    current_id = next((c["id"] for c in by_id.values() if c["catelog"] == current), None)
    horizontal_menu = render_all_link(catalog_exists) + render_horizontal_menu(
        roots, current, active_branch(by_id, current_id)
    )
    left_action, right_action = render_corner_actions(
        layout, menu, project_url=app.config.get("PROJECT_URL") or ""
    )

    heading = (
        f"{current} · {len(sites)} 个书签" if current else f"全部收藏 · {len(sites)} 个书签"
    )
    show_stats_row = not layout["hide_stats"] or not layout["hide_hitokoto"]

    tokens = {
        "HEAD_EXTRA": render_head_extra(layout, all_sites),
        "SITE_NAME": site_name,
        "SITE_DESCRIPTION": site_description,
        "BODY_CLASS": theme["theme"],
        "BACKGROUND_LAYER": render_background_layer(layout),
        "HEADER_CONTENT": render_header(
            layout,
            theme,
            site_name=site_name,
            site_description=site_description,
            horizontal_menu=horizontal_menu,
        ),
        "HEADER_CLASS": theme["header"],
        "CONTAINER_CLASS": theme["container"],
        "FOOTER_CLASS": theme["footer"],
        "HITOKOTO_CLASS": theme["hitokoto"],
        "LEFT_TOP_ACTION": left_action,
        "RIGHT_TOP_ACTION": right_action,
        "FOOTER_TEXT": escape_html(identity["footer_text"]),
        "CATALOG_EXISTS": "true" if catalog_exists else "false",
        "CATALOG_LINKS": render_vertical_menu(
            roots, current, custom_wallpaper=custom_wallpaper
        ),
        "SUBMISSION_CLASS": "" if submission_enabled() else "hidden",
        "DATALIST_OPTIONS": "".join(
            f'<option value="{escape_html(c["catelog"])}">' for c in categories
        ),
        "TOTAL_SITES": str(len(sites)),
        "CATALOG_COUNT": str(len(categories)),
        "HEADING_TEXT": escape_html(heading),
        "HEADING_DEFAULT": escape_html(heading),
        "HEADING_ACTIVE": escape_html(current) if catalog_exists else "",
        "STATS_VISIBLE": "hidden" if layout["hide_stats"] else "",
        "STATS_STYLE": style_attr(layout["stats_size"], layout["stats_color"], layout["stats_font"]),
        "STATS_ROW_CLASS": "my-8" if show_stats_row else "hidden",
        "HITOKOTO_VISIBLE": "hidden" if layout["hide_hitokoto"] else "",
        "HITOKOTO_CONTENT": "" if layout["hide_hitokoto"] else DEFAULT_HITOKOTO,
        "HITOKOTO_STYLE": style_attr(
            layout["hitokoto_size"], layout["hitokoto_color"], layout["hitokoto_font"]
        ),
        "GRID_CLASS": grid_class(layout["grid_cols"]),
        "SITES_GRID": render_sites_grid(sites, layout, has_categories=bool(categories)),
        "CURRENT_YEAR": str(datetime.now(timezone.utc).year),
        "SIDEBAR_CLASS": menu["sidebar"],
        "MAIN_CLASS": menu["main"],
        "SIDEBAR_TOGGLE_CLASS": menu["sidebar_toggle"],
        "CLIENT_SCRIPT": CLIENT_SCRIPT,
    }
    return render_page_template(TEMPL_HOME, tokens)


GLOBAL_SCROLL_CSS = """<style>
  html, body { margin: 0; padding: 0; width: 100%; height: 100%; overflow: hidden; }
  #app-scroll { width: 100%; height: 100%; overflow-y: auto; overflow-x: hidden; -webkit-overflow-scrolling: touch; }
  body { background-color: transparent !important; }
  #fixed-background { transition: background-color 0.3s ease, filter 0.3s ease; }
  @supports (-webkit-touch-callout: none) { #fixed-background { height: -webkit-fill-available; } }
</style>"""

# Browser side of the page: remembered category cookie, copy buttons, local
# and external search, and the public submission modal.
CLIENT_SCRIPT = """<script>
(function () {
  var config = window.IORI_LAYOUT_CONFIG || {};
  var engines = {
    google: "https://www.google.com/search?q=",
    baidu: "https://www.baidu.com/s?wd=",
    bing: "https://www.bing.com/search?q="
  };
  var engine = "local";

  document.addEventListener("click", function (ev) {
    var link = ev.target.closest("a[href^='?catalog=']");
    if (link && config.rememberLastCategory) {
      document.cookie = "iori_last_category=" + (link.dataset.id || "all") +
        "; path=/; max-age=31536000; SameSite=Lax";
    }

    var copy = ev.target.closest(".copy-btn");
    if (copy && copy.dataset.url && navigator.clipboard) {
      ev.preventDefault();
      ev.stopPropagation();
      navigator.clipboard.writeText(copy.dataset.url).then(function () {
        var done = copy.querySelector(".copy-success");
        if (!done) return;
        done.classList.remove("hidden");
        setTimeout(function () { done.classList.add("hidden"); }, 1500);
      });
    }

    var option = ev.target.closest(".search-engine-option");
    if (option) {
      engine = option.dataset.engine || "local";
      document.querySelectorAll(".search-engine-option").forEach(function (el) {
        el.classList.toggle("active", el.dataset.engine === engine);
      });
      filterSites("");
    }
  });

  function filterSites(term) {
    term = term.trim().toLowerCase();
    document.querySelectorAll("#sitesGrid .site-card").forEach(function (card) {
      var text = [card.dataset.name, card.dataset.desc, card.dataset.url].join(" ").toLowerCase();
      card.style.display = !term || text.indexOf(term) !== -1 ? "" : "none";
    });
  }

  document.querySelectorAll(".search-input-target").forEach(function (input) {
    input.addEventListener("input", function () {
      if (engine === "local") filterSites(input.value);
    });
    input.addEventListener("keydown", function (ev) {
      if (ev.key !== "Enter" || engine === "local" || !input.value.trim()) return;
      window.open(engines[engine] + encodeURIComponent(input.value.trim()), "_blank", "noopener");
    });
  });

  var modal = document.getElementById("addSiteModal");
  var form = document.getElementById("addSiteForm");
  var select = document.getElementById("addSiteCatelog");

  function toggleModal(open) {
    modal.classList.toggle("opacity-0", !open);
    modal.classList.toggle("invisible", !open);
    form.classList.toggle("translate-y-8", !open);
  }

  function loadCategories() {
    if (select.options.length) return;
    fetch("/api/categories?pageSize=1000")
      .then(function (resp) { return resp.json(); })
      .then(function (body) {
        (body.data || []).forEach(function (cat) {
          var opt = document.createElement("option");
          opt.value = cat.id;
          opt.textContent = cat.catelog;
          select.appendChild(opt);
        });
      });
  }

  var openBtn = document.getElementById("addSiteBtnSidebar");
  if (openBtn && modal) {
    openBtn.addEventListener("click", function () { loadCategories(); toggleModal(true); });
    document.getElementById("cancelAddSite").addEventListener("click", function () { toggleModal(false); });
    form.addEventListener("submit", function (ev) {
      ev.preventDefault();
      var payload = {
        name: form.elements.name.value,
        url: form.elements.url.value,
        logo: form.elements.logo.value,
        desc: form.elements.desc.value,
        catelog_id: select.value
      };
      fetch("/api/config/submit", {
        method: "POST",
        headers: { "Content-Type": "application/json" },
        body: JSON.stringify(payload)
      })
        .then(function (resp) { return resp.json(); })
        .then(function (body) {
          alert(body.message || "已提交");
          if (body.code === 201 || body.code === 200) {
            form.reset();
            toggleModal(false);
          }
        });
    });
  }
})();
</script>"""

TEMPL_HOME = """<!doctype html>
<html lang="zh-CN">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{{ SITE_NAME }}</title>
<meta name="description" content="{{ SITE_DESCRIPTION }}">
<script src="https://cdn.tailwindcss.com"></script>
{{ HEAD_EXTRA }}
</head>
<body class="bg-secondary-50 dark:bg-gray-900 font-sans text-gray-800 dark:text-gray-100 relative {{ BODY_CLASS }}">
{{ BACKGROUND_LAYER }}
<div id="app-scroll">
{{ LEFT_TOP_ACTION }}
{{ RIGHT_TOP_ACTION }}
<aside id="sidebar" class="fixed left-0 top-0 h-full w-64 bg-white/90 dark:bg-gray-900/90 z-40 {{ SIDEBAR_CLASS }}">
  <div class="p-4 font-semibold">{{ SITE_NAME }}</div>
  <nav id="categoryNav" class="px-2 space-y-1">
    <a href="?catalog=all" class="flex items-center px-3 py-2 rounded-lg w-full">全部</a>
    {{ CATALOG_LINKS }}
  </nav>
  <div class="p-4 {{ SUBMISSION_CLASS }}">
    <button id="addSiteBtnSidebar" class="w-full px-3 py-2 rounded-lg bg-primary-600 text-white">提交书签</button>
  </div>
  <button id="sidebarCollapse" class="{{ SIDEBAR_TOGGLE_CLASS }}" title="收起侧边栏">&laquo;</button>
</aside>
<main id="main" class="{{ MAIN_CLASS }}">
  <header class="px-4 py-10 {{ HEADER_CLASS }}">
    {{ HEADER_CONTENT }}
  </header>
  <section class="max-w-7xl mx-auto px-4">
    <div class="flex items-center {{ STATS_ROW_CLASS }}">
      <h2 id="sitesHeading" class="text-lg font-medium {{ STATS_VISIBLE }}" data-default="{{ HEADING_DEFAULT }}" data-active="{{ HEADING_ACTIVE }}" data-catalog-exists="{{ CATALOG_EXISTS }}" {{ STATS_STYLE }}>{{ HEADING_TEXT }}</h2>
      <p id="hitokoto" class="{{ HITOKOTO_CLASS }} {{ HITOKOTO_VISIBLE }}" {{ HITOKOTO_STYLE }}>{{ HITOKOTO_CONTENT }}</p>
    </div>
    <div class="p-4 {{ CONTAINER_CLASS }}">
      <div id="sitesGrid" class="{{ GRID_CLASS }}" data-total="{{ TOTAL_SITES }}" data-categories="{{ CATALOG_COUNT }}">
        {{ SITES_GRID }}
      </div>
    </div>
  </section>
  <footer class="{{ FOOTER_CLASS }}">
    <p class="text-center text-sm">&copy; {{ CURRENT_YEAR }} {{ SITE_NAME }} · {{ FOOTER_TEXT }}</p>
  </footer>
</main>
<div id="addSiteModal" class="fixed inset-0 z-50 opacity-0 invisible {{ SUBMISSION_CLASS }}">
  <form id="addSiteForm" class="max-w-md mx-auto mt-24 p-6 rounded-2xl bg-white dark:bg-gray-800 translate-y-8">
    <input id="addSiteName" name="name" placeholder="名称" required>
    <input id="addSiteUrl" name="url" placeholder="https://" required>
    <input id="addSiteLogo" name="logo" placeholder="Logo URL">
    <textarea id="addSiteDesc" name="desc" placeholder="描述"></textarea>
    <input id="addSiteCatelogName" list="catalogOptions" placeholder="分类">
    <datalist id="catalogOptions">{{ DATALIST_OPTIONS }}</datalist>
    <select id="addSiteCatelog" name="catelog_id"></select>
    <button type="submit">提交</button>
    <button type="button" id="cancelAddSite">取消</button>
  </form>
</div>
</div>
{{ CLIENT_SCRIPT }}
</body>
</html>
"""


################################################################################
# Home page
################################################################################
def is_admin_authenticated() -> bool:
    return bool(session.get("logged_in"))


CATEGORY_SQL_ALL = "SELECT * FROM category ORDER BY sort_order ASC, id ASC"
CATEGORY_SQL_PUBLIC = (
    "SELECT * FROM category WHERE is_private = 0 ORDER BY sort_order ASC, id ASC"
)
SITES_SQL = """
    SELECT id, name, url, logo, "desc", catelog_id, catelog_name,
           sort_order, is_private, create_time, update_time
      FROM sites
     WHERE (is_private = 0 OR ? = 1)
     ORDER BY sort_order ASC, create_time DESC
"""


def fetch_home_data(path: str, *, include_private: bool) -> dict[str, dict]:
    """Categories, settings and sites, read side by side on three connections."""
    placeholders = ",".join("?" * len(SETTING_KEYS))
    queries = {
        "categories": (CATEGORY_SQL_ALL if include_private else CATEGORY_SQL_PUBLIC, ()),
        "settings": (
            f"SELECT key, value FROM settings WHERE key IN ({placeholders})",
            SETTING_KEYS,
        ),
        "sites": (SITES_SQL, (1 if include_private else 0,)),
    }
    with ThreadPoolExecutor(max_workers=len(queries)) as pool:
        futures = {
            name: pool.submit(query_all, path, sql, params)
            for name, (sql, params) in queries.items()
        }
        return {name: fut.result() for name, fut in futures.items()}


@app.before_request
def guard_schema():
    schema_guard().ensure(get_db(), kv_store())


@app.route("/")
def index():
    authenticated = is_admin_authenticated()
    cookies = parse_nav_cookies(request.cookies)
    cache = home_cache()
    cacheable = request.path == "/" and not request.query_string
    clear_stale = False

    if cacheable:
        if authenticated and cookies["cache_stale"]:
            # admin just changed something: drop both variants, skip the read
            try:
                cache.clear()
            except KVError:
                app.logger.warning("Failed to drop stale home cache", exc_info=True)
            clear_stale = True
        else:
            cached = cache.read(authenticated)
            if cached:
                return Response(
                    cached, headers={"Content-Type": HTML_CONTENT_TYPE, "X-Cache": "HIT"}
                )

    data = fetch_home_data(app.config["DATABASE"], include_private=authenticated)
    if "error" in data["categories"]:
        app.logger.error("Failed to fetch categories: %s", data["categories"]["error"])
    if "error" in data["settings"]:
        app.logger.error("Failed to fetch settings: %s", data["settings"]["error"])
    if "error" in data["sites"]:
        return Response(
            f"Failed to fetch sites: {data['sites']['error']}",
            status=500,
            mimetype="text/plain",
        )

    categories = data["categories"]["results"]
    roots, by_id = build_category_tree(categories)
    layout = resolve_settings(data["settings"]["results"])
    all_sites = data["sites"]["results"]

    target_ids, current, catalog_exists = resolve_active_category(
        request.args.get("catalog"), cookies, layout, by_id
    )
    sites = filter_sites(all_sites, target_ids)

    wallpaper_index = -1
    if layout["random_wallpaper"]:
        wallpaper, wallpaper_index = rotate_wallpaper(
            layout,
            cookies["wallpaper_index"],
            timeout=app.config.get("WALLPAPER_TIMEOUT", 5),
        )
        if wallpaper:
            layout["custom_wallpaper"] = wallpaper

    html = render_home_page(
        layout=layout,
        roots=roots,
        categories=categories,
        by_id=by_id,
        sites=sites,
        all_sites=all_sites,
        current=current,
        catalog_exists=catalog_exists,
    )

    resp = Response(html, headers={"Content-Type": HTML_CONTENT_TYPE})
    if clear_stale:
        resp.delete_cookie(COOKIE_CACHE_STALE, path="/", samesite="Lax")
    if layout["random_wallpaper"]:
        resp.headers.update(NO_STORE_HEADERS)
        if wallpaper_index >= 0:
            resp.set_cookie(
                COOKIE_WALLPAPER_INDEX,
                str(wallpaper_index),
                max_age=COOKIE_MAX_AGE,
                path="/",
                samesite="Lax",
            )
    elif cacheable:
        run_in_background(cache.write, authenticated, html)
    return resp


################################################################################
# Authentication
################################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """Check the signature age, then the payload against the stored hash."""
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False
    except BadSignature:
        return False

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row) and verify_token(row["token_hash"], handle)


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    if not session.get("logged_in"):
        return
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # one-time: burn the handle straight away
        db = get_db()
        db.execute(
            "UPDATE user SET token_hash=? WHERE id=1",
            (hash_token(secrets.token_hex(16)),),
        )
        db.commit()

        session.clear()
        session.permanent = True
        session["logged_in"] = True
        session["csrf"] = secrets.token_hex(16)
        return redirect(url_for("index"))

    return render_template_string(TEMPL_LOGIN, title=site_identity(_layout_from_db())["site_name"])


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


@app.route("/admin")
def admin():
    # the corner and empty-state admin links land on the token form,
    # which also offers logout once signed in
    return redirect(url_for("login"))


def _layout_from_db() -> dict:
    placeholders = ",".join("?" * len(SETTING_KEYS))
    try:
        rows = get_db().execute(
            f"SELECT key, value FROM settings WHERE key IN ({placeholders})", SETTING_KEYS
        ).fetchall()
    except sqlite3.Error:
        app.logger.warning("Failed to read settings", exc_info=True)
        rows = []
    return resolve_settings(rows)


################################################################################
# JSON API
################################################################################
def api_error(message: str, status: int):
    return {"code": status, "message": message}, status


def _pagination_args(default_size: int = 10) -> tuple[int, int]:
    page = request.args.get("page", "1")
    size = request.args.get("pageSize", str(default_size))
    page = max(int(page), 1) if page.isdigit() else 1
    size = min(max(int(size), 1), 10000) if size.isdigit() else default_size
    return page, size


@app.route("/api/cache/clear", methods=["POST"])
def api_cache_clear():
    if not is_admin_authenticated():
        return api_error("Unauthorized", 401)
    try:
        home_cache().clear()
    except KVError as exc:
        app.logger.exception("Failed to clear home cache")
        return api_error(f"Failed to clear cache: {exc}", 500)
    resp = make_response({"code": 200, "message": "首页缓存已清除"})
    resp.delete_cookie(COOKIE_CACHE_STALE, path="/", samesite="Lax")
    return resp


@app.route("/api/public-config")
def api_public_config():
    return {"submissionEnabled": submission_enabled()}


@app.route("/api/categories")
def api_categories():
    page, size = _pagination_args()
    where = "" if is_admin_authenticated() else "WHERE is_private = 0"
    db = get_db()
    total = db.execute(f"SELECT COUNT(*) FROM category {where}").fetchone()[0]
    rows = db.execute(
        f"SELECT * FROM category {where} ORDER BY sort_order ASC, id ASC LIMIT ? OFFSET ?",
        (size, (page - 1) * size),
    ).fetchall()
    return {
        "code": 200,
        "data": [dict(r) for r in rows],
        "total": total,
        "page": page,
        "pageSize": size,
    }


@app.route("/api/config/submit", methods=["POST"])
@rate_limit(max_requests=10, window=60)
def api_submit_site():
    if not submission_enabled():
        return api_error("Public submission is disabled", 403)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error("Invalid JSON body", 400)

    name = str(data.get("name") or "").strip()
    url = sanitize_url(data.get("url"))
    if not name or not url:
        return api_error("Name and a valid http(s) URL are required", 400)
    try:
        catelog_id = int(data.get("catelog_id"))
    except (TypeError, ValueError):
        return api_error("Category is required", 400)

    db = get_db()
    cat = db.execute(
        "SELECT id, catelog FROM category WHERE id=? AND is_private = 0", (catelog_id,)
    ).fetchone()
    if not cat:
        return api_error("Category not found", 400)

    db.execute(
        'INSERT INTO pending_sites (name, url, logo, "desc", catelog_id, catelog_name) '
        "VALUES (?,?,?,?,?,?)",
        (
            name,
            url,
            sanitize_url(data.get("logo")),
            str(data.get("desc") or "").strip(),
            cat["id"],
            cat["catelog"],
        ),
    )
    db.commit()
    return {"code": 201, "message": "提交成功,等待管理员审核"}, 201


@app.route("/api/pending")
def api_pending_list():
    if not is_admin_authenticated():
        return api_error("Unauthorized", 401)
    page, size = _pagination_args()
    db = get_db()
    total = db.execute("SELECT COUNT(*) FROM pending_sites").fetchone()[0]
    rows = db.execute(
        """SELECT p.*, COALESCE(c.catelog, p.catelog_name) AS catelog
             FROM pending_sites p
             LEFT JOIN category c ON c.id = p.catelog_id
            ORDER BY p.create_time DESC, p.id DESC
            LIMIT ? OFFSET ?""",
        (size, (page - 1) * size),
    ).fetchall()
    return {
        "code": 200,
        "data": [dict(r) for r in rows],
        "total": total,
        "page": page,
        "pageSize": size,
    }


@app.route("/api/pending/<int:pending_id>", methods=["POST"])
def api_pending_approve(pending_id: int):
    if not is_admin_authenticated():
        return api_error("Unauthorized", 401)
    db = get_db()
    row = db.execute(
        """SELECT p.*, c.catelog AS category_name
             FROM pending_sites p
             LEFT JOIN category c ON c.id = p.catelog_id
            WHERE p.id=?""",
        (pending_id,),
    ).fetchone()
    if not row:
        return api_error("Pending submission not found", 404)
    if row["category_name"] is None:
        return api_error("Category no longer exists", 400)

    db.execute(
        'INSERT INTO sites (name, url, logo, "desc", catelog_id, catelog_name, sort_order, is_private) '
        "VALUES (?,?,?,?,?,?,?,0)",
        (
            row["name"],
            row["url"],
            row["logo"],
            row["desc"],
            row["catelog_id"],
            row["category_name"],
            SORT_ORDER_FALLBACK,
        ),
    )
    db.execute("DELETE FROM pending_sites WHERE id=?", (pending_id,))
    db.commit()
    return mark_cache_stale(make_response({"code": 201, "message": "审批通过"}, 201))


@app.route("/api/pending/<int:pending_id>", methods=["DELETE"])
def api_pending_reject(pending_id: int):
    if not is_admin_authenticated():
        return api_error("Unauthorized", 401)
    db = get_db()
    cur = db.execute("DELETE FROM pending_sites WHERE id=?", (pending_id,))
    db.commit()
    if cur.rowcount == 0:
        return api_error("Pending submission not found", 404)
    return {"code": 200, "message": "已拒绝"}


@app.route("/api/settings", methods=["GET", "POST"])
def api_settings():
    if not is_admin_authenticated():
        return api_error("Unauthorized", 401)
    db = get_db()

    if request.method == "GET":
        rows = db.execute("SELECT key, value FROM settings").fetchall()
        known = set(SETTING_KEYS)
        return {"code": 200, "data": {r["key"]: r["value"] for r in rows if r["key"] in known}}

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error("Invalid JSON body", 400)

    updates = {}
    for key, value in data.items():
        if key not in SETTING_KEYS or value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        updates[key] = str(value)

    for key, value in updates.items():
        set_setting(key, value, commit=False)
    db.commit()
    return mark_cache_stale(
        make_response({"code": 200, "message": "设置已保存", "updated": sorted(updates)})
    )


################################################################################
# CLI – admin account, token, cache
################################################################################
def _create_admin(db, *, username: str) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (username, token_hash) VALUES (?,?)",
        (username, hash_token(handle)),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username (created if DB empty)")
def cli_init(username: str):
    """Initialise the DB *and* create the admin account."""
    init_db()
    db = get_db()
    token = _create_admin(db, username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    token = _rotate_token(get_db())

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("clear-cache")
def cli_clear_cache():
    """Drop both cached copies of the home page."""
    try:
        home_cache().clear()
    except KVError as exc:
        raise click.ClickException(f"Failed to clear cache: {exc}") from exc
    click.secho("Home cache cleared.", fg="green")


################################################################################
# Small pages
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="zh-CN">
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Noto Sans",sans-serif;max-width:36em;margin:4rem auto;padding:0 1rem;color:#333;background:#fdf8f3;line-height:1.6}
a{color:#2563eb}input{padding:.5rem .75rem;border:1px solid #ccc;border-radius:.5rem;width:100%;box-sizing:border-box;margin-bottom:.75rem}
button{padding:.5rem 1rem;border:0;border-radius:.5rem;background:#2563eb;color:#fff;cursor:pointer}
</style>
<h1><a href="{{ url_for('index') }}" style="text-decoration:none;color:inherit">{{ title }}</a></h1>
"""

TEMPL_EPILOG = """
</html>
"""

TEMPL_LOGIN = wrap("""
{% if session.get('logged_in') %}
  <p>已登录。 <a href="{{ url_for('logout') }}">退出</a></p>
{% else %}
  <form method="post">
    <label for="token">登录令牌</label>
    <input id="token" name="token" autocomplete="one-time-code" autofocus>
    <button type="submit">登录</button>
  </form>
{% endif %}
""")

TEMPL_404 = wrap("""
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.
     <a href="{{ url_for('index') }}">Back to the front page</a>.</p>
""")

TEMPL_403 = wrap("""
  <h2>Forbidden</h2>
  <p>This request was refused. Reload the page and try again.</p>
""")

TEMPL_500 = wrap("""
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
""")


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page; JSON under /api/."""
    if request.path.startswith("/api/"):
        return api_error("Not found", 404)
    return render_template_string(
        TEMPL_404, title=site_identity(_layout_from_db())["site_name"]
    ), 404


@app.errorhandler(403)
def forbidden(exc):
    if request.path.startswith("/api/"):
        return api_error("Forbidden", 403)
    return render_template_string(TEMPL_403, title=DEFAULT_SITE_NAME), 403


@app.errorhandler(500)
def internal_error(exc):
    app.logger.error("Unhandled error on %s: %s", request.path, exc)
    if request.path.startswith("/api/"):
        return api_error("Internal Server Error", 500)
    return render_template_string(TEMPL_500, title=DEFAULT_SITE_NAME), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
