"""
tests/test_kv.py
"""
from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from iorinav import nav
from iorinav.nav import CACHE_KEY_PRIVATE, CACHE_KEY_PUBLIC, HomeCache, KVError, R2KV, SqliteKV, app


class _FakeS3:
    """Just enough of the boto3 S3 client for R2KV."""

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise EndpointConnectionError(endpoint_url="https://r2.example")

    def get_object(self, Bucket, Key):
        self._check()
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def put_object(self, Bucket, Key, Body, ContentType):
        self._check()
        self.objects[(Bucket, Key)] = Body

    def delete_object(self, Bucket, Key):
        self._check()
        self.objects.pop((Bucket, Key), None)


R2_CFG = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "id",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "nav",
}


# ───────────────────────── sqlite ─────────────────────────────────────
def test_sqlite_kv_roundtrip(tmp_path):
    kv = SqliteKV(str(tmp_path / "kv.sqlite3"))
    assert kv.get("k") is None
    kv.put("k", "v1")
    kv.put("k", "v2")
    assert kv.get("k") == "v2"
    kv.delete("k")
    kv.delete("k")
    assert kv.get("k") is None


def test_sqlite_kv_wraps_driver_errors(tmp_path):
    kv = SqliteKV(str(tmp_path / "missing-dir" / "kv.sqlite3"))
    with pytest.raises(KVError):
        kv.get("k")


# ───────────────────────── r2 ─────────────────────────────────────────
def test_r2_kv_prefixes_keys():
    s3 = _FakeS3()
    kv = R2KV(R2_CFG, client=s3)
    kv.put("home_html_public", "<p>hi</p>")
    assert ("nav", "kv/home_html_public") in s3.objects
    assert kv.get("home_html_public") == "<p>hi</p>"
    assert kv.get("other") is None
    kv.delete("home_html_public")
    assert s3.objects == {}


def test_r2_kv_wraps_transport_errors():
    s3 = _FakeS3()
    s3.fail = True
    kv = R2KV(R2_CFG, client=s3)
    for call in (lambda: kv.get("k"), lambda: kv.put("k", "v"), lambda: kv.delete("k")):
        with pytest.raises(KVError):
            call()


def test_kv_backend_selection(monkeypatch):
    monkeypatch.delitem(app.extensions, "iorinav.kv", raising=False)
    monkeypatch.setitem(app.config, "KV_BACKEND", "r2")
    monkeypatch.setattr(nav, "r2_config", lambda: dict(R2_CFG))
    monkeypatch.setattr(nav, "_r2_client", lambda cfg: _FakeS3())
    try:
        assert isinstance(nav.kv_store(), R2KV)
    finally:
        app.extensions.pop("iorinav.kv", None)


def test_r2_backend_without_credentials_falls_back(monkeypatch, caplog):
    monkeypatch.delitem(app.extensions, "iorinav.kv", raising=False)
    monkeypatch.setitem(app.config, "KV_BACKEND", "r2")
    monkeypatch.setattr(nav, "r2_config", lambda: {})
    try:
        assert isinstance(nav.kv_store(), SqliteKV)
        assert "R2 is not configured" in caplog.text
    finally:
        app.extensions.pop("iorinav.kv", None)


# ───────────────────────── home cache ─────────────────────────────────
def test_home_cache_swallows_write_failures(caplog):
    s3 = _FakeS3()
    s3.fail = True
    cache = HomeCache(R2KV(R2_CFG, client=s3))
    cache.write(False, "<p>x</p>")
    assert cache.read(True) is None
    assert "Failed to write home cache" in caplog.text
    with pytest.raises(KVError):
        cache.clear()


def test_home_cache_clear_attempts_both_entries():
    class _PrivateStuck(SqliteKV):
        def delete(self, key):
            if key == CACHE_KEY_PRIVATE:
                raise KVError("delete failed")
            super().delete(key)

    kv = _PrivateStuck(app.config["DATABASE"])
    kv.put(CACHE_KEY_PRIVATE, "<p>admin</p>")
    kv.put(CACHE_KEY_PUBLIC, "<p>public</p>")
    with pytest.raises(KVError):
        HomeCache(kv).clear()
    assert kv.get(CACHE_KEY_PUBLIC) is None
    assert kv.get(CACHE_KEY_PRIVATE) == "<p>admin</p>"
