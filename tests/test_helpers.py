"""
tests/test_helpers.py
"""
from __future__ import annotations

import pytest

from iorinav.nav import (
    SORT_ORDER_FALLBACK,
    active_branch,
    build_category_tree,
    escape_html,
    filter_sites,
    normalize_sort_order,
    parse_nav_cookies,
    resolve_active_category,
    resolve_menu_layout,
    resolve_settings,
    resolve_theme_classes,
    sanitize_url,
)


def _cat(id_, name, sort_order=0, parent_id=0):
    return {"id": id_, "catelog": name, "sort_order": sort_order, "parent_id": parent_id}


def _layout(**rows):
    return resolve_settings([{"key": k, "value": v} for k, v in rows.items()])


# ───────────────────────── escaping / urls ────────────────────────────
@pytest.mark.parametrize(
    "raw, expected",
    [
        ("<b>\"Tom\" & 'Jerry'</b>", "&lt;b&gt;&quot;Tom&quot; &amp; &#39;Jerry&#39;&lt;/b&gt;"),
        ("&lt;", "&amp;lt;"),
        ("plain", "plain"),
        (42, "42"),
        (None, ""),
        ("", ""),
    ],
)
def test_escape_html(raw, expected):
    assert escape_html(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("https://example.com/path", "https://example.com/path"),
        ("  https://example.com/path  ", "https://example.com/path"),
        ("https://Example.COM", "https://example.com/"),
        ("http://example.com/a b", "http://example.com/a%20b"),
        ("https://example.com:443/x", "https://example.com/x"),
        ("https://example.com:8443/x?q=1#top", "https://example.com:8443/x?q=1#top"),
        ("javascript:alert(1)", ""),
        ("data:text/html,<script>", ""),
        ("ftp://example.com/file", ""),
        ("example.com", ""),
        ("/relative/path", ""),
        ("", ""),
        ("   ", ""),
        (None, ""),
    ],
)
def test_sanitize_url(raw, expected):
    assert sanitize_url(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["HTTP://", "https://exa mple.com", "https://example.com:99999/"],
)
def test_sanitize_url_keeps_unparsable_http_values_verbatim(raw):
    assert sanitize_url(raw) == raw


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("http:foo", "http://foo/"),
        ("https:/a.com", "https://a.com/"),
        ("https:\\\\a.com", "https://a.com/"),
        ("https://a.com\\b\\c", "https://a.com/b/c"),
        ("https://bücher.example/", "https://xn--bcher-kva.example/"),
    ],
)
def test_sanitize_url_normalises_like_a_browser(raw, expected):
    assert sanitize_url(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("3", 3),
        (5, 5),
        ("2.5", 2.5),
        (" 7 ", 7),
        ("abc", SORT_ORDER_FALLBACK),
        (float("nan"), SORT_ORDER_FALLBACK),
        (float("inf"), SORT_ORDER_FALLBACK),
        ([1, 2], SORT_ORDER_FALLBACK),
        (None, 0),
        ("1_000", SORT_ORDER_FALLBACK),
    ],
)
def test_normalize_sort_order(raw, expected):
    assert normalize_sort_order(raw) == expected


# ───────────────────────── category tree ──────────────────────────────
def test_tree_orders_roots_and_nests_children():
    rows = [_cat(1, "A", 2), _cat(2, "B", 1), _cat(3, "C", 0, parent_id=1)]
    roots, by_id = build_category_tree(rows)

    assert [c["catelog"] for c in roots] == ["B", "A"]
    assert [c["catelog"] for c in by_id[1]["children"]] == ["C"]
    assert by_id[2]["children"] == []


def test_tree_breaks_sort_ties_by_id_and_handles_junk_sort_order():
    rows = [_cat(5, "late", 1), _cat(4, "early", 1), _cat(6, "junk", "x")]
    roots, _ = build_category_tree(rows)
    assert [c["id"] for c in roots] == [4, 5, 6]


def test_tree_orphan_becomes_root():
    roots, _ = build_category_tree([_cat(1, "A"), _cat(2, "Lost", parent_id=99)])
    assert {c["catelog"] for c in roots} == {"A", "Lost"}


def test_tree_survives_self_reference_and_cycles():
    rows = [_cat(1, "A"), _cat(2, "Self", parent_id=2), _cat(3, "X", parent_id=4), _cat(4, "Y", parent_id=3)]
    roots, by_id = build_category_tree(rows)
    assert [c["id"] for c in roots] == [1]
    assert set(by_id) == {1, 2, 3, 4}


def test_tree_does_not_mutate_input_rows():
    rows = [_cat(1, "A", "4")]
    build_category_tree(rows)
    assert "children" not in rows[0]
    assert rows[0]["sort_order"] == "4"


def test_active_branch_walks_up_to_root():
    _, by_id = build_category_tree([_cat(1, "A"), _cat(2, "B", parent_id=1), _cat(3, "C", parent_id=2)])
    assert active_branch(by_id, 3) == {1, 2, 3}
    assert active_branch(by_id, None) == set()


def test_active_branch_stops_on_cycles():
    _, by_id = build_category_tree([_cat(3, "X", parent_id=4), _cat(4, "Y", parent_id=3)])
    assert active_branch(by_id, 3) == {3, 4}


# ───────────────────────── settings ───────────────────────────────────
def test_settings_defaults():
    layout = _layout()
    assert layout["grid_cols"] == "4"
    assert layout["menu_layout"] == "horizontal"
    assert layout["card_style"] == "style1"
    assert layout["card_border_radius"] == "12"
    assert layout["frosted_glass_intensity"] == "15"
    assert layout["bg_blur_intensity"] == "0"
    assert layout["wallpaper_source"] == "bing"
    assert layout["wallpaper_cid_360"] == "36"
    assert layout["hide_desc"] is False
    assert layout["site_name"] == ""


def test_settings_booleans_only_accept_literal_true():
    layout = _layout(layout_hide_desc="1", layout_hide_links="true", layout_hide_title="True")
    assert layout["hide_desc"] is False
    assert layout["hide_links"] is True
    assert layout["hide_title"] is False


@pytest.mark.parametrize("value, expected", [("true", True), ("1", True), ("yes", False), ("", False)])
def test_settings_github_and_admin_flags_also_accept_one(value, expected):
    layout = _layout(home_hide_github=value, home_hide_admin=value)
    assert layout["hide_github"] is expected
    assert layout["hide_admin"] is expected


def test_settings_ignore_unknown_keys_and_keep_text_verbatim():
    layout = _layout(layout_grid_cols="6", home_title_color="#f00", not_a_setting="x")
    assert layout["grid_cols"] == "6"
    assert layout["title_color"] == "#f00"
    assert "not_a_setting" not in layout


# ───────────────────────── cookies ────────────────────────────────────
def test_parse_nav_cookies():
    parsed = parse_nav_cookies(
        {"iori_cache_stale": "1", "iori_last_category": "7", "wallpaper_index": "3"}
    )
    assert parsed == {"cache_stale": True, "last_category": 7, "wallpaper_index": 3}


@pytest.mark.parametrize(
    "cookies, expected",
    [
        ({}, {"cache_stale": False, "last_category": None, "wallpaper_index": -1}),
        (
            {"iori_cache_stale": "true", "iori_last_category": "all", "wallpaper_index": "-2"},
            {"cache_stale": False, "last_category": "all", "wallpaper_index": -1},
        ),
        (
            {"iori_last_category": "7abc", "wallpaper_index": "x"},
            {"cache_stale": False, "last_category": None, "wallpaper_index": -1},
        ),
    ],
)
def test_parse_nav_cookies_rejects_malformed_values(cookies, expected):
    assert parse_nav_cookies(cookies) == expected


# ───────────────────────── active category ────────────────────────────
@pytest.fixture
def tree():
    _, by_id = build_category_tree(
        [_cat(1, "Tools", 1), _cat(2, "News", 2), _cat(3, "CLI", 0, parent_id=1)]
    )
    return by_id


def _cookies(last=None):
    return {"cache_stale": False, "last_category": last, "wallpaper_index": -1}


def test_explicit_catalog_selects_only_that_category(tree):
    assert resolve_active_category("Tools", _cookies(), _layout(), tree) == ([1], "Tools", True)


def test_explicit_catalog_is_trimmed(tree):
    assert resolve_active_category("  News ", _cookies(), _layout(), tree) == ([2], "News", True)


@pytest.mark.parametrize("word", ["all", "ALL", "All"])
def test_explicit_all_beats_cookie_and_default(tree, word):
    layout = _layout(home_remember_last_category="true", home_default_category="News")
    assert resolve_active_category(word, _cookies(1), layout, tree) == ([], "", False)


def test_remembered_cookie_used_when_enabled(tree):
    layout = _layout(home_remember_last_category="true", home_default_category="News")
    assert resolve_active_category(None, _cookies(3), layout, tree) == ([3], "CLI", True)


def test_remembered_all_overrides_default(tree):
    layout = _layout(home_remember_last_category="true", home_default_category="News")
    assert resolve_active_category("", _cookies("all"), layout, tree) == ([], "", False)


def test_cookie_ignored_when_remember_disabled(tree):
    layout = _layout(home_default_category="News")
    assert resolve_active_category("", _cookies(1), layout, tree) == ([2], "News", True)


def test_stale_cookie_id_falls_back_to_default(tree):
    layout = _layout(home_remember_last_category="true", home_default_category="News")
    assert resolve_active_category("", _cookies(404), layout, tree) == ([2], "News", True)


def test_unknown_names_show_everything(tree):
    layout = _layout(home_default_category="Gone")
    assert resolve_active_category("", _cookies(), layout, tree) == ([], "", False)
    assert resolve_active_category("Nope", _cookies(), layout, tree) == ([], "", False)


def test_filter_sites_excludes_descendants():
    sites = [{"id": 1, "catelog_id": 1}, {"id": 2, "catelog_id": 3}, {"id": 3, "catelog_id": 2}]
    assert [s["id"] for s in filter_sites(sites, [1])] == [1]
    assert filter_sites(sites, []) == sites


# ───────────────────────── theme / layout classes ─────────────────────
def test_theme_classes_switch_on_wallpaper():
    assert resolve_theme_classes(True)["theme"] == "custom-wallpaper"
    assert "bg-transparent" in resolve_theme_classes(True)["header"]
    assert resolve_theme_classes(False)["theme"] == ""
    assert "bg-primary-700" in resolve_theme_classes(False)["header"]


def test_menu_layout_classes():
    horizontal = resolve_menu_layout("horizontal")
    assert horizontal["sidebar"] == "min-[550px]:hidden"
    assert horizontal["main"] == ""
    assert horizontal["sidebar_toggle"] == "!hidden"
    vertical = resolve_menu_layout("vertical")
    assert vertical["main"] == "lg:ml-64"
    assert vertical["mobile_toggle"] == "lg:hidden"
    assert resolve_menu_layout("unknown") == vertical
