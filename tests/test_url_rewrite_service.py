"""Tests for the WordPress database URL rewriter."""

import json
import sqlite3

import pytest

from conftest import make_wp_database, read_rows
from pressbox.errors import DatabaseRewriteError
from pressbox.services.url_rewrite_service import DatabaseURLRewriter, URLReplacer, rewrite_value


@pytest.fixture
def rewriter(config):
    return DatabaseURLRewriter(config)


@pytest.fixture
def wp_db(site):
    return make_wp_database(site.database_path)


def _option(db_path, name):
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(
            "SELECT option_value FROM wp_options WHERE option_name = ?", (name,)
        ).fetchone()[0]
    finally:
        conn.close()


class TestRewriteValue:
    """Tests for serialized-aware value rewriting."""

    def test_plain_text(self):
        replacer = URLReplacer("http://s1.local", "https://example.test")

        assert rewrite_value(b"see http://s1.local/about", replacer) == b"see https://example.test/about"

    def test_https_variant_replaced(self):
        replacer = URLReplacer("http://s1.local", "https://example.test")

        assert rewrite_value(b"https://s1.local/x", replacer) == b"https://example.test/x"

    def test_serialized_lengths_recomputed(self):
        replacer = URLReplacer("http://s1.local", "https://example.test")
        value = b'a:2:{s:3:"url";s:15:"http://s1.local";s:5:"count";i:3;}'

        assert rewrite_value(value, replacer) == (
            b'a:2:{s:3:"url";s:20:"https://example.test";s:5:"count";i:3;}'
        )

    def test_nested_serialized_string(self):
        replacer = URLReplacer("http://s1.local", "http://s1.test")
        inner = b'a:1:{i:0;s:15:"http://s1.local";}'
        value = b's:%d:"%s";' % (len(inner), inner)

        expected_inner = b'a:1:{i:0;s:14:"http://s1.test";}'
        assert rewrite_value(value, replacer) == b's:%d:"%s";' % (len(expected_inner), expected_inner)

    def test_object(self):
        replacer = URLReplacer("http://s1.local", "https://example.test")
        value = b'O:8:"stdClass":1:{s:4:"home";s:15:"http://s1.local";}'

        assert rewrite_value(value, replacer) == (
            b'O:8:"stdClass":1:{s:4:"home";s:20:"https://example.test";}'
        )

    def test_broken_serialized_falls_back_to_plain(self):
        replacer = URLReplacer("http://s1.local", "http://s2.local")
        value = b's:99:"http://s1.local";'

        assert rewrite_value(value, replacer) == b's:99:"http://s2.local";'

    def test_json_escaped(self):
        replacer = URLReplacer("s1.local", "https://example.test")

        assert rewrite_value(b'{"u":"http:\\/\\/s1.local\\/"}', replacer) == (
            b'{"u":"https:\\/\\/example.test\\/"}'
        )

    def test_other_scheme_keeps_its_scheme(self):
        replacer = URLReplacer("http://s1.local", "http://s2.local")

        assert rewrite_value(b"http://s1.local/a https://s1.local/b", replacer) == (
            b"http://s2.local/a https://s2.local/b"
        )

    def test_new_url_extending_old_host_replaced_once(self):
        replacer = URLReplacer("http://s1.local", "http://s1.local.dev")

        assert rewrite_value(b"https://s1.local/x", replacer) == b"https://s1.local.dev/x"
        assert rewrite_value(b"http://s1.local/x", replacer) == b"http://s1.local.dev/x"

    def test_longer_host_not_matched(self):
        replacer = URLReplacer("http://s1.local", "http://s2.local")

        assert rewrite_value(b"http://s1.local.dev/x", replacer) == b"http://s1.local.dev/x"
        assert rewrite_value(b"http://s1.locals/x", replacer) == b"http://s1.locals/x"
        assert rewrite_value(b"see http://s1.local.", replacer) == b"see http://s2.local."

    def test_same_url_is_noop(self):
        replacer = URLReplacer("http://s1.local", "http://s1.local")

        assert rewrite_value(b"http://s1.local https://s1.local", replacer) == (
            b"http://s1.local https://s1.local"
        )


class TestRewrite:
    """Tests for DatabaseURLRewriter.rewrite and reverse."""

    def test_rewrites_scoped_columns(self, rewriter, site, wp_db):
        report = rewriter.rewrite(site, "http://s1.local", "https://example.test")

        assert _option(wp_db, "siteurl") == "https://example.test"
        assert _option(wp_db, "home") == "https://example.test"
        assert _option(wp_db, "widget_text") == (
            'a:1:{i:2;a:1:{s:4:"text";s:29:"<a href=https://example.test>";}}'
        )
        assert report.rows_changed == 7
        assert report.tables == {
            "wp_options.option_value": 3,
            "wp_posts.post_content": 1,
            "wp_posts.guid": 2,
            "wp_postmeta.meta_value": 1,
        }
        assert report.backup_path.parent == rewriter.config.backups_dir / "s1" / "db"

    def test_round_trip_is_exact(self, rewriter, site, wp_db):
        before = read_rows(wp_db)

        rewriter.rewrite(site, "http://s1.local", "https://example.test")
        rewriter.rewrite(site, "https://example.test", "http://s1.local")

        assert read_rows(wp_db) == before

    def test_round_trip_with_mixed_schemes(self, rewriter, site, wp_db):
        conn = sqlite3.connect(str(wp_db))
        conn.execute(
            "INSERT INTO wp_posts (post_content, guid) VALUES (?, ?)",
            ('<a href="https://s1.local/x">', "https://s1.local/?p=3"),
        )
        conn.commit()
        conn.close()
        before = read_rows(wp_db)

        rewriter.rewrite(site, "http://s1.local", "http://s2.local")
        moved = read_rows(wp_db)
        rewriter.rewrite(site, "http://s2.local", "http://s1.local")

        assert (3, '<a href="https://s2.local/x">', "https://s2.local/?p=3") in moved["wp_posts"]
        assert read_rows(wp_db) == before

    def test_dry_run_matches_real_run(self, rewriter, site, wp_db):
        before = read_rows(wp_db)

        dry = rewriter.rewrite(site, "http://s1.local", "https://example.test", dry_run=True)

        assert read_rows(wp_db) == before
        assert dry.backup_path is None

        real = rewriter.rewrite(site, "http://s1.local", "https://example.test")
        assert (dry.rows_scanned, dry.rows_changed, dry.tables) == (
            real.rows_scanned,
            real.rows_changed,
            real.tables,
        )

    def test_reverse_restores_before_image(self, rewriter, site, wp_db):
        before = read_rows(wp_db)
        report = rewriter.rewrite(site, "http://s1.local", "https://example.test")

        restored = rewriter.reverse(report)

        assert restored == report.rows_changed
        assert read_rows(wp_db) == before
        payload = json.loads(report.backup_path.read_text())
        assert payload["old_url"] == "http://s1.local"
        assert len(payload["rows"]) == report.rows_changed

    def test_reverse_dry_run_is_noop(self, rewriter, site, wp_db):
        report = rewriter.rewrite(site, "http://s1.local", "https://example.test", dry_run=True)

        assert rewriter.reverse(report) == 0

    def test_missing_tables_skipped(self, rewriter, site, wp_db):
        report = rewriter.rewrite(site, "http://s1.local", "http://s2.local")

        assert "wp_usermeta.meta_value" not in report.tables

    def test_database_not_found(self, rewriter, site):
        with pytest.raises(DatabaseRewriteError) as exc_info:
            rewriter.rewrite(site, "http://s1.local", "http://s2.local")

        assert exc_info.value.code == "DB_NOT_FOUND"

    def test_unreadable_before_image(self, rewriter, site, wp_db):
        report = rewriter.rewrite(site, "http://s1.local", "http://s2.local")
        report.backup_path.write_text("{broken")

        with pytest.raises(DatabaseRewriteError) as exc_info:
            rewriter.reverse(report)

        assert exc_info.value.code == "DB_BACKUP_UNREADABLE"


class TestReadSiteURL:
    """Tests for DatabaseURLRewriter.read_site_url."""

    def test_reads_siteurl(self, rewriter, site, wp_db):
        assert rewriter.read_site_url(site) == "http://s1.local"

    def test_no_database(self, rewriter, site):
        assert rewriter.read_site_url(site) is None

    def test_missing_options_table(self, rewriter, site):
        site.database_path.parent.mkdir(parents=True)
        sqlite3.connect(str(site.database_path)).close()

        with pytest.raises(DatabaseRewriteError) as exc_info:
            rewriter.read_site_url(site)

        assert exc_info.value.code == "DB_READ_FAILED"
