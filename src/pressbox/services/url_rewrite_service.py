"""Scoped, reversible site URL rewriting in a WordPress database.

Only the columns WordPress stores URLs in are touched. Values written by
PHP's serialize() are walked token by token so string lengths stay valid
after the URL changes length.
"""

import json
import logging
import re
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pressbox.config import PressBoxConfig
from pressbox.errors import DatabaseRewriteError
from pressbox.models import Site, normalize_url

logger = logging.getLogger(__name__)

# (table without prefix, primary key, column)
LOCATIONS = (
    ("options", "option_id", "option_value"),
    ("posts", "ID", "post_content"),
    ("posts", "ID", "guid"),
    ("postmeta", "meta_id", "meta_value"),
    ("usermeta", "umeta_id", "meta_value"),
)

SERIALIZED_RE = re.compile(rb"^(?:N;|b:[01];|i:-?\d+;|d:[^;]+;|s:\d+:\"|a:\d+:\{|O:\d+:\")")


class _Malformed(Exception):
    """A value looked serialized but could not be walked."""


@dataclass
class RewriteReport:
    """Outcome of one rewrite, enough to reverse it later."""

    site_id: str
    db_path: str
    old_url: str
    new_url: str
    rows_scanned: int = 0
    rows_changed: int = 0
    backup_path: Path | None = None
    dry_run: bool = False
    tables: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "db_path": self.db_path,
            "old_url": self.old_url,
            "new_url": self.new_url,
            "rows_scanned": self.rows_scanned,
            "rows_changed": self.rows_changed,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "dry_run": self.dry_run,
            "tables": dict(self.tables),
        }


def _canonical(url: str) -> str:
    scheme, host = normalize_url(url)
    return f"{scheme}://{host}"


class URLReplacer:
    """Single-pass replacement of a site URL in raw column bytes.

    The requested scheme moves to the new scheme; the other scheme of the
    old host keeps its own. JSON slash-escaped forms are included. A match
    must end at the host boundary, so "s1.local" never matches inside
    "s1.local.dev".
    """

    def __init__(self, old_url: str, new_url: str) -> None:
        old_scheme, old_host = normalize_url(old_url)
        new_scheme, new_host = normalize_url(new_url)
        self.mapping: dict[bytes, bytes] = {}
        for scheme in ("https", "http"):
            old = f"{scheme}://{old_host}"
            new = f"{new_scheme if scheme == old_scheme else scheme}://{new_host}"
            if old == new:
                continue
            self.mapping[old.encode()] = new.encode()
            self.mapping[old.replace("/", "\\/").encode()] = new.replace("/", "\\/").encode()

        self.pattern = None
        if self.mapping:
            forms = sorted(self.mapping, key=len, reverse=True)
            self.pattern = re.compile(
                b"(?:" + b"|".join(re.escape(form) for form in forms) + rb")(?![\w-]|\.[\w-])"
            )

    def matches(self, value: bytes) -> bool:
        return self.pattern is not None and self.pattern.search(value) is not None

    def replace(self, value: bytes) -> bytes:
        if self.pattern is None:
            return value
        return self.pattern.sub(lambda m: self.mapping[m.group(0)], value)


def _walk(data: bytes, pos: int, replacer: URLReplacer) -> tuple[bytes, int]:
    """Rewrite one serialized value starting at pos; return (output, next pos)."""
    if pos >= len(data):
        raise _Malformed("unexpected end of data")
    kind = data[pos : pos + 1]

    if kind == b"N":
        if data[pos : pos + 2] != b"N;":
            raise _Malformed("bad null")
        return b"N;", pos + 2

    if kind in (b"b", b"i", b"d"):
        end = data.find(b";", pos)
        if end < 0 or data[pos + 1 : pos + 2] != b":":
            raise _Malformed("bad scalar")
        return data[pos : end + 1], end + 1

    if kind == b"s":
        header = re.compile(rb"s:(\d+):\"").match(data, pos)
        if not header:
            raise _Malformed("bad string header")
        length = int(header.group(1))
        start = header.end()
        end = start + length
        if data[end : end + 2] != b'";':
            raise _Malformed("string length mismatch")
        inner = rewrite_value(data[start:end], replacer)
        return b's:%d:"%s";' % (len(inner), inner), end + 2

    if kind in (b"a", b"O"):
        out = b""
        if kind == b"O":
            header = re.compile(rb"O:(\d+):\"").match(data, pos)
            if not header:
                raise _Malformed("bad object header")
            name_end = header.end() + int(header.group(1))
            out = data[pos : name_end + 1]
            pos = name_end + 1
            if data[pos : pos + 1] != b":":
                raise _Malformed("bad object header")
            pos += 1
            count_match = re.compile(rb"(\d+):\{").match(data, pos)
        else:
            count_match = re.compile(rb"a:(\d+):\{").match(data, pos)
        if not count_match:
            raise _Malformed("bad container header")
        out += (b":" if kind == b"O" else b"") + count_match.group(0)
        pos = count_match.end()
        for _ in range(int(count_match.group(1)) * 2):
            chunk, pos = _walk(data, pos, replacer)
            out += chunk
        if data[pos : pos + 1] != b"}":
            raise _Malformed("unterminated container")
        return out + b"}", pos + 1

    raise _Malformed(f"unknown token {kind!r}")


def rewrite_value(value: bytes, replacer: URLReplacer) -> bytes:
    """Replace URLs in a column value, keeping serialized data valid.

    Serialized strings may themselves hold serialized data, which is
    rewritten recursively. Values that only look serialized fall back to
    a plain replace.
    """
    if not replacer.matches(value):
        return value
    if SERIALIZED_RE.match(value):
        try:
            out, end = _walk(value, 0, replacer)
            if end == len(value):
                return out
        except _Malformed:
            pass
    return replacer.replace(value)


class DatabaseURLRewriter:
    """Search-and-replace a site's URL in its WordPress database."""

    def __init__(self, config: PressBoxConfig) -> None:
        self.config = config

    @contextmanager
    def connection(self, db_path: Path) -> Generator[sqlite3.Connection, None, None]:
        """Open the site database with a bounded busy timeout."""
        if not db_path.exists():
            raise DatabaseRewriteError(
                code="DB_NOT_FOUND",
                message=f"WordPress database not found: {db_path}",
                suggestion="Check the site's document root or db_path",
            )
        try:
            conn = sqlite3.connect(str(db_path), timeout=self.config.db_timeout)
        except sqlite3.Error as e:
            raise DatabaseRewriteError(
                code="DB_CONNECT_FAILED",
                message=f"Cannot open WordPress database {db_path}: {e}",
            )
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, db_path: Path) -> Generator[sqlite3.Connection, None, None]:
        with self.connection(db_path) as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _existing_tables(self, conn: sqlite3.Connection) -> set[str]:
        cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        return {row[0] for row in cursor.fetchall()}

    def _scan(
        self,
        conn: sqlite3.Connection,
        site: Site,
        replacer: URLReplacer,
        report: RewriteReport,
    ) -> list[dict[str, Any]]:
        """Collect every in-scope row whose value changes."""
        tables = self._existing_tables(conn)
        changes = []
        for table, pk, column in LOCATIONS:
            name = f"{site.table_prefix}{table}"
            if name not in tables:
                logger.debug(f"Table {name} not present in {report.db_path}, skipping")
                continue
            cursor = conn.execute(f'SELECT "{pk}", "{column}" FROM "{name}"')
            changed = 0
            for pk_value, value in cursor.fetchall():
                report.rows_scanned += 1
                if not isinstance(value, str):
                    continue
                updated = rewrite_value(value.encode("utf-8", "surrogateescape"), replacer)
                new_value = updated.decode("utf-8", "surrogateescape")
                if new_value == value:
                    continue
                changed += 1
                changes.append(
                    {
                        "table": name,
                        "pk": pk,
                        "pk_value": pk_value,
                        "column": column,
                        "before": value,
                        "after": new_value,
                    }
                )
            if changed:
                key = f"{name}.{column}"
                report.tables[key] = report.tables.get(key, 0) + changed
        report.rows_changed = len(changes)
        return changes

    def rewrite(
        self, site: Site, old_url: str, new_url: str, dry_run: bool = False
    ) -> RewriteReport:
        """Replace old_url with new_url across the scoped columns.

        A JSON before-image of the changed rows is written before any row
        is updated. Dry runs report the same counts and write nothing.
        """
        db_path = site.database_path
        report = RewriteReport(
            site_id=site.id,
            db_path=str(db_path),
            old_url=_canonical(old_url),
            new_url=_canonical(new_url),
            dry_run=dry_run,
        )
        replacer = URLReplacer(old_url, new_url)

        try:
            with self.transaction(db_path) as conn:
                changes = self._scan(conn, site, replacer, report)
                if dry_run or not changes:
                    logger.info(
                        f"URL rewrite {'dry run ' if dry_run else ''}for '{site.id}': "
                        f"{report.rows_changed}/{report.rows_scanned} rows"
                    )
                    return report

                report.backup_path = self._write_before_image(report, changes)
                for change in changes:
                    conn.execute(
                        f'UPDATE "{change["table"]}" SET "{change["column"]}" = ? '
                        f'WHERE "{change["pk"]}" = ?',
                        (change["after"], change["pk_value"]),
                    )
        except sqlite3.Error as e:
            raise DatabaseRewriteError(
                code="DB_REWRITE_FAILED",
                message=f"URL rewrite failed for site '{site.id}': {e}",
                suggestion="Make sure nothing else holds a write lock on the site database",
            )

        logger.info(
            f"Rewrote {report.old_url} -> {report.new_url} for '{site.id}' "
            f"({report.rows_changed} rows, before-image {report.backup_path})"
        )
        return report

    def _write_before_image(self, report: RewriteReport, changes: list[dict[str, Any]]) -> Path:
        backup_dir = self.config.backups_dir / report.site_id / "db"
        path = backup_dir / (
            f"db-{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}-{uuid.uuid4().hex[:6]}.json"
        )
        payload = {
            **report.to_dict(),
            "rows": [
                {k: change[k] for k in ("table", "pk", "pk_value", "column", "before")}
                for change in changes
            ],
        }
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, indent=2))
        except OSError as e:
            raise DatabaseRewriteError(
                code="DB_BACKUP_FAILED",
                message=f"Cannot write database before-image {path}: {e}",
            )
        return path

    def reverse(self, report: RewriteReport) -> int:
        """Restore the rows recorded in a rewrite's before-image.

        Returns:
            Number of rows restored
        """
        if report.dry_run or report.backup_path is None:
            return 0

        try:
            payload = json.loads(Path(report.backup_path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise DatabaseRewriteError(
                code="DB_BACKUP_UNREADABLE",
                message=f"Cannot read database before-image {report.backup_path}: {e}",
            )

        rows = payload.get("rows", [])
        try:
            with self.transaction(Path(payload.get("db_path", report.db_path))) as conn:
                for row in rows:
                    conn.execute(
                        f'UPDATE "{row["table"]}" SET "{row["column"]}" = ? '
                        f'WHERE "{row["pk"]}" = ?',
                        (row["before"], row["pk_value"]),
                    )
        except sqlite3.Error as e:
            raise DatabaseRewriteError(
                code="DB_REVERSE_FAILED",
                message=f"Reversing URL rewrite for site '{report.site_id}' failed: {e}",
                suggestion=f"Restore rows manually from {report.backup_path}",
            )

        logger.info(f"Reversed URL rewrite for '{report.site_id}' ({len(rows)} rows)")
        return len(rows)

    def read_site_url(self, site: Site) -> str | None:
        """Current siteurl option, or None when the site has no database yet."""
        if not site.database_path.exists():
            return None
        try:
            with self.connection(site.database_path) as conn:
                cursor = conn.execute(
                    f'SELECT option_value FROM "{site.table_prefix}options" '
                    "WHERE option_name = 'siteurl'"
                )
                row = cursor.fetchone()
                return row[0] if row else None
        except sqlite3.Error as e:
            raise DatabaseRewriteError(
                code="DB_READ_FAILED",
                message=f"Cannot read siteurl for site '{site.id}': {e}",
            )
