"""Config snapshots for PressBox swap transactions.

A snapshot holds the verbatim bytes of every file a swap may touch, so a
failed swap can put the site's configuration back exactly as it was.
"""

import base64
import hashlib
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pressbox.config import PressBoxConfig
from pressbox.errors import PressBoxError, SnapshotError
from pressbox.layout import SiteLayout
from pressbox.models import Site, WebServer

logger = logging.getLogger(__name__)

# Attempts at getting two identical consecutive reads of a file
CONSISTENT_READ_ATTEMPTS = 3


@dataclass
class ConfigSnapshot:
    """Captured pre-swap state of one site.

    Blob maps are keyed by absolute path. A None value records that the
    file did not exist, so restoring it removes the file.
    """

    id: str
    site_id: str
    captured_at: str
    web_server_config: dict[str, bytes | None] = field(default_factory=dict)
    php_fpm_config: dict[str, bytes | None] = field(default_factory=dict)
    certificates: dict[str, bytes | None] = field(default_factory=dict)
    db_url_backup: str | None = None
    checksums: dict[str, str] = field(default_factory=dict)

    @property
    def cert_paths(self) -> list[str]:
        return sorted(p for p, blob in self.certificates.items() if blob is not None)

    def blobs(self) -> dict[str, bytes | None]:
        merged: dict[str, bytes | None] = {}
        merged.update(self.web_server_config)
        merged.update(self.php_fpm_config)
        merged.update(self.certificates)
        return merged

    def to_dict(self) -> dict[str, Any]:
        def encode(blobs: dict[str, bytes | None]) -> dict[str, str | None]:
            return {
                path: base64.b64encode(blob).decode() if blob is not None else None
                for path, blob in sorted(blobs.items())
            }

        return {
            "id": self.id,
            "site_id": self.site_id,
            "captured_at": self.captured_at,
            "web_server_config": encode(self.web_server_config),
            "php_fpm_config": encode(self.php_fpm_config),
            "certificates": encode(self.certificates),
            "db_url_backup": self.db_url_backup,
            "checksums": dict(sorted(self.checksums.items())),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConfigSnapshot":
        def decode(blobs: dict[str, str | None]) -> dict[str, bytes | None]:
            return {
                path: base64.b64decode(blob) if blob is not None else None
                for path, blob in blobs.items()
            }

        return cls(
            id=data["id"],
            site_id=data["site_id"],
            captured_at=data["captured_at"],
            web_server_config=decode(data.get("web_server_config", {})),
            php_fpm_config=decode(data.get("php_fpm_config", {})),
            certificates=decode(data.get("certificates", {})),
            db_url_backup=data.get("db_url_backup"),
            checksums=data.get("checksums", {}),
        )


@dataclass
class RestoreReport:
    """Per-file outcome of a snapshot restore."""

    snapshot_id: str
    restored: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _checksum(blob: bytes | None) -> str:
    if blob is None:
        return "absent"
    return hashlib.sha256(blob).hexdigest()


class ConfigSnapshotStore:
    """Capture and restore a site's server, PHP and certificate files.

    Only one live snapshot per site may exist; it is released by discard().
    """

    def __init__(
        self,
        config: PressBoxConfig,
        db_url_reader: Callable[[Site], str | None] | None = None,
    ) -> None:
        self.config = config
        self.db_url_reader = db_url_reader
        self._live: dict[str, str] = {}
        self._lock = threading.Lock()

    def _backup_dir(self, site_id: str) -> Path:
        return self.config.backups_dir / site_id

    def _read_consistent(self, path: Path) -> bytes | None:
        """Read a file until two consecutive reads agree."""
        previous: str | None = None
        for _ in range(CONSISTENT_READ_ATTEMPTS + 1):
            try:
                blob = path.read_bytes() if path.exists() else None
            except OSError as e:
                raise SnapshotError(
                    code="SNAPSHOT_READ_FAILED",
                    message=f"Cannot read {path}: {e}",
                    suggestion="Check permissions on the site's config directory",
                )
            digest = _checksum(blob)
            if digest == previous:
                return blob
            previous = digest

        raise SnapshotError(
            code="SNAPSHOT_INCONSISTENT",
            message=f"{path} kept changing while it was being captured",
            suggestion="Make sure no other tool is editing the site's config, then retry",
        )

    def has_live_snapshot(self, site_id: str) -> bool:
        with self._lock:
            return site_id in self._live

    def capture(self, site: Site, include_db_url: bool = False) -> ConfigSnapshot:
        """Capture the site's current config artifacts.

        Args:
            site: Site to capture
            include_db_url: Also record the site URL stored in the database

        Returns:
            The live ConfigSnapshot for the site
        """
        with self._lock:
            if site.id in self._live:
                raise SnapshotError(
                    code="SNAPSHOT_PENDING",
                    message=f"Site '{site.id}' already has a pending snapshot ({self._live[site.id]})",
                    suggestion="Finish or roll back the running swap first",
                )
            snapshot_id = (
                f"{site.web_server.value}-{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}"
                f"-{uuid.uuid4().hex[:6]}"
            )
            self._live[site.id] = snapshot_id

        try:
            layout = SiteLayout(self.config, site.id)
            groups = layout.managed_files(site)
            cert_files = [
                path
                for server in WebServer
                for path in (
                    layout.cert_file(server, site.domain),
                    layout.key_file(server, site.domain),
                )
            ]

            snapshot = ConfigSnapshot(
                id=snapshot_id,
                site_id=site.id,
                captured_at=datetime.utcnow().isoformat(),
            )
            for path in groups["web_server"]:
                snapshot.web_server_config[str(path)] = self._read_consistent(path)
            for path in groups["php_fpm"]:
                snapshot.php_fpm_config[str(path)] = self._read_consistent(path)
            for path in cert_files:
                snapshot.certificates[str(path)] = self._read_consistent(path)

            snapshot.checksums = {
                path: _checksum(blob) for path, blob in snapshot.blobs().items()
            }

            if include_db_url and self.db_url_reader is not None:
                try:
                    snapshot.db_url_backup = self.db_url_reader(site)
                except PressBoxError as e:
                    raise SnapshotError(
                        code="SNAPSHOT_DB_URL_FAILED",
                        message=f"Cannot read current site URL from the database: {e.message}",
                    )
        except BaseException:
            with self._lock:
                self._live.pop(site.id, None)
            raise

        logger.info(
            f"Captured snapshot {snapshot.id} for site '{site.id}' "
            f"({sum(1 for b in snapshot.blobs().values() if b is not None)} files)"
        )
        return snapshot

    def restore(self, snapshot: ConfigSnapshot) -> RestoreReport:
        """Write every captured blob back verbatim.

        Per-file failures are collected in the report rather than raised.
        """
        report = RestoreReport(snapshot_id=snapshot.id)
        for path_str, blob in sorted(snapshot.blobs().items()):
            path = Path(path_str)
            try:
                if blob is None:
                    path.unlink(missing_ok=True)
                else:
                    self._write_atomic(path, blob)
                report.restored.append(path_str)
            except OSError as e:
                logger.error(f"Restore of {path} from snapshot {snapshot.id} failed: {e}")
                report.failed[path_str] = str(e)

        if report.ok:
            logger.info(f"Restored snapshot {snapshot.id} ({len(report.restored)} files)")
        return report

    def _write_atomic(self, path: Path, blob: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def discard(self, snapshot: ConfigSnapshot, retain: bool = False) -> Path | None:
        """Release the site's live snapshot, optionally keeping it on disk.

        Returns:
            Path of the retained backup, or None
        """
        backup_path = None
        try:
            if retain:
                backup_dir = self._backup_dir(snapshot.site_id)
                backup_dir.mkdir(parents=True, exist_ok=True)
                backup_path = backup_dir / f"{snapshot.id}.json"
                self._write_atomic(
                    backup_path, json.dumps(snapshot.to_dict(), indent=2).encode()
                )
                logger.info(f"Retained snapshot {snapshot.id} at {backup_path}")
        except OSError as e:
            raise SnapshotError(
                code="BACKUP_WRITE_FAILED",
                message=f"Cannot write config backup {snapshot.id}: {e}",
            )
        finally:
            with self._lock:
                if self._live.get(snapshot.site_id) == snapshot.id:
                    del self._live[snapshot.site_id]
        return backup_path

    def list_backups(self, site_id: str) -> list[dict[str, Any]]:
        """List retained snapshots for a site, newest first."""
        backup_dir = self._backup_dir(site_id)
        if not backup_dir.exists():
            return []

        backups = []
        for path in backup_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError):
                logger.warning(f"Skipping unreadable backup {path}")
                continue
            files = [
                p
                for group in ("web_server_config", "php_fpm_config", "certificates")
                for p, blob in data.get(group, {}).items()
                if blob is not None
            ]
            backups.append(
                {
                    "id": data["id"],
                    "captured_at": data["captured_at"],
                    "files": len(files),
                    "path": str(path),
                }
            )
        return sorted(backups, key=lambda b: b["captured_at"], reverse=True)

    def load_backup(self, site_id: str, snapshot_id: str) -> ConfigSnapshot:
        path = self._backup_dir(site_id) / f"{snapshot_id}.json"
        if not path.exists():
            raise SnapshotError(
                code="BACKUP_NOT_FOUND",
                message=f"No backup '{snapshot_id}' for site '{site_id}'",
                suggestion=f"Run 'pressbox backup list {site_id}' to see available backups",
            )
        try:
            return ConfigSnapshot.from_dict(json.loads(path.read_text()))
        except (OSError, json.JSONDecodeError, KeyError) as e:
            raise SnapshotError(
                code="BACKUP_CORRUPT",
                message=f"Backup '{snapshot_id}' cannot be read: {e}",
            )
