"""Shared fixtures for PressBox tests."""

import sqlite3
import threading
from pathlib import Path

import pytest

from pressbox.config import PressBoxConfig
from pressbox.database import Database
from pressbox.errors import PressBoxError
from pressbox.models import ServiceTarget, Site, WebServer
from pressbox.services.certificate_service import CertificateMigrator
from pressbox.services.config_translator import ConfigTranslator
from pressbox.services.process_service import StopResult
from pressbox.services.snapshot_service import ConfigSnapshotStore
from pressbox.services.swap_service import SwapOrchestrator
from pressbox.services.url_rewrite_service import DatabaseURLRewriter


class FakeController:
    """In-memory stand-in for ServiceController with fault injection."""

    def __init__(self) -> None:
        self.running: set[tuple[str, ServiceTarget]] = set()
        self.start_errors: dict[ServiceTarget, PressBoxError] = {}
        self.unhealthy: set[ServiceTarget] = set()
        self.unhealthy_domains: set[str] = set()
        self.forced: set[ServiceTarget] = set()
        self.calls: list[tuple[str, str]] = []
        self.lock = threading.Lock()

    def mark_running(self, site: Site, *targets: ServiceTarget) -> None:
        for target in targets:
            self.running.add((site.id, target))

    def is_running(self, site: Site, target: ServiceTarget) -> bool:
        return (site.id, target) in self.running

    def start(self, site: Site, target: ServiceTarget) -> None:
        with self.lock:
            self.calls.append(("start", target.label))
        if target in self.start_errors:
            raise self.start_errors[target]
        self.running.add((site.id, target))

    def stop(self, site: Site, target: ServiceTarget, timeout: float | None = None) -> StopResult:
        with self.lock:
            self.calls.append(("stop", target.label))
        was_running = (site.id, target) in self.running
        self.running.discard((site.id, target))
        return StopResult(target=target, was_running=was_running, forced=target in self.forced)

    def health_check(self, site: Site, target: ServiceTarget) -> bool:
        return (
            (site.id, target) in self.running
            and target not in self.unhealthy
            and site.domain not in self.unhealthy_domains
        )

    def running_labels(self, site: Site) -> set[str]:
        return {t.label for sid, t in self.running if sid == site.id}


@pytest.fixture
def config(tmp_path):
    """PressBox config rooted in a temporary directory."""
    return PressBoxConfig(
        data_dir=tmp_path / "data",
        configs_dir=tmp_path / "configs",
        run_dir=tmp_path / "run",
        log_dir=tmp_path / "logs",
        certs_dir=tmp_path / "certs",
        config_file=tmp_path / "config.yaml",
        db_path=tmp_path / "data" / "pressbox.db",
        health_backoff=0.0,
        start_grace=0.0,
    )


@pytest.fixture
def site(tmp_path):
    """Site S1 on nginx / PHP 8.1."""
    docroot = tmp_path / "sites" / "s1"
    docroot.mkdir(parents=True)
    return Site(
        id="s1",
        domain="s1.local",
        web_server=WebServer.NGINX,
        php_version="8.1",
        document_root=docroot,
    )


@pytest.fixture
def translator(config):
    return ConfigTranslator(config)


@pytest.fixture
def prepared_site(config, site, translator):
    """S1 with its nginx and PHP 8.1 config already generated."""
    translator.write(
        translator.translate(
            site, ServiceTarget.php_runtime("8.1"), extensions=["extension=redis"]
        )
    )
    return site


@pytest.fixture
def controller(site):
    fake = FakeController()
    fake.mark_running(
        site, ServiceTarget.web_server(WebServer.NGINX), ServiceTarget.php_runtime("8.1")
    )
    return fake


@pytest.fixture
def audit_db(config):
    db = Database(config.db_path)
    db.initialize()
    return db


@pytest.fixture
def engine(config, controller, translator, audit_db):
    """Orchestrator wired to real leaf components and the fake controller."""
    rewriter = DatabaseURLRewriter(config)
    return SwapOrchestrator(
        config=config,
        snapshots=ConfigSnapshotStore(config, db_url_reader=rewriter.read_site_url),
        services=controller,
        translator=translator,
        rewriter=rewriter,
        certificates=CertificateMigrator(config),
        database=audit_db,
        sleep=lambda seconds: None,
    )


def make_wp_database(path: Path, siteurl: str = "http://s1.local") -> Path:
    """Create a minimal WordPress SQLite database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE wp_options (
            option_id INTEGER PRIMARY KEY, option_name TEXT UNIQUE, option_value TEXT
        );
        CREATE TABLE wp_posts (ID INTEGER PRIMARY KEY, post_content TEXT, guid TEXT);
        CREATE TABLE wp_postmeta (meta_id INTEGER PRIMARY KEY, meta_key TEXT, meta_value TEXT);
        """
    )
    conn.executemany(
        "INSERT INTO wp_options (option_name, option_value) VALUES (?, ?)",
        [
            ("siteurl", siteurl),
            ("home", siteurl),
            ("blogname", "S1"),
            ("widget_text", f'a:1:{{i:2;a:1:{{s:4:"text";s:{len(siteurl) + 9}:"<a href={siteurl}>";}}}}'),
        ],
    )
    conn.executemany(
        "INSERT INTO wp_posts (post_content, guid) VALUES (?, ?)",
        [
            (f'<img src="{siteurl}/wp-content/uploads/a.png">', f"{siteurl}/?p=1"),
            ("No links here", f"{siteurl}/?p=2"),
        ],
    )
    conn.execute(
        "INSERT INTO wp_postmeta (meta_key, meta_value) VALUES (?, ?)",
        ("_links", '{"self":"' + siteurl.replace("/", "\\/") + '\\/?p=1"}'),
    )
    conn.commit()
    conn.close()
    return path


def read_rows(path: Path) -> dict[str, list[tuple]]:
    conn = sqlite3.connect(str(path))
    try:
        return {
            table: conn.execute(f"SELECT * FROM {table} ORDER BY 1").fetchall()
            for table in ("wp_options", "wp_posts", "wp_postmeta")
        }
    finally:
        conn.close()
