"""Transactional web server, PHP runtime and site URL swaps.

SwapOrchestrator drives one transaction per request through

    Idle -> Validating -> Snapshotting -> Stopping -> Applying
         -> Starting -> Verifying -> Committed | RolledBack | Failed

Any failure from Stopping onwards triggers an automatic rollback: stop
what the swap started, restore the snapshot, reverse the database
rewrite, restart what was running and probe it. Only when that rollback
cannot bring the original stack back does a transaction end in Failed,
with the files and processes left in an unknown state listed in errors.

Callers always get a ServiceSwapResult back. Errors raised from Stopping
onwards, expected or not, end in rollback rather than escaping.
"""

import fcntl
import logging
import sqlite3
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from pressbox.config import PressBoxConfig
from pressbox.database import Database
from pressbox.errors import (
    PressBoxError,
    ServiceControlError,
    TransactionInProgressError,
    ValidationError,
)
from pressbox.layout import SiteLayout
from pressbox.models import (
    PHPVersionChangeOptions,
    ServiceSwapResult,
    ServiceTarget,
    Site,
    SwapServerOptions,
    SwapTransaction,
    TargetKind,
    TransactionState,
    WebServer,
    normalize_url,
)
from pressbox.services.certificate_service import CertificateMigrator
from pressbox.services.config_translator import (
    ConfigTranslator,
    extract_custom_directives,
    read_extensions,
)
from pressbox.services.process_service import ServiceController, probe
from pressbox.services.snapshot_service import ConfigSnapshot, ConfigSnapshotStore
from pressbox.services.url_rewrite_service import DatabaseURLRewriter, RewriteReport

logger = logging.getLogger(__name__)

State = TransactionState

ALLOWED_TRANSITIONS: dict[TransactionState, set[TransactionState]] = {
    State.IDLE: {State.VALIDATING},
    State.VALIDATING: {State.SNAPSHOTTING, State.FAILED},
    State.SNAPSHOTTING: {State.STOPPING, State.FAILED},
    State.STOPPING: {State.APPLYING, State.ROLLED_BACK, State.FAILED},
    State.APPLYING: {State.STARTING, State.ROLLED_BACK, State.FAILED},
    State.STARTING: {State.VERIFYING, State.ROLLED_BACK, State.FAILED},
    State.VERIFYING: {State.COMMITTED, State.ROLLED_BACK, State.FAILED},
}

HISTORY_SIZE = 100


class IllegalTransitionError(RuntimeError):
    """The orchestrator tried to move a transaction along an undefined edge."""


@dataclass
class _SwapPlan:
    """What one request stops, writes, starts and probes."""

    site: Site
    new_site: Site
    from_target: ServiceTarget
    to_target: ServiceTarget
    stop: list[ServiceTarget]
    start: list[ServiceTarget]
    verify: list[ServiceTarget]
    restore: list[ServiceTarget]
    translate: list[ServiceTarget]
    # (source path, destination path) pairs whose custom directives carry over
    preserve: list[tuple[Path, Path]] = field(default_factory=list)
    extensions_from: Path | None = None
    migrate_certs: bool = False
    new_url: str | None = None
    update_database: bool = False
    retain_backup: bool = False


@dataclass
class _Progress:
    """Mutations made so far, consulted by rollback."""

    snapshot: ConfigSnapshot | None = None
    snapshot_id: str | None = None
    was_running: set[ServiceTarget] = field(default_factory=set)
    started: list[ServiceTarget] = field(default_factory=list)
    rewrite: RewriteReport | None = None
    fatal: bool = False


class SwapOrchestrator:
    """Run swap transactions against live sites."""

    def __init__(
        self,
        config: PressBoxConfig,
        snapshots: ConfigSnapshotStore,
        services: ServiceController,
        translator: ConfigTranslator,
        rewriter: DatabaseURLRewriter,
        certificates: CertificateMigrator,
        database: Database | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.snapshots = snapshots
        self.services = services
        self.translator = translator
        self.rewriter = rewriter
        self.certificates = certificates
        self.database = database
        self.sleep = sleep
        self._locks: dict[str, TextIO] = {}
        self._locks_guard = threading.Lock()
        self._history: deque[dict[str, Any]] = deque(maxlen=HISTORY_SIZE)

    # Public operations

    def swap_web_server(
        self, site: Site, options: SwapServerOptions | dict[str, Any]
    ) -> ServiceSwapResult:
        """Move a site from one web server implementation to the other."""

        def plan() -> _SwapPlan:
            opts = options
            if isinstance(opts, dict):
                opts = SwapServerOptions.from_dict(opts)
            opts.validate()
            from_server = WebServer.parse(opts.from_server)
            to_server = WebServer.parse(opts.to_server)
            if from_server is not site.web_server:
                raise ValidationError(
                    code="SERVER_MISMATCH",
                    message=(
                        f"Site '{site.id}' runs {site.web_server.value}, "
                        f"not {from_server.value}"
                    ),
                )
            if to_server is from_server:
                raise ValidationError(
                    code="ALREADY_ON_TARGET",
                    message=f"Site is already using {to_server.value}",
                )

            changes: dict[str, Any] = {"web_server": to_server}
            if opts.new_url:
                changes["domain"] = self._new_host(site, opts.new_url)
            new_site = site.with_changes(**changes)
            layout = SiteLayout(self.config, site.id)
            new_config = layout.server_config(to_server)
            php = site.target(TargetKind.PHP_RUNTIME)
            return _SwapPlan(
                site=site,
                new_site=new_site,
                from_target=ServiceTarget.web_server(from_server),
                to_target=ServiceTarget.web_server(to_server),
                stop=[ServiceTarget.web_server(from_server)],
                start=[php, ServiceTarget.web_server(to_server)],
                verify=[ServiceTarget.web_server(to_server)],
                restore=[php, ServiceTarget.web_server(from_server)],
                translate=[ServiceTarget.web_server(to_server)],
                preserve=[(new_config, new_config)] if opts.preserve_config else [],
                migrate_certs=opts.migrate_ssl_certs,
                new_url=opts.new_url,
                update_database=bool(opts.new_url),
                retain_backup=opts.backup_configs,
            )

        return self._run(site, plan)

    def change_php_version(
        self, site: Site, options: PHPVersionChangeOptions | dict[str, Any]
    ) -> ServiceSwapResult:
        """Move a site to another PHP-FPM runtime version."""

        def plan() -> _SwapPlan:
            opts = options
            if isinstance(opts, dict):
                opts = PHPVersionChangeOptions.from_dict(opts)
            opts.validate()
            new_version = opts.new_version.strip()
            supported = self.config.supported_php_versions
            if new_version not in supported:
                raise ValidationError(
                    code="UNSUPPORTED_PHP_VERSION",
                    message=(
                        f"Unsupported PHP version: {new_version}. "
                        f"Supported versions: {', '.join(supported)}"
                    ),
                )
            if new_version == site.php_version:
                raise ValidationError(
                    code="ALREADY_ON_TARGET",
                    message=f"Site is already using PHP {new_version}",
                )

            layout = SiteLayout(self.config, site.id)
            old_php = ServiceTarget.php_runtime(site.php_version)
            new_php = ServiceTarget.php_runtime(new_version)
            web = site.target(TargetKind.WEB_SERVER)
            server_config = layout.server_config(site.web_server)

            preserve = []
            if opts.preserve_config:
                preserve = [
                    (layout.fpm_pool(site.php_version), layout.fpm_pool(new_version)),
                    (layout.php_ini(site.php_version), layout.php_ini(new_version)),
                    (server_config, server_config),
                ]

            # The FPM socket path is the same for every version, so a running
            # web server reaches the new pool without a restart.
            web_restart = [web] if opts.restart_services else []
            return _SwapPlan(
                site=site,
                new_site=site.with_changes(php_version=new_version),
                from_target=old_php,
                to_target=new_php,
                stop=web_restart + [old_php],
                start=[new_php] + web_restart,
                verify=[new_php] + web_restart,
                restore=[old_php] + web_restart,
                translate=[new_php],
                preserve=preserve,
                extensions_from=(
                    layout.php_ini(site.php_version) if opts.migrate_extensions else None
                ),
            )

        return self._run(site, plan)

    def update_site_url(
        self, site: Site, new_url: str, update_database: bool = True
    ) -> ServiceSwapResult:
        """Point a site at a new domain: server config, certificate and database."""

        def plan() -> _SwapPlan:
            new_site = site.with_changes(domain=self._new_host(site, new_url))
            web = site.target(TargetKind.WEB_SERVER)
            php = site.target(TargetKind.PHP_RUNTIME)
            config_path = SiteLayout(self.config, site.id).server_config(site.web_server)
            return _SwapPlan(
                site=site,
                new_site=new_site,
                from_target=web,
                to_target=web,
                stop=[web],
                start=[php, web],
                verify=[web],
                restore=[php, web],
                translate=[web],
                preserve=[(config_path, config_path)],
                new_url=new_url,
                update_database=update_database,
            )

        return self._run(site, plan)

    def history(self, site_id: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        """Terminal transactions, newest first."""
        if self.database is not None:
            return self.database.list_transactions(site_id, limit)
        entries = [e for e in reversed(self._history) if site_id is None or e["site_id"] == site_id]
        return entries[:limit]

    # Locking

    def _acquire(self, site_id: str) -> bool:
        """Take the site's swap lock without waiting.

        The lock is an exclusive flock on <run_dir>/<site>/swap.lock, so it
        also excludes engines in other processes.
        """
        with self._locks_guard:
            if site_id in self._locks:
                return False
            lock_path = SiteLayout(self.config, site_id).swap_lock()
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(lock_path, "a+")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                handle.close()
                return False
            self._locks[site_id] = handle
            return True

    def _release(self, site_id: str) -> None:
        with self._locks_guard:
            handle = self._locks.pop(site_id, None)
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _new_host(self, site: Site, new_url: str) -> str:
        scheme, host = normalize_url(new_url)
        if host == site.domain and scheme == site.scheme:
            raise ValidationError(
                code="URL_UNCHANGED",
                message=f"Site '{site.id}' already uses {site.url}",
            )
        return host.split(":", 1)[0]

    # State machine

    def _transition(self, txn: SwapTransaction, state: TransactionState) -> None:
        if state not in ALLOWED_TRANSITIONS.get(txn.state, set()):
            raise IllegalTransitionError(
                f"Transaction {txn.id}: illegal transition {txn.state.value} -> {state.value}"
            )
        logger.debug(f"Transaction {txn.id}: {txn.state.value} -> {state.value}")
        txn.state = state
        txn.log("entered")

    def _run(self, site: Site, build_plan: Callable[[], _SwapPlan]) -> ServiceSwapResult:
        txn = SwapTransaction(
            id=uuid.uuid4().hex[:12],
            site_id=site.id,
            from_target=site.target(TargetKind.WEB_SERVER),
            to_target=site.target(TargetKind.WEB_SERVER),
        )
        self._transition(txn, State.VALIDATING)

        if not self._acquire(site.id):
            error = TransactionInProgressError(site.id)
            txn.errors.append(f"{error.code}: {error.message}")
            return self._finish(txn, site, None, _Progress(), State.FAILED)

        progress = _Progress()
        try:
            return self._execute(txn, site, build_plan, progress)
        finally:
            if progress.snapshot is not None:
                # Only reached when an error escaped rollback; keep it for recovery
                try:
                    self.snapshots.discard(progress.snapshot, retain=True)
                except PressBoxError as e:
                    logger.error(f"Could not release snapshot {progress.snapshot.id}: {e.message}")
            self._release(site.id)

    def _execute(
        self,
        txn: SwapTransaction,
        site: Site,
        build_plan: Callable[[], _SwapPlan],
        progress: _Progress,
    ) -> ServiceSwapResult:
        # Validating
        try:
            plan = build_plan()
        except PressBoxError as e:
            txn.errors.append(e.message)
            txn.log(f"validation failed: {e.code}")
            return self._finish(txn, site, None, progress, State.FAILED)
        txn.from_target = plan.from_target
        txn.to_target = plan.to_target
        txn.log(f"{plan.from_target.label} -> {plan.to_target.label}")
        logger.info(
            f"Transaction {txn.id} for '{site.id}': {plan.from_target.label} -> "
            f"{plan.to_target.label}"
        )

        # Snapshotting
        self._transition(txn, State.SNAPSHOTTING)
        try:
            progress.snapshot = self.snapshots.capture(
                site, include_db_url=bool(plan.new_url and plan.update_database)
            )
            progress.snapshot_id = progress.snapshot.id
            txn.log(f"captured snapshot {progress.snapshot.id}")
        except PressBoxError as e:
            txn.errors.append(e.message)
            return self._finish(txn, site, plan, progress, State.FAILED)

        step = State.STOPPING
        try:
            self._transition(txn, State.STOPPING)
            self._stop(txn, plan, progress)

            step = State.APPLYING
            self._transition(txn, State.APPLYING)
            self._apply(txn, plan, progress)

            step = State.STARTING
            self._transition(txn, State.STARTING)
            self._start(txn, plan, progress)

            step = State.VERIFYING
            self._transition(txn, State.VERIFYING)
            self._verify(txn, plan)
        except PressBoxError as e:
            message = e.message
            logger.error(f"Transaction {txn.id} failed while {step.value}: {message}")
            txn.errors.append(message)
            state = self._rollback(txn, plan, progress, failed_step=step)
            return self._finish(txn, site, plan, progress, state)
        except Exception as e:
            # Anything raised after Stopping rolls back
            message = f"{step.value} failed: {type(e).__name__}: {e}"
            logger.exception(f"Transaction {txn.id} failed while {step.value}")
            txn.errors.append(message)
            state = self._rollback(txn, plan, progress, failed_step=step)
            return self._finish(txn, site, plan, progress, state)

        return self._commit(txn, plan, progress)

    # Steps

    def _stop(self, txn: SwapTransaction, plan: _SwapPlan, progress: _Progress) -> None:
        progress.was_running = {
            t for t in set(plan.restore) | set(plan.stop) if self.services.is_running(plan.site, t)
        }
        for target in plan.stop:
            result = self.services.stop(plan.site, target, timeout=self.config.stop_timeout)
            if result.degraded:
                warning = f"{target.label} did not stop in time and was killed"
                txn.warnings.append(warning)
                txn.log(f"stopped {target.label} (degraded)")
            else:
                txn.log(
                    f"stopped {target.label}"
                    if result.was_running
                    else f"{target.label} was not running"
                )

    def _apply(self, txn: SwapTransaction, plan: _SwapPlan, progress: _Progress) -> None:
        site, new_site = plan.site, plan.new_site
        to_server = new_site.web_server

        if site.ssl:
            if new_site.domain != site.domain:
                self.certificates.reissue(new_site, new_site.domain, to_server)
                txn.log(f"issued certificate for {new_site.domain}")
            elif plan.migrate_certs and to_server is not site.web_server:
                self.certificates.migrate(site, site.web_server, to_server)
                txn.log(f"migrated certificate to {to_server.value}")
            elif to_server is not site.web_server:
                cert, key = self.certificates.paths_for(site, to_server)
                if not cert.exists() or not key.exists():
                    txn.warnings.append(
                        f"Certificate migration skipped; {to_server.value} has no certificate at {cert}"
                    )

        preserved = self._preserved(plan) if plan.preserve else None
        extensions: list[str] = []
        if plan.extensions_from is not None and plan.extensions_from.exists():
            extensions = read_extensions(_read_config(plan.extensions_from))
            txn.log(f"carrying over {len(extensions)} extensions")

        for target in plan.translate:
            artifacts = self.translator.translate(new_site, target, preserved, extensions)
            written = self.translator.write(artifacts)
            txn.log(f"wrote {len(written)} config files for {target.label}")

        if plan.new_url and plan.update_database:
            if not site.database_path.exists():
                txn.warnings.append(
                    f"No WordPress database at {site.database_path}; skipped URL rewrite"
                )
            else:
                snapshot = progress.snapshot
                old_url = (snapshot.db_url_backup if snapshot else None) or site.url
                progress.rewrite = self.rewriter.rewrite(site, old_url, plan.new_url)
                txn.log(f"rewrote {progress.rewrite.rows_changed} database rows")

    def _preserved(self, plan: _SwapPlan) -> dict[str, str]:
        preserved: dict[str, str] = {}
        for source, dest in plan.preserve:
            if not source.exists():
                continue
            custom = extract_custom_directives(_read_config(source))
            if custom:
                preserved[str(dest)] = custom
        return preserved

    def _start(self, txn: SwapTransaction, plan: _SwapPlan, progress: _Progress) -> None:
        for target in plan.start:
            already = self.services.is_running(plan.new_site, target)
            self.services.start(plan.new_site, target)
            if not already:
                progress.started.append(target)
                txn.log(f"started {target.label}")

    def _verify(self, txn: SwapTransaction, plan: _SwapPlan) -> None:
        for target in plan.verify:
            healthy = probe(
                lambda t=target: self.services.health_check(plan.new_site, t),
                attempts=self.config.health_attempts,
                backoff=self.config.health_backoff,
                sleep=self.sleep,
            )
            if not healthy:
                raise _health_error(target, self.config.health_attempts)
            txn.log(f"{target.label} healthy")

    def _commit(
        self, txn: SwapTransaction, plan: _SwapPlan, progress: _Progress
    ) -> ServiceSwapResult:
        snapshot = progress.snapshot
        try:
            backup = self.snapshots.discard(snapshot, retain=plan.retain_backup)
            if backup is not None:
                txn.warnings.append(f"Configuration backed up as: {snapshot.id}")
        except PressBoxError as e:
            txn.warnings.append(e.message)
        progress.snapshot = None
        return self._finish(txn, plan.new_site, plan, progress, State.COMMITTED)

    # Rollback

    def _rollback(
        self,
        txn: SwapTransaction,
        plan: _SwapPlan,
        progress: _Progress,
        failed_step: TransactionState,
    ) -> TransactionState:
        """Bring back the pre-transaction stack; returns the terminal state."""
        txn.log(f"rolling back after {failed_step.value} failure")
        unknown_files: list[str] = []
        unknown_processes: list[str] = []

        for target in reversed(plan.start):
            if target not in progress.started and target in progress.was_running:
                continue
            try:
                self.services.stop(plan.new_site, target)
            except PressBoxError as e:
                txn.errors.append(f"Rollback: {e.message}")
                unknown_processes.append(target.label)

        snapshot = progress.snapshot
        report = self.snapshots.restore(snapshot)
        if report.ok:
            txn.log(f"restored snapshot {snapshot.id}")
        else:
            for path, reason in sorted(report.failed.items()):
                txn.errors.append(f"Rollback: could not restore {path}: {reason}")
            unknown_files.extend(sorted(report.failed))

        if progress.rewrite is not None:
            try:
                self.rewriter.reverse(progress.rewrite)
                txn.log("reversed database URL rewrite")
            except PressBoxError as e:
                txn.errors.append(f"Rollback: {e.message}")
                unknown_files.append(progress.rewrite.db_path)

        for target in plan.restore:
            if target not in progress.was_running or self.services.is_running(plan.site, target):
                continue
            try:
                self.services.start(plan.site, target)
                txn.log(f"restarted {target.label}")
            except PressBoxError as e:
                txn.errors.append(f"Rollback: {e.message}")
                unknown_processes.append(target.label)
                continue
            healthy = probe(
                lambda t=target: self.services.health_check(plan.site, t),
                attempts=self.config.health_attempts,
                backoff=self.config.health_backoff,
                sleep=self.sleep,
            )
            if not healthy:
                error = _health_error(target, self.config.health_attempts)
                txn.errors.append(f"Rollback: {error.message}")
                unknown_processes.append(target.label)

        if unknown_files or unknown_processes:
            progress.fatal = True
            txn.errors.append(
                f"Rollback after {failed_step.value} failure could not restore site "
                f"'{plan.site.id}'. Unknown state: files [{', '.join(unknown_files)}], "
                f"processes [{', '.join(unknown_processes)}]. Snapshot {snapshot.id} "
                f"is kept for manual recovery."
            )
            try:
                self.snapshots.discard(snapshot, retain=True)
            except PressBoxError as e:
                txn.errors.append(e.message)
            progress.snapshot = None
            return State.FAILED

        self.snapshots.discard(snapshot, retain=False)
        progress.snapshot = None
        return State.ROLLED_BACK

    # Results

    def _finish(
        self,
        txn: SwapTransaction,
        site: Site,
        plan: _SwapPlan | None,
        progress: _Progress,
        state: TransactionState,
    ) -> ServiceSwapResult:
        if progress.snapshot is not None:
            self.snapshots.discard(progress.snapshot, retain=False)
        self._transition(txn, state)
        txn.completed_at = datetime.utcnow()

        if state is State.COMMITTED:
            logger.info(f"Transaction {txn.id} for '{txn.site_id}' committed in {txn.duration_ms}ms")
        elif progress.fatal:
            logger.critical(f"Transaction {txn.id} for '{txn.site_id}' FAILED: {txn.errors[-1]}")
        else:
            logger.warning(
                f"Transaction {txn.id} for '{txn.site_id}' ended {state.value}: {txn.errors}"
            )

        self._archive(txn, progress)

        old_server = new_server = old_version = new_version = None
        if plan is not None:
            if plan.from_target.kind is TargetKind.WEB_SERVER:
                old_server, new_server = plan.from_target.identifier, plan.to_target.identifier
            else:
                old_version, new_version = plan.from_target.identifier, plan.to_target.identifier

        return ServiceSwapResult(
            success=state is State.COMMITTED,
            duration=txn.duration_ms,
            errors=list(txn.errors),
            warnings=list(txn.warnings),
            old_server=old_server,
            new_server=new_server,
            old_version=old_version,
            new_version=new_version,
            web_server=site.web_server.value,
            php_version=site.php_version,
            transaction_id=txn.id,
            state=state.value,
            fatal=progress.fatal,
        )

    def _archive(self, txn: SwapTransaction, progress: _Progress) -> None:
        entry = txn.to_dict()
        entry["fatal"] = progress.fatal
        entry["snapshot_id"] = progress.snapshot_id
        self._history.append(entry)
        if self.database is None:
            return
        try:
            self.database.record_transaction(
                txn, snapshot_id=progress.snapshot_id, fatal=progress.fatal
            )
        except (sqlite3.Error, OSError) as e:
            logger.warning(f"Could not archive transaction {txn.id}: {e}")


def _read_config(path: Path) -> str:
    # Undecodable bytes survive the round trip through the translator
    return path.read_bytes().decode("utf-8", "surrogateescape")


def _health_error(target: ServiceTarget, attempts: int) -> ServiceControlError:
    return ServiceControlError(
        code="HEALTH_CHECK_FAILED",
        message=f"{target.label} failed health check after {attempts} attempts",
        suggestion="Check the service's error log",
    )


def build_engine(config: PressBoxConfig, database: Database | None = None) -> SwapOrchestrator:
    """Wire the default components for a config."""
    config.ensure_directories()
    rewriter = DatabaseURLRewriter(config)
    return SwapOrchestrator(
        config=config,
        snapshots=ConfigSnapshotStore(config, db_url_reader=rewriter.read_site_url),
        services=ServiceController(config),
        translator=ConfigTranslator(config),
        rewriter=rewriter,
        certificates=CertificateMigrator(config),
        database=database,
    )
