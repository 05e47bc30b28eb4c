"""Domain types shared by the reconfiguration engine and its callers."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pressbox.errors import ValidationError

DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$"
)


class WebServer(Enum):
    """Web server implementations a site can run behind."""

    NGINX = "nginx"
    APACHE = "apache"

    @classmethod
    def parse(cls, value: "str | WebServer") -> "WebServer":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            supported = ", ".join(s.value for s in cls)
            raise ValidationError(
                code="UNSUPPORTED_SERVER",
                message=f"Unsupported web server: {value}. Supported servers: {supported}",
            )


class TargetKind(Enum):
    WEB_SERVER = "web_server"
    PHP_RUNTIME = "php_runtime"


@dataclass(frozen=True)
class ServiceTarget:
    """A web server implementation or PHP version a swap moves from or to."""

    kind: TargetKind
    identifier: str

    @classmethod
    def web_server(cls, server: "str | WebServer") -> "ServiceTarget":
        return cls(TargetKind.WEB_SERVER, WebServer.parse(server).value)

    @classmethod
    def php_runtime(cls, version: str) -> "ServiceTarget":
        return cls(TargetKind.PHP_RUNTIME, str(version))

    @property
    def label(self) -> str:
        """Human-readable name used in log lines and result errors."""
        if self.kind is TargetKind.PHP_RUNTIME:
            return f"php-fpm {self.identifier}"
        return self.identifier

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class Site:
    """Read-only site descriptor supplied by the site registry.

    The engine never persists a Site. On success it reports the new
    web server / PHP version for the registry to store.
    """

    id: str
    domain: str
    web_server: WebServer
    php_version: str
    document_root: Path
    ssl: bool = False
    port: int = 8080
    https_port: int = 8443
    db_path: Path | None = None
    table_prefix: str = "wp_"

    @property
    def scheme(self) -> str:
        return "https" if self.ssl else "http"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.domain}"

    @property
    def database_path(self) -> Path:
        """Location of the SQLite drop-in database used by the site."""
        if self.db_path is not None:
            return Path(self.db_path)
        return Path(self.document_root) / "wp-content" / "database" / ".ht.sqlite"

    def target(self, kind: TargetKind) -> ServiceTarget:
        """The site's current target of the given kind."""
        if kind is TargetKind.PHP_RUNTIME:
            return ServiceTarget.php_runtime(self.php_version)
        return ServiceTarget.web_server(self.web_server)

    def with_changes(self, **changes: Any) -> "Site":
        data = self.to_dict()
        data.update(changes)
        return Site.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "web_server": self.web_server.value,
            "php_version": self.php_version,
            "document_root": str(self.document_root),
            "ssl": self.ssl,
            "port": self.port,
            "https_port": self.https_port,
            "db_path": str(self.db_path) if self.db_path else None,
            "table_prefix": self.table_prefix,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Site":
        db_path = data.get("db_path")
        return cls(
            id=str(data["id"]),
            domain=str(data["domain"]),
            web_server=WebServer.parse(data.get("web_server") or data.get("webServer", "nginx")),
            php_version=str(data.get("php_version") or data.get("phpVersion", "8.1")),
            document_root=Path(data.get("document_root") or data.get("path", "")),
            ssl=bool(data.get("ssl", False)),
            port=int(data.get("port", 8080)),
            https_port=int(data.get("https_port", 8443)),
            db_path=Path(db_path) if db_path else None,
            table_prefix=data.get("table_prefix", "wp_"),
        )


def _require_bool(name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ValidationError(
            code="INVALID_OPTION",
            message=f"Option '{name}' must be a boolean, got {type(value).__name__}",
        )


@dataclass(frozen=True)
class SwapServerOptions:
    """Options for swapping a site's web server.

    Attributes:
        from_server: Server the site runs on now. Must match the site.
        to_server: Server to move to.
        preserve_config: Carry custom directives outside the managed block
            into the new config. Default True.
        migrate_ssl_certs: Copy certificate material into the new server's
            store. Default True.
        backup_configs: Keep the pre-swap snapshot on disk after a
            successful swap. A snapshot is always taken for rollback;
            this only controls retention. Default True.
        new_url: Optional new canonical URL rewritten in the same
            transaction. Default None.
    """

    from_server: WebServer
    to_server: WebServer
    preserve_config: bool = True
    migrate_ssl_certs: bool = True
    backup_configs: bool = True
    new_url: str | None = None

    def validate(self) -> None:
        WebServer.parse(self.from_server)
        WebServer.parse(self.to_server)
        for name in ("preserve_config", "migrate_ssl_certs", "backup_configs"):
            _require_bool(name, getattr(self, name))
        if self.new_url is not None:
            normalize_url(self.new_url)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SwapServerOptions":
        """Build from a snake_case or camelCase payload."""
        return cls(
            from_server=WebServer.parse(_pick(data, "from_server", "fromServer")),
            to_server=WebServer.parse(_pick(data, "to_server", "toServer")),
            preserve_config=_pick(data, "preserve_config", "preserveConfig", True),
            migrate_ssl_certs=_pick(data, "migrate_ssl_certs", "migrateSslCerts", True),
            backup_configs=_pick(data, "backup_configs", "backupConfigs", True),
            new_url=_pick(data, "new_url", "newUrl", None),
        )


@dataclass(frozen=True)
class PHPVersionChangeOptions:
    """Options for changing a site's PHP runtime.

    Attributes:
        new_version: PHP version to move to, e.g. "8.2".
        migrate_extensions: Enable the same extensions in the new
            version's php.ini. Default True.
        preserve_config: Carry custom directives outside the managed block
            into the new FPM pool. Default True.
        restart_services: Restart the web server so it connects to the new
            FPM socket. Default True.
    """

    new_version: str
    migrate_extensions: bool = True
    preserve_config: bool = True
    restart_services: bool = True

    def validate(self) -> None:
        if not isinstance(self.new_version, str) or not self.new_version.strip():
            raise ValidationError(
                code="INVALID_OPTION",
                message="Option 'new_version' must be a non-empty string",
            )
        for name in ("migrate_extensions", "preserve_config", "restart_services"):
            _require_bool(name, getattr(self, name))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PHPVersionChangeOptions":
        return cls(
            new_version=str(_pick(data, "new_version", "newVersion")),
            migrate_extensions=_pick(data, "migrate_extensions", "migrateExtensions", True),
            preserve_config=_pick(data, "preserve_config", "preserveConfig", True),
            restart_services=_pick(data, "restart_services", "restartServices", True),
        )


_MISSING = object()


def _pick(data: dict[str, Any], snake: str, camel: str, default: Any = _MISSING) -> Any:
    if snake in data:
        return data[snake]
    if camel in data:
        return data[camel]
    if default is _MISSING:
        raise ValidationError(code="MISSING_OPTION", message=f"Option '{snake}' is required")
    return default


def normalize_url(url: str) -> tuple[str, str]:
    """Split a site URL into (scheme, host).

    Accepts bare hosts ("example.local") as well as http/https URLs.
    """
    value = (url or "").strip().rstrip("/")
    scheme = "http"
    match = re.match(r"^(https?)://(.*)$", value, re.IGNORECASE)
    if match:
        scheme = match.group(1).lower()
        value = match.group(2)
    host = value.lower()
    if "/" in host or not DOMAIN_RE.match(host.split(":", 1)[0]):
        raise ValidationError(
            code="INVALID_URL",
            message=f"Invalid URL format: {url}",
            suggestion="Use a host name such as 'mysite.local' or 'https://mysite.local'",
        )
    return scheme, host


class TransactionState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SNAPSHOTTING = "snapshotting"
    STOPPING = "stopping"
    APPLYING = "applying"
    STARTING = "starting"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (
            TransactionState.COMMITTED,
            TransactionState.ROLLED_BACK,
            TransactionState.FAILED,
        )


@dataclass
class SwapTransaction:
    """One swap request, owned by the orchestrator until it is terminal."""

    id: str
    site_id: str
    from_target: ServiceTarget
    to_target: ServiceTarget
    state: TransactionState = TransactionState.IDLE
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    step_log: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        self.step_log.append(f"[{self.state.value}] {message}")

    @property
    def duration_ms(self) -> int:
        end = self.completed_at or datetime.utcnow()
        return int((end - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "site_id": self.site_id,
            "from_target": self.from_target.label,
            "to_target": self.to_target.label,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "step_log": list(self.step_log),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ServiceSwapResult:
    """Immutable summary of a completed swap transaction."""

    success: bool
    duration: int
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    old_server: str | None = None
    new_server: str | None = None
    old_version: str | None = None
    new_version: str | None = None
    web_server: str | None = None
    php_version: str | None = None
    transaction_id: str | None = None
    state: str | None = None
    fatal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "duration": self.duration,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "old_server": self.old_server,
            "new_server": self.new_server,
            "old_version": self.old_version,
            "new_version": self.new_version,
            "web_server": self.web_server,
            "php_version": self.php_version,
            "transaction_id": self.transaction_id,
            "state": self.state,
            "fatal": self.fatal,
        }


@dataclass(frozen=True)
class ServiceStats:
    """Point-in-time process statistics, polled by callers."""

    uptime: str
    memory: str
    cpu: str
    requests: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "uptime": self.uptime,
            "memory": self.memory,
            "cpu": self.cpu,
            "requests": self.requests,
        }
