"""Process control for a site's web server and PHP-FPM runtime.

ServiceController is the only component that holds process handles.
Callers pass a Site and a ServiceTarget; how each server kind is launched,
probed and measured stays inside this module.
"""

import logging
import socket
import struct
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil
import requests

from pressbox.config import PressBoxConfig
from pressbox.errors import ServiceControlError
from pressbox.layout import SiteLayout
from pressbox.models import ServiceStats, ServiceTarget, Site, TargetKind, WebServer
from pressbox.output import format_bytes, format_uptime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessRef:
    """Opaque handle to a process started by ServiceController.

    The create time guards against pid reuse when reattaching from a pid file.
    """

    pid: int
    create_time: float


@dataclass(frozen=True)
class StopResult:
    """Outcome of a stop request."""

    target: ServiceTarget
    was_running: bool
    forced: bool = False

    @property
    def degraded(self) -> bool:
        return self.forced


def probe(
    check: Callable[[], bool],
    attempts: int,
    backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Run a health check at most `attempts` times with a fixed backoff."""
    for attempt in range(1, attempts + 1):
        if check():
            return True
        if attempt < attempts:
            sleep(backoff)
    return False


# FastCGI record types and roles used by the FPM health check
FCGI_BEGIN_REQUEST = 1
FCGI_END_REQUEST = 3
FCGI_PARAMS = 4
FCGI_STDIN = 5
FCGI_STDOUT = 6
FCGI_RESPONDER = 1
FCGI_HEADER = struct.Struct("!BBHHBx")

HEALTH_SCRIPT = "<?php echo PHP_MAJOR_VERSION . '.' . PHP_MINOR_VERSION;\n"


def _fcgi_record(record_type: int, content: bytes, request_id: int = 1) -> bytes:
    return FCGI_HEADER.pack(1, record_type, request_id, len(content), 0) + content


def _fcgi_params(params: dict[str, str]) -> bytes:
    out = b""
    for name, value in params.items():
        encoded = (name.encode(), value.encode())
        for part in encoded:
            if len(part) < 128:
                out += bytes([len(part)])
            else:
                out += struct.pack("!I", len(part) | 0x80000000)
        out += b"".join(encoded)
    return out


def fastcgi_get(socket_path: Path, script: Path, timeout: float) -> bytes:
    """Run one script through a FastCGI responder on a unix socket.

    Returns the response body without its CGI headers. Raises OSError when
    the socket refuses, times out or closes early.
    """
    params = {
        "GATEWAY_INTERFACE": "CGI/1.1",
        "REQUEST_METHOD": "GET",
        "SCRIPT_FILENAME": str(script),
        "SCRIPT_NAME": f"/{script.name}",
        "QUERY_STRING": "",
        "SERVER_PROTOCOL": "HTTP/1.1",
        "CONTENT_LENGTH": "0",
    }
    request = (
        _fcgi_record(FCGI_BEGIN_REQUEST, struct.pack("!HB5x", FCGI_RESPONDER, 0))
        + _fcgi_record(FCGI_PARAMS, _fcgi_params(params))
        + _fcgi_record(FCGI_PARAMS, b"")
        + _fcgi_record(FCGI_STDIN, b"")
    )

    stdout = b""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(str(socket_path))
        sock.sendall(request)
        buffer = b""
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                raise ConnectionError(f"FastCGI responder at {socket_path} closed early")
            buffer += chunk
            while len(buffer) >= FCGI_HEADER.size:
                _, record_type, _, length, padding = FCGI_HEADER.unpack_from(buffer)
                end = FCGI_HEADER.size + length + padding
                if len(buffer) < end:
                    break
                content = buffer[FCGI_HEADER.size : FCGI_HEADER.size + length]
                buffer = buffer[end:]
                if record_type == FCGI_STDOUT:
                    stdout += content
                elif record_type == FCGI_END_REQUEST:
                    _, _, body = stdout.partition(b"\r\n\r\n")
                    return body


class ServiceController:
    """Start, stop, restart, probe and measure a site's server processes."""

    def __init__(self, config: PressBoxConfig) -> None:
        self.config = config
        self._processes: dict[tuple[str, ServiceTarget], ProcessRef] = {}
        self._popen: dict[ProcessRef, subprocess.Popen] = {}

    # Launch mechanics per kind

    def _command(self, site: Site, target: ServiceTarget) -> list[str]:
        layout = SiteLayout(self.config, site.id)
        if target.kind is TargetKind.PHP_RUNTIME:
            return [
                self.config.php_fpm_bin.format(version=target.identifier),
                "--nodaemonize",
                "--fpm-config",
                str(layout.fpm_pool(target.identifier)),
                "-c",
                str(layout.php_ini(target.identifier)),
            ]

        server = WebServer(target.identifier)
        conf = layout.server_config(server)
        if server is WebServer.NGINX:
            return [
                self.config.nginx_bin,
                "-p",
                str(conf.parent),
                "-c",
                str(conf),
                "-g",
                "daemon off;",
            ]
        return [self.config.apache_bin, "-f", str(conf), "-DFOREGROUND"]

    def _ports(self, site: Site, target: ServiceTarget) -> list[int]:
        if target.kind is TargetKind.PHP_RUNTIME:
            return []
        return [site.port, site.https_port] if site.ssl else [site.port]

    # Process bookkeeping

    def _ref(self, site: Site, target: ServiceTarget) -> ProcessRef | None:
        """Find the live process for a target, reattaching via pid file."""
        key = (site.id, target)
        ref = self._processes.get(key)
        if ref is None:
            ref = self._read_handle(site, target)
            if ref is None:
                return None
            self._processes[key] = ref

        if self._alive(ref):
            return ref

        self._forget(site, target)
        return None

    def _alive(self, ref: ProcessRef) -> bool:
        try:
            proc = psutil.Process(ref.pid)
            return (
                abs(proc.create_time() - ref.create_time) < 1.0
                and proc.status() != psutil.STATUS_ZOMBIE
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def _read_handle(self, site: Site, target: ServiceTarget) -> ProcessRef | None:
        handle = SiteLayout(self.config, site.id).handle_file(target)
        try:
            pid_str, _, created = handle.read_text().strip().partition(" ")
            pid = int(pid_str)
            create_time = float(created) if created else psutil.Process(pid).create_time()
            return ProcessRef(pid=pid, create_time=create_time)
        except (OSError, ValueError, psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def _record(self, site: Site, target: ServiceTarget, ref: ProcessRef) -> None:
        self._processes[(site.id, target)] = ref
        handle = SiteLayout(self.config, site.id).handle_file(target)
        handle.parent.mkdir(parents=True, exist_ok=True)
        handle.write_text(f"{ref.pid} {ref.create_time}\n")

    def _forget(self, site: Site, target: ServiceTarget) -> None:
        ref = self._processes.pop((site.id, target), None)
        if ref is not None:
            popen = self._popen.pop(ref, None)
            if popen is not None:
                popen.poll()
        SiteLayout(self.config, site.id).handle_file(target).unlink(missing_ok=True)

    def _port_in_use(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            return sock.connect_ex(("127.0.0.1", port)) == 0

    # Public interface

    def is_running(self, site: Site, target: ServiceTarget) -> bool:
        return self._ref(site, target) is not None

    def start(self, site: Site, target: ServiceTarget) -> ProcessRef:
        """Start a target's process for a site.

        Fails fast when a foreign process holds one of the site's ports or
        the new process exits during the start grace period.
        """
        existing = self._ref(site, target)
        if existing is not None:
            logger.debug(f"{target.label} for '{site.id}' already running (pid {existing.pid})")
            return existing

        for port in self._ports(site, target):
            if self._port_in_use(port):
                raise ServiceControlError(
                    code="PORT_IN_USE",
                    message=f"{target.label} failed to start: port in use ({port})",
                    suggestion=f"Stop whatever is listening on port {port}",
                )

        layout = SiteLayout(self.config, site.id)
        layout.ensure_directories()
        if target.kind is TargetKind.PHP_RUNTIME:
            layout.fpm_socket().unlink(missing_ok=True)

        command = self._command(site, target)
        error_log = layout.error_log(target)
        try:
            with open(error_log, "ab") as stderr:
                popen = subprocess.Popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                    start_new_session=True,
                )
        except (FileNotFoundError, PermissionError) as e:
            raise ServiceControlError(
                code="BINARY_NOT_FOUND",
                message=f"{target.label} failed to start: {e}",
                suggestion=f"Install {command[0]} or set its path in the PressBox config",
            )

        deadline = time.monotonic() + min(self.config.start_grace, self.config.start_timeout)
        while time.monotonic() < deadline:
            if popen.poll() is not None:
                raise ServiceControlError(
                    code="SERVICE_START_FAILED",
                    message=(
                        f"{target.label} failed to start: exited with code {popen.returncode}"
                    ),
                    suggestion=f"Check {error_log} for details",
                )
            time.sleep(0.05)

        try:
            ref = ProcessRef(pid=popen.pid, create_time=psutil.Process(popen.pid).create_time())
        except psutil.NoSuchProcess:
            raise ServiceControlError(
                code="SERVICE_START_FAILED",
                message=f"{target.label} failed to start: process vanished",
                suggestion=f"Check {error_log} for details",
            )
        self._popen[ref] = popen
        self._record(site, target, ref)
        logger.info(f"Started {target.label} for '{site.id}' (pid {ref.pid})")
        return ref

    def stop(self, site: Site, target: ServiceTarget, timeout: float | None = None) -> StopResult:
        """Stop a target's process, escalating to SIGKILL after the timeout."""
        timeout = self.config.stop_timeout if timeout is None else timeout
        ref = self._ref(site, target)
        if ref is None:
            return StopResult(target=target, was_running=False)

        forced = False
        try:
            proc = psutil.Process(ref.pid)
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning(
                    f"{target.label} for '{site.id}' did not exit within {timeout}s, killing"
                )
                forced = True
                proc.kill()
                try:
                    proc.wait(timeout=5)
                except psutil.TimeoutExpired:
                    raise ServiceControlError(
                        code="SERVICE_STOP_FAILED",
                        message=f"{target.label} (pid {ref.pid}) survived SIGKILL",
                        suggestion=f"Kill pid {ref.pid} manually",
                    )
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            raise ServiceControlError(
                code="SERVICE_STOP_FAILED",
                message=f"Not permitted to stop {target.label} (pid {ref.pid})",
            )

        self._forget(site, target)
        logger.info(f"Stopped {target.label} for '{site.id}'{' (forced)' if forced else ''}")
        return StopResult(target=target, was_running=True, forced=forced)

    def restart(self, site: Site, target: ServiceTarget) -> ProcessRef:
        self.stop(site, target)
        return self.start(site, target)

    def health_check(self, site: Site, target: ServiceTarget) -> bool:
        """Single health check; callers wrap it in probe() for retries."""
        if self._ref(site, target) is None:
            return False

        if target.kind is TargetKind.PHP_RUNTIME:
            return self.run_php_script(site, target.identifier)

        try:
            response = requests.get(
                f"http://127.0.0.1:{site.port}/",
                headers={"Host": site.domain},
                timeout=self.config.health_timeout,
                allow_redirects=False,
            )
            # Any HTTP answer means the server is accepting connections
            return response.status_code < 600
        except requests.exceptions.RequestException:
            return False

    def run_php_script(self, site: Site, version: str) -> bool:
        """Execute a minimal script through the site's FPM socket and check its version."""
        layout = SiteLayout(self.config, site.id)
        script = layout.health_script()
        try:
            layout.run_root.mkdir(parents=True, exist_ok=True)
            script.write_text(HEALTH_SCRIPT)
            body = fastcgi_get(layout.fpm_socket(), script, self.config.health_timeout)
        except OSError as e:
            logger.warning(f"PHP {version} FastCGI check failed for '{site.id}': {e}")
            return False
        answer = body.decode("utf-8", "replace").strip()
        if answer != version:
            logger.warning(f"PHP FastCGI check for '{site.id}' expected {version}, got {answer!r}")
            return False
        return True

    def stats(self, site: Site, target: ServiceTarget) -> ServiceStats:
        """Uptime, memory, CPU and request count for a target's process."""
        ref = self._ref(site, target)
        if ref is None:
            return ServiceStats(uptime="stopped", memory="0 B", cpu="0.0%", requests=0)

        try:
            proc = psutil.Process(ref.pid)
            with proc.oneshot():
                children = proc.children(recursive=True)
                rss = proc.memory_info().rss
                cpu = proc.cpu_percent(interval=0.1)
                for child in children:
                    try:
                        rss += child.memory_info().rss
                    except (psutil.NoSuchProcess, psutil.AccessDenied):
                        pass
            uptime = format_uptime(datetime.now().timestamp() - ref.create_time)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return ServiceStats(uptime="stopped", memory="0 B", cpu="0.0%", requests=0)

        return ServiceStats(
            uptime=uptime,
            memory=format_bytes(rss),
            cpu=f"{cpu:.1f}%",
            requests=self._count_requests(SiteLayout(self.config, site.id).access_log(target)),
        )

    def _count_requests(self, access_log: Path) -> int:
        if not access_log.exists():
            return 0
        try:
            with open(access_log, "rb") as f:
                return sum(1 for _ in f)
        except OSError:
            return 0

    def running_targets(self, site: Site) -> list[ServiceTarget]:
        """Every web server and PHP runtime currently running for a site."""
        candidates = [ServiceTarget.web_server(server) for server in WebServer] + [
            ServiceTarget.php_runtime(v) for v in self.config.supported_php_versions
        ]
        return [t for t in candidates if self.is_running(site, t)]

    def describe(self, site: Site, target: ServiceTarget) -> dict[str, object]:
        ref = self._ref(site, target)
        return {
            "target": target.label,
            "status": "running" if ref else "stopped",
            "pid": ref.pid if ref else None,
            "handle_file": str(SiteLayout(self.config, site.id).handle_file(target)),
        }
