"""On-disk layout of a site's generated configuration and runtime files.

Every component that touches a site's files resolves paths through
SiteLayout, so the snapshot store captures exactly what the translator,
certificate migrator and service controller write.

    <configs_dir>/<site>/nginx/nginx.conf
    <configs_dir>/<site>/apache/httpd.conf
    <configs_dir>/<site>/php/<version>/php-fpm.conf
    <configs_dir>/<site>/php/<version>/php.ini
    <configs_dir>/<site>/certs/<server>/<domain>.crt|.key
    <run_dir>/<site>/<name>.pid, php-fpm.sock, health.php, swap.lock
    <log_dir>/<site>/<name>-access.log, <name>-error.log
"""

from pathlib import Path

from pressbox.config import PressBoxConfig
from pressbox.models import ServiceTarget, Site, TargetKind, WebServer

SERVER_CONFIG_NAMES = {
    WebServer.NGINX: "nginx.conf",
    WebServer.APACHE: "httpd.conf",
}


class SiteLayout:
    """Resolve the paths owned by one site."""

    def __init__(self, config: PressBoxConfig, site_id: str) -> None:
        self.config = config
        self.site_id = site_id
        self.config_root = config.site_config_dir(site_id)
        self.run_root = config.site_run_dir(site_id)
        self.log_root = config.log_dir / site_id

    def server_config(self, server: WebServer) -> Path:
        return self.config_root / server.value / SERVER_CONFIG_NAMES[server]

    def php_dir(self, version: str) -> Path:
        return self.config_root / "php" / version

    def fpm_pool(self, version: str) -> Path:
        return self.php_dir(version) / "php-fpm.conf"

    def php_ini(self, version: str) -> Path:
        return self.php_dir(version) / "php.ini"

    def fpm_socket(self) -> Path:
        """The site's FPM socket; the same path for every PHP version."""
        return self.run_root / "php-fpm.sock"

    def health_script(self) -> Path:
        return self.run_root / "health.php"

    def swap_lock(self) -> Path:
        return self.run_root / "swap.lock"

    def cert_dir(self, server: WebServer) -> Path:
        return self.config_root / "certs" / server.value

    def cert_file(self, server: WebServer, domain: str) -> Path:
        return self.cert_dir(server) / f"{domain}.crt"

    def key_file(self, server: WebServer, domain: str) -> Path:
        return self.cert_dir(server) / f"{domain}.key"

    def process_name(self, target: ServiceTarget) -> str:
        if target.kind is TargetKind.PHP_RUNTIME:
            return f"php{target.identifier}-fpm"
        return target.identifier

    def pid_file(self, target: ServiceTarget) -> Path:
        return self.run_root / f"{self.process_name(target)}.pid"

    def handle_file(self, target: ServiceTarget) -> Path:
        """Process handle recorded by the service controller (pid and create time)."""
        return self.run_root / f"{self.process_name(target)}.ref"

    def access_log(self, target: ServiceTarget) -> Path:
        return self.log_root / f"{self.process_name(target)}-access.log"

    def error_log(self, target: ServiceTarget) -> Path:
        return self.log_root / f"{self.process_name(target)}-error.log"

    def managed_files(self, site: Site) -> dict[str, list[Path]]:
        """Every config file a swap of this site may create or rewrite.

        PHP files are listed for all supported versions so that a snapshot
        also records which of them did not exist yet.
        """
        versions = sorted(set(self.config.supported_php_versions) | {site.php_version})
        return {
            "web_server": [self.server_config(server) for server in WebServer],
            "php_fpm": [
                path
                for version in versions
                for path in (self.fpm_pool(version), self.php_ini(version))
            ],
        }

    def ensure_directories(self) -> None:
        for path in (self.config_root, self.run_root, self.log_root):
            path.mkdir(parents=True, exist_ok=True)
