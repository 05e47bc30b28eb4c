"""Configuration management for PressBox."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_PHP_VERSIONS = ("7.4", "8.0", "8.1", "8.2", "8.3")


def _home() -> Path:
    return Path(os.environ.get("PRESSBOX_HOME", Path.home() / "PressBox"))


@dataclass
class PressBoxConfig:
    """PressBox configuration settings."""

    # Paths
    data_dir: Path = field(default_factory=lambda: _home() / "data")
    configs_dir: Path = field(default_factory=lambda: _home() / "configs")
    run_dir: Path = field(default_factory=lambda: _home() / "run")
    log_dir: Path = field(default_factory=lambda: _home() / "logs")
    certs_dir: Path = field(default_factory=lambda: _home() / "certs")
    config_file: Path = field(
        default_factory=lambda: Path(
            os.environ.get("PRESSBOX_CONFIG", Path.home() / ".pressbox" / "config.yaml")
        )
    )

    # Audit database
    db_path: Path = field(default_factory=lambda: _home() / "data" / "pressbox.db")

    # Binaries ({version} is substituted for PHP)
    nginx_bin: str = "nginx"
    apache_bin: str = "httpd"
    php_fpm_bin: str = "php-fpm{version}"
    php_cli_bin: str = "php{version}"
    openssl_bin: str = "openssl"
    apache_modules_dir: str = "/usr/lib/apache2/modules"
    nginx_mime_types: str = "/etc/nginx/mime.types"

    # Timeouts (seconds)
    stop_timeout: float = 10.0
    start_timeout: float = 15.0
    start_grace: float = 0.5
    db_timeout: float = 5.0

    # Health probe
    health_attempts: int = 3
    health_backoff: float = 0.5
    health_timeout: float = 2.0

    supported_php_versions: list[str] = field(
        default_factory=lambda: list(DEFAULT_PHP_VERSIONS)
    )

    def __post_init__(self) -> None:
        """Convert string paths to Path objects if needed."""
        path_fields = [
            "data_dir",
            "configs_dir",
            "run_dir",
            "log_dir",
            "certs_dir",
            "config_file",
            "db_path",
        ]
        for field_name in path_fields:
            value = getattr(self, field_name)
            if isinstance(value, str):
                setattr(self, field_name, Path(value).expanduser())

    @property
    def backups_dir(self) -> Path:
        return self.data_dir / "backups"

    @classmethod
    def load(cls, config_path: Path | None = None) -> "PressBoxConfig":
        """Load configuration from YAML file, falling back to defaults."""
        config = cls()

        if config_path is None:
            config_path = config.config_file

        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
                config = cls._from_dict(data)
                config.config_file = config_path
            except (yaml.YAMLError, OSError):
                pass  # Fall back to defaults

        return config

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "PressBoxConfig":
        """Create config from dictionary."""
        kwargs: dict[str, Any] = {}

        # Map YAML keys to dataclass fields
        mappings = {
            "data_dir": "data_dir",
            "configs_dir": "configs_dir",
            "run_dir": "run_dir",
            "log_dir": "log_dir",
            "certs_dir": "certs_dir",
            "db_path": "db_path",
            "nginx_bin": "nginx_bin",
            "apache_bin": "apache_bin",
            "php_fpm_bin": "php_fpm_bin",
            "php_cli_bin": "php_cli_bin",
            "openssl_bin": "openssl_bin",
            "apache_modules_dir": "apache_modules_dir",
            "nginx_mime_types": "nginx_mime_types",
            "stop_timeout": "stop_timeout",
            "start_timeout": "start_timeout",
            "start_grace": "start_grace",
            "db_timeout": "db_timeout",
            "health_attempts": "health_attempts",
            "health_backoff": "health_backoff",
            "health_timeout": "health_timeout",
            "php_versions": "supported_php_versions",
        }

        for yaml_key, field_name in mappings.items():
            if yaml_key in data:
                kwargs[field_name] = data[yaml_key]

        if "supported_php_versions" in kwargs:
            kwargs["supported_php_versions"] = [
                str(v) for v in kwargs["supported_php_versions"]
            ]

        return cls(**kwargs)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        dirs = [
            self.data_dir,
            self.configs_dir,
            self.run_dir,
            self.log_dir,
            self.certs_dir,
            self.backups_dir,
        ]
        for dir_path in dirs:
            dir_path.mkdir(parents=True, exist_ok=True)

    def site_config_dir(self, site_id: str) -> Path:
        """Directory holding all generated configuration for a site."""
        return self.configs_dir / site_id

    def site_run_dir(self, site_id: str) -> Path:
        """Directory holding pid files and sockets for a site."""
        return self.run_dir / site_id


# Global config instance (loaded lazily, CLI only)
_config: PressBoxConfig | None = None


def get_config() -> PressBoxConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = PressBoxConfig.load()
    return _config

