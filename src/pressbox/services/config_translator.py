"""Server and PHP-FPM config generation for PressBox sites.

Translation is a pure function of the site descriptor and the target:
no timestamps, no environment lookups, so the same input always renders
byte-identical files. Generated text lives inside a managed block; any
directive outside it belongs to the user and is carried over verbatim
when preserve_config is set.
"""

import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import Template

from pressbox.config import PressBoxConfig
from pressbox.errors import ConfigTranslationError
from pressbox.layout import SiteLayout
from pressbox.models import DOMAIN_RE, ServiceTarget, Site, TargetKind, WebServer

MANAGED_BEGIN = "BEGIN PressBox managed block"
MANAGED_END = "END PressBox managed block"

PHP_VERSION_RE = re.compile(r"^\d+\.\d+$")
EXTENSION_RE = re.compile(r"^\s*(zend_extension|extension)\s*=\s*\"?([\w./-]+?)(\.so)?\"?\s*$")

NGINX_TEMPLATE = """# BEGIN PressBox managed block - regenerated on every swap
# Site: {{ site_id }}
# Stack: nginx + PHP {{ php_version }}
pid {{ pid_file }};
error_log {{ error_log }};

events {
    worker_connections 1024;
}

http {
    include {{ mime_types }};
    default_type application/octet-stream;
    sendfile on;
    client_max_body_size 256M;
    access_log {{ access_log }};

    upstream php_{{ upstream }} {
        server unix:{{ fpm_socket }};
    }

    server {
        listen {{ port }};
        server_name {{ domain }};
        root {{ document_root }};
        index index.php index.html;

        location / {
            try_files $uri $uri/ /index.php?$args;
        }

        location ~ \\.php$ {
            include fastcgi_params;
            fastcgi_pass php_{{ upstream }};
            fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
            fastcgi_param HTTPS {{ 'on' if ssl else 'off' }};
            fastcgi_read_timeout 300;
        }

        location ~ /\\.ht {
            deny all;
        }
    }
{% if ssl %}
    server {
        listen {{ https_port }} ssl;
        server_name {{ domain }};
        root {{ document_root }};
        index index.php index.html;

        ssl_certificate {{ cert_file }};
        ssl_certificate_key {{ key_file }};
        ssl_protocols TLSv1.2 TLSv1.3;

        location / {
            try_files $uri $uri/ /index.php?$args;
        }

        location ~ \\.php$ {
            include fastcgi_params;
            fastcgi_pass php_{{ upstream }};
            fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
            fastcgi_param HTTPS on;
            fastcgi_read_timeout 300;
        }

        location ~ /\\.ht {
            deny all;
        }
    }
{% endif %}
}
# END PressBox managed block
"""

APACHE_TEMPLATE = """# BEGIN PressBox managed block - regenerated on every swap
# Site: {{ site_id }}
# Stack: apache + PHP {{ php_version }}
ServerRoot "{{ server_root }}"
PidFile "{{ pid_file }}"
ErrorLog "{{ error_log }}"
{% for module in modules %}LoadModule {{ module }}_module "{{ modules_dir }}/mod_{{ module }}.so"
{% endfor %}
ServerName {{ domain }}
Listen {{ port }}
{% if ssl %}Listen {{ https_port }}
{% endif %}
LogFormat "%h %l %u %t \\"%r\\" %>s %b" common
CustomLog "{{ access_log }}" common
DirectoryIndex index.php index.html

<VirtualHost *:{{ port }}>
    ServerName {{ domain }}
    DocumentRoot "{{ document_root }}"

    <Directory "{{ document_root }}">
        AllowOverride All
        Require all granted
    </Directory>

    <FilesMatch "\\.php$">
        SetHandler "proxy:unix:{{ fpm_socket }}|fcgi://localhost"
    </FilesMatch>
</VirtualHost>
{% if ssl %}
<VirtualHost *:{{ https_port }}>
    ServerName {{ domain }}
    DocumentRoot "{{ document_root }}"

    SSLEngine on
    SSLCertificateFile "{{ cert_file }}"
    SSLCertificateKeyFile "{{ key_file }}"

    <Directory "{{ document_root }}">
        AllowOverride All
        Require all granted
    </Directory>

    <FilesMatch "\\.php$">
        SetHandler "proxy:unix:{{ fpm_socket }}|fcgi://localhost"
    </FilesMatch>
</VirtualHost>
{% endif %}# END PressBox managed block
"""

APACHE_MODULES = (
    "mpm_event",
    "authz_core",
    "unixd",
    "dir",
    "mime",
    "log_config",
    "rewrite",
    "proxy",
    "proxy_fcgi",
)

FPM_POOL_TEMPLATE = """; BEGIN PressBox managed block - regenerated on every swap
; Site: {{ site_id }}
; PHP-FPM {{ php_version }}
[global]
pid = {{ pid_file }}
error_log = {{ error_log }}
daemonize = no

[{{ pool }}]
listen = {{ fpm_socket }}
listen.mode = 0660
pm = ondemand
pm.max_children = 5
pm.process_idle_timeout = 10s
chdir = {{ document_root }}
php_admin_value[error_log] = {{ error_log }}
php_admin_flag[log_errors] = on
; END PressBox managed block
"""

PHP_INI_TEMPLATE = """; BEGIN PressBox managed block - regenerated on every swap
; PHP Configuration for WordPress Development (PHP {{ php_version }})
[PHP]
engine = On
short_open_tag = Off
expose_php = Off
max_execution_time = 300
max_input_time = 300
memory_limit = 512M
error_reporting = E_ALL & ~E_DEPRECATED & ~E_STRICT
display_errors = On
log_errors = On
post_max_size = 256M
upload_max_filesize = 256M
max_file_uploads = 20
allow_url_fopen = On
date.timezone = UTC
{% for ext in extensions %}
{{ ext }}{% endfor %}

[opcache]
opcache.enable = 1
opcache.memory_consumption = 128
opcache.validate_timestamps = 1
; END PressBox managed block
"""


@dataclass(frozen=True)
class ConfigArtifacts:
    """Rendered config files for one target, keyed by absolute path."""

    target: ServiceTarget
    files: dict[str, str] = field(default_factory=dict)


def _render(source: str, **context: object) -> str:
    return Template(source, keep_trailing_newline=True).render(**context)


def extract_custom_directives(text: str) -> str:
    """Return everything outside the managed block, verbatim.

    Files without a managed block are treated as fully custom.
    """
    lines = text.splitlines(keepends=True)
    kept: list[str] = []
    inside = False
    for line in lines:
        if MANAGED_BEGIN in line:
            inside = True
            continue
        if MANAGED_END in line:
            inside = False
            continue
        if not inside:
            kept.append(line)
    return "".join(kept).strip("\n")


def read_extensions(ini_text: str) -> list[str]:
    """List the extension directives enabled in a php.ini, in file order."""
    found: list[str] = []
    for line in ini_text.splitlines():
        match = EXTENSION_RE.match(line)
        if not match:
            continue
        directive = f"{match.group(1)}={match.group(2)}"
        if directive not in found:
            found.append(directive)
    return found


class ConfigTranslator:
    """Render a site's logical descriptor into a target stack's config files."""

    def __init__(self, config: PressBoxConfig) -> None:
        self.config = config

    def _validate(self, site: Site, target: ServiceTarget) -> None:
        problems = []
        if not re.match(r"^[\w.-]+$", site.id or "") or site.id in (".", ".."):
            problems.append(f"invalid site id '{site.id}'")
        if not DOMAIN_RE.match(site.domain or ""):
            problems.append(f"invalid domain '{site.domain}'")
        if not Path(site.document_root).is_absolute():
            problems.append(f"document root '{site.document_root}' is not absolute")
        for name, port in (("port", site.port), ("https_port", site.https_port)):
            if not 0 < port < 65536:
                problems.append(f"{name} {port} out of range")
        if not PHP_VERSION_RE.match(site.php_version):
            problems.append(f"invalid PHP version '{site.php_version}'")
        if target.kind is TargetKind.PHP_RUNTIME and not PHP_VERSION_RE.match(target.identifier):
            problems.append(f"invalid PHP version '{target.identifier}'")
        if target.kind is TargetKind.WEB_SERVER:
            try:
                WebServer(target.identifier)
            except ValueError:
                problems.append(f"unknown web server '{target.identifier}'")

        if problems:
            raise ConfigTranslationError(
                code="INVALID_DESCRIPTOR",
                message=f"Cannot translate config for site '{site.id}': {'; '.join(problems)}",
                suggestion="Check the site descriptor supplied by the site registry",
            )

    def translate(
        self,
        site: Site,
        target: ServiceTarget,
        preserved: dict[str, str] | None = None,
        extensions: list[str] | tuple[str, ...] = (),
    ) -> ConfigArtifacts:
        """Render the config files the target stack needs.

        Args:
            site: Site descriptor (domain, docroot, TLS flag, PHP version)
            target: Web server or PHP runtime to render for
            preserved: Custom directives keyed by path, appended after the
                managed block of the file with the same path
            extensions: Extension directives for the generated php.ini

        Returns:
            ConfigArtifacts with the rendered file contents
        """
        self._validate(site, target)
        layout = SiteLayout(self.config, site.id)
        preserved = preserved or {}
        files: dict[str, str] = {}

        if target.kind is TargetKind.WEB_SERVER:
            server = WebServer(target.identifier)
            path = layout.server_config(server)
            files[str(path)] = self._render_server(layout, site, server, site.php_version)
        else:
            version = target.identifier
            pool = layout.fpm_pool(version)
            ini = layout.php_ini(version)
            server_path = layout.server_config(site.web_server)
            files[str(pool)] = self._render_pool(layout, site, version)
            files[str(ini)] = _render(
                PHP_INI_TEMPLATE,
                php_version=version,
                extensions=list(extensions),
            )
            files[str(server_path)] = self._render_server(layout, site, site.web_server, version)

        for path in sorted(files):
            custom = preserved.get(path, "").strip("\n")
            if custom:
                files[path] = f"{files[path]}{custom}\n"

        return ConfigArtifacts(target=target, files=dict(sorted(files.items())))

    def _render_server(
        self, layout: SiteLayout, site: Site, server: WebServer, php_version: str
    ) -> str:
        target = ServiceTarget.web_server(server)
        context = {
            "site_id": site.id,
            "domain": site.domain,
            "document_root": str(site.document_root),
            "port": site.port,
            "https_port": site.https_port,
            "ssl": site.ssl,
            "php_version": php_version,
            "fpm_socket": str(layout.fpm_socket()),
            "pid_file": str(layout.pid_file(target)),
            "access_log": str(layout.access_log(target)),
            "error_log": str(layout.error_log(target)),
            "cert_file": str(layout.cert_file(server, site.domain)),
            "key_file": str(layout.key_file(server, site.domain)),
        }
        if server is WebServer.NGINX:
            return _render(
                NGINX_TEMPLATE,
                mime_types=self.config.nginx_mime_types,
                upstream=re.sub(r"\W", "_", site.id),
                **context,
            )

        modules = list(APACHE_MODULES) + (["ssl"] if site.ssl else [])
        return _render(
            APACHE_TEMPLATE,
            server_root=str(layout.server_config(server).parent),
            modules=modules,
            modules_dir=self.config.apache_modules_dir,
            **context,
        )

    def _render_pool(self, layout: SiteLayout, site: Site, version: str) -> str:
        target = ServiceTarget.php_runtime(version)
        return _render(
            FPM_POOL_TEMPLATE,
            site_id=site.id,
            pool=re.sub(r"\W", "_", site.id),
            php_version=version,
            fpm_socket=str(layout.fpm_socket()),
            pid_file=str(layout.pid_file(target)),
            error_log=str(layout.error_log(target)),
            document_root=str(site.document_root),
        )

    def write(self, artifacts: ConfigArtifacts) -> list[Path]:
        """Write rendered files atomically (temp file + rename)."""
        written = []
        for path_str, content in artifacts.files.items():
            path = Path(path_str)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as f:
                        f.write(content)
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as e:
                raise ConfigTranslationError(
                    code="CONFIG_WRITE_FAILED",
                    message=f"Cannot write config file {path}: {e}",
                    suggestion="Check permissions on the PressBox configs directory",
                )
            written.append(path)
        return written
