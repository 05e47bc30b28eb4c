"""TLS material handling for PressBox sites.

Each web server reads its certificate from its own store under the site's
config directory, so a swap copies the pair across. Sources are never
deleted; the previous store stays valid for a rollback.
"""

import logging
import shutil
import subprocess
from pathlib import Path

from pressbox.config import PressBoxConfig
from pressbox.errors import CertificateMigrationError
from pressbox.layout import SiteLayout
from pressbox.models import Site, WebServer

logger = logging.getLogger(__name__)

CERT_DAYS = 825


class CertificateMigrator:
    """Copy or issue a site's certificate for a target web server."""

    def __init__(self, config: PressBoxConfig) -> None:
        self.config = config

    def paths_for(self, site: Site, server: WebServer, domain: str | None = None) -> tuple[Path, Path]:
        """Certificate and key paths the server's config references."""
        layout = SiteLayout(self.config, site.id)
        domain = domain or site.domain
        return layout.cert_file(server, domain), layout.key_file(server, domain)

    def _shared_paths(self, domain: str) -> tuple[Path, Path]:
        base = self.config.certs_dir / domain
        return base / f"{domain}.crt", base / f"{domain}.key"

    def _find_source(self, site: Site, from_server: WebServer) -> tuple[Path, Path] | None:
        for cert, key in (self.paths_for(site, from_server), self._shared_paths(site.domain)):
            if cert.exists() and key.exists():
                return cert, key
        return None

    def migrate(
        self,
        site: Site,
        from_server: WebServer,
        to_server: WebServer,
        issue_missing: bool = True,
    ) -> bool:
        """Make the site's certificate available to to_server.

        Args:
            site: Site whose certificate moves
            from_server: Server currently holding the certificate
            to_server: Server that needs it
            issue_missing: Issue a local self-signed pair when no source exists

        Returns:
            False when the site has no TLS, True otherwise
        """
        if not site.ssl:
            return False

        dest_cert, dest_key = self.paths_for(site, to_server)
        source = self._find_source(site, from_server)
        if source is None:
            if not issue_missing:
                raise CertificateMigrationError(
                    code="CERT_NOT_FOUND",
                    message=f"No certificate found for '{site.domain}'",
                    suggestion=f"Place {site.domain}.crt/.key in {self.config.certs_dir / site.domain}",
                )
            logger.warning(
                f"No certificate for '{site.domain}', issuing a self-signed one for {to_server.value}"
            )
            self.reissue(site, site.domain, to_server)
            return True

        src_cert, src_key = source
        if (src_cert, src_key) == (dest_cert, dest_key):
            return True

        try:
            dest_cert.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src_cert, dest_cert)
            shutil.copy2(src_key, dest_key)
            dest_key.chmod(0o600)
        except OSError as e:
            raise CertificateMigrationError(
                code="CERT_COPY_FAILED",
                message=f"Cannot copy certificate for '{site.domain}' to {dest_cert.parent}: {e}",
                suggestion="Check permissions on the site's certs directory",
            )

        logger.info(f"Copied certificate for '{site.domain}' from {src_cert.parent} to {dest_cert.parent}")
        return True

    def reissue(self, site: Site, domain: str, server: WebServer) -> tuple[Path, Path]:
        """Issue a self-signed certificate for a domain into a server's store."""
        cert, key = self.paths_for(site, server, domain)
        cert.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.config.openssl_bin,
            "req",
            "-x509",
            "-nodes",
            "-newkey",
            "rsa:2048",
            "-sha256",
            "-days",
            str(CERT_DAYS),
            "-keyout",
            str(key),
            "-out",
            str(cert),
            "-subj",
            f"/CN={domain}",
            "-addext",
            f"subjectAltName=DNS:{domain},DNS:*.{domain}",
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except subprocess.TimeoutExpired:
            raise CertificateMigrationError(
                code="CERT_ISSUE_TIMEOUT",
                message=f"Issuing a certificate for '{domain}' timed out",
            )
        except FileNotFoundError:
            raise CertificateMigrationError(
                code="OPENSSL_NOT_FOUND",
                message="openssl is not installed",
                suggestion="Install openssl or set openssl_bin in the PressBox config",
            )

        if result.returncode != 0:
            raise CertificateMigrationError(
                code="CERT_ISSUE_FAILED",
                message=f"Certificate issue for '{domain}' failed: {result.stderr or result.stdout}",
            )

        key.chmod(0o600)
        logger.info(f"Issued self-signed certificate for '{domain}' in {cert.parent}")
        return cert, key
