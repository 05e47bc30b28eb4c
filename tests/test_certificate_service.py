"""Tests for the certificate migrator."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from pressbox.errors import CertificateMigrationError
from pressbox.models import WebServer
from pressbox.services.certificate_service import CertificateMigrator


@pytest.fixture
def migrator(config):
    return CertificateMigrator(config)


@pytest.fixture
def tls_site(site):
    return site.with_changes(ssl=True)


def _write_pair(cert, key):
    cert.parent.mkdir(parents=True, exist_ok=True)
    cert.write_text("CERT")
    key.write_text("KEY")


def _fake_openssl(cmd, **kwargs):
    """Write the files openssl would produce."""
    key = cmd[cmd.index("-keyout") + 1]
    cert = cmd[cmd.index("-out") + 1]
    with open(key, "w") as f:
        f.write("KEY")
    with open(cert, "w") as f:
        f.write("CERT")
    return MagicMock(returncode=0, stdout="", stderr="")


class TestMigrate:
    """Tests for CertificateMigrator.migrate."""

    def test_no_tls(self, migrator, site):
        assert migrator.migrate(site, WebServer.NGINX, WebServer.APACHE) is False

    def test_copies_from_server_store(self, migrator, tls_site):
        src_cert, src_key = migrator.paths_for(tls_site, WebServer.NGINX)
        _write_pair(src_cert, src_key)

        assert migrator.migrate(tls_site, WebServer.NGINX, WebServer.APACHE) is True

        dest_cert, dest_key = migrator.paths_for(tls_site, WebServer.APACHE)
        assert dest_cert.read_text() == "CERT"
        assert dest_key.read_text() == "KEY"
        assert dest_key.stat().st_mode & 0o777 == 0o600
        assert src_cert.exists() and src_key.exists()

    def test_falls_back_to_shared_store(self, migrator, config, tls_site):
        shared = config.certs_dir / "s1.local"
        _write_pair(shared / "s1.local.crt", shared / "s1.local.key")

        migrator.migrate(tls_site, WebServer.NGINX, WebServer.APACHE)

        dest_cert, _ = migrator.paths_for(tls_site, WebServer.APACHE)
        assert dest_cert.read_text() == "CERT"

    def test_not_found(self, migrator, tls_site):
        with pytest.raises(CertificateMigrationError) as exc_info:
            migrator.migrate(tls_site, WebServer.NGINX, WebServer.APACHE, issue_missing=False)

        assert exc_info.value.code == "CERT_NOT_FOUND"

    def test_issues_when_missing(self, migrator, tls_site):
        with patch(
            "pressbox.services.certificate_service.subprocess.run", side_effect=_fake_openssl
        ) as mock_run:
            assert migrator.migrate(tls_site, WebServer.NGINX, WebServer.APACHE) is True

        mock_run.assert_called_once()
        dest_cert, _ = migrator.paths_for(tls_site, WebServer.APACHE)
        assert dest_cert.exists()


class TestReissue:
    """Tests for CertificateMigrator.reissue."""

    def test_issues_for_new_domain(self, migrator, tls_site):
        with patch(
            "pressbox.services.certificate_service.subprocess.run", side_effect=_fake_openssl
        ) as mock_run:
            cert, key = migrator.reissue(tls_site, "blog.test", WebServer.NGINX)

        assert cert.name == "blog.test.crt"
        assert key.stat().st_mode & 0o777 == 0o600
        cmd = mock_run.call_args[0][0]
        assert "/CN=blog.test" in cmd
        assert "subjectAltName=DNS:blog.test,DNS:*.blog.test" in cmd

    def test_openssl_missing(self, migrator, tls_site):
        with patch(
            "pressbox.services.certificate_service.subprocess.run",
            side_effect=FileNotFoundError("openssl"),
        ):
            with pytest.raises(CertificateMigrationError) as exc_info:
                migrator.reissue(tls_site, "blog.test", WebServer.NGINX)

        assert exc_info.value.code == "OPENSSL_NOT_FOUND"

    def test_timeout(self, migrator, tls_site):
        with patch(
            "pressbox.services.certificate_service.subprocess.run",
            side_effect=subprocess.TimeoutExpired("openssl", 60),
        ):
            with pytest.raises(CertificateMigrationError) as exc_info:
                migrator.reissue(tls_site, "blog.test", WebServer.NGINX)

        assert exc_info.value.code == "CERT_ISSUE_TIMEOUT"

    def test_openssl_fails(self, migrator, tls_site):
        with patch(
            "pressbox.services.certificate_service.subprocess.run",
            return_value=MagicMock(returncode=1, stdout="", stderr="bad subject"),
        ):
            with pytest.raises(CertificateMigrationError) as exc_info:
                migrator.reissue(tls_site, "blog.test", WebServer.NGINX)

        assert exc_info.value.code == "CERT_ISSUE_FAILED"
        assert "bad subject" in exc_info.value.message
