"""Tests for the config translator."""

import pytest

from pressbox.errors import ConfigTranslationError
from pressbox.layout import SiteLayout
from pressbox.models import ServiceTarget, WebServer
from pressbox.services.config_translator import (
    MANAGED_BEGIN,
    MANAGED_END,
    extract_custom_directives,
    read_extensions,
)

NGINX = ServiceTarget.web_server(WebServer.NGINX)
APACHE = ServiceTarget.web_server(WebServer.APACHE)


class TestTranslate:
    """Tests for ConfigTranslator.translate."""

    def test_idempotent(self, translator, site):
        """Identical input renders byte-identical output."""
        for target in (NGINX, APACHE, ServiceTarget.php_runtime("8.2")):
            first = translator.translate(site, target)
            second = translator.translate(site, target)
            assert first.files == second.files

    def test_nginx_config(self, translator, site, config):
        artifacts = translator.translate(site, NGINX)
        layout = SiteLayout(config, site.id)

        assert list(artifacts.files) == [str(layout.server_config(WebServer.NGINX))]
        text = artifacts.files[str(layout.server_config(WebServer.NGINX))]
        assert text.startswith(f"# {MANAGED_BEGIN}")
        assert text.rstrip().endswith(MANAGED_END)
        assert "listen 8080;" in text
        assert "server_name s1.local;" in text
        assert f"server unix:{layout.fpm_socket()};" in text
        assert "ssl_certificate" not in text

    def test_apache_ssl_config(self, translator, site, config):
        tls_site = site.with_changes(ssl=True)
        layout = SiteLayout(config, site.id)

        text = translator.translate(tls_site, APACHE).files[
            str(layout.server_config(WebServer.APACHE))
        ]

        assert "LoadModule ssl_module" in text
        assert "Listen 8443" in text
        assert f'SSLCertificateFile "{layout.cert_file(WebServer.APACHE, "s1.local")}"' in text
        assert f"proxy:unix:{layout.fpm_socket()}|fcgi://localhost" in text

    def test_php_target_renders_pool_ini_and_server(self, translator, site, config):
        layout = SiteLayout(config, site.id)

        artifacts = translator.translate(
            site, ServiceTarget.php_runtime("8.3"), extensions=["extension=intl"]
        )

        assert set(artifacts.files) == {
            str(layout.fpm_pool("8.3")),
            str(layout.php_ini("8.3")),
            str(layout.server_config(WebServer.NGINX)),
        }
        assert f"listen = {layout.fpm_socket()}" in artifacts.files[str(layout.fpm_pool("8.3"))]
        assert "extension=intl" in artifacts.files[str(layout.php_ini("8.3"))]
        server = artifacts.files[str(layout.server_config(WebServer.NGINX))]
        assert str(layout.fpm_socket()) in server
        assert "PHP 8.3" in server

    def test_preserved_directives_appended(self, translator, site, config):
        path = str(SiteLayout(config, site.id).server_config(WebServer.NGINX))

        artifacts = translator.translate(site, NGINX, preserved={path: "# custom\nfoo bar;"})

        assert artifacts.files[path].endswith(f"# {MANAGED_END}\n# custom\nfoo bar;\n")

    def test_invalid_descriptor(self, translator, site):
        broken = site.with_changes(document_root="relative/path")

        with pytest.raises(ConfigTranslationError) as exc_info:
            translator.translate(broken, NGINX)

        assert exc_info.value.code == "INVALID_DESCRIPTOR"
        assert "not absolute" in exc_info.value.message

    def test_invalid_php_version(self, translator, site):
        with pytest.raises(ConfigTranslationError):
            translator.translate(site, ServiceTarget.php_runtime("eight"))


class TestWrite:
    """Tests for ConfigTranslator.write."""

    def test_writes_files(self, translator, site):
        artifacts = translator.translate(site, ServiceTarget.php_runtime("8.1"))

        written = translator.write(artifacts)

        assert len(written) == 3
        for path in written:
            assert path.read_text() == artifacts.files[str(path)]
        assert not any(p.name.startswith(".") for p in written[0].parent.iterdir())

    def test_unwritable_path(self, translator, site, config):
        config.configs_dir.parent.mkdir(parents=True, exist_ok=True)
        config.configs_dir.write_text("not a directory")

        with pytest.raises(ConfigTranslationError) as exc_info:
            translator.write(translator.translate(site, NGINX))

        assert exc_info.value.code == "CONFIG_WRITE_FAILED"


class TestHelpers:
    """Tests for managed block and extension parsing."""

    def test_extract_custom_directives(self):
        text = (
            "# before\n"
            f"# {MANAGED_BEGIN}\n"
            "generated;\n"
            f"# {MANAGED_END}\n"
            "# after\n"
            "client_max_body_size 1G;\n"
        )

        assert extract_custom_directives(text) == "# before\n# after\nclient_max_body_size 1G;"

    def test_file_without_block_is_custom(self):
        assert extract_custom_directives("Timeout 600\n") == "Timeout 600"

    def test_read_extensions(self):
        ini = (
            "extension=redis\n"
            "; extension=disabled\n"
            'extension = "imagick.so"\n'
            "zend_extension=opcache\n"
            "extension=redis\n"
        )

        assert read_extensions(ini) == [
            "extension=redis",
            "extension=imagick",
            "zend_extension=opcache",
        ]
