"""YAML-backed site registry used by the PressBox CLI.

The reconfiguration engine never persists sites itself. The CLI looks
sites up here and stores the web server / PHP version / domain that a
successful swap reports back.

    sites:
      blog:
        domain: blog.local
        web_server: nginx
        php_version: "8.1"
        document_root: /home/me/PressBox/sites/blog
        ssl: true
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from pressbox.config import PressBoxConfig
from pressbox.errors import ValidationError
from pressbox.models import ServiceSwapResult, Site

logger = logging.getLogger(__name__)


class SiteRegistry:
    """Sites known to the CLI, keyed by id."""

    def __init__(self, config: PressBoxConfig, path: Path | None = None) -> None:
        self.config = config
        self.path = path or config.data_dir / "sites.yaml"

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            raise ValidationError(
                code="REGISTRY_UNREADABLE",
                message=f"Cannot read site registry {self.path}: {e}",
            )
        return data.get("sites") or {}

    def _save(self, sites: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".yaml.tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump({"sites": sites}, f, default_flow_style=False, sort_keys=True)
        tmp.replace(self.path)

    def get(self, site_id: str) -> Site:
        """Look up a site.

        Raises:
            ValidationError: If the site is not registered
        """
        data = self._load().get(site_id)
        if data is None:
            raise ValidationError(
                code="SITE_NOT_FOUND",
                message=f"Site '{site_id}' not found",
                suggestion=f"Add it to {self.path}",
            )
        return Site.from_dict({"id": site_id, **data})

    def save(self, site: Site) -> None:
        sites = self._load()
        data = site.to_dict()
        data.pop("id")
        sites[site.id] = {k: v for k, v in data.items() if v is not None}
        self._save(sites)

    def apply_result(self, site: Site, result: ServiceSwapResult, domain: str | None = None) -> Site:
        """Persist what a successful swap reports; returns the updated site."""
        if not result.success:
            return site
        changes: dict[str, Any] = {}
        if result.web_server:
            changes["web_server"] = result.web_server
        if result.php_version:
            changes["php_version"] = result.php_version
        if domain:
            changes["domain"] = domain
        updated = site.with_changes(**changes)
        self.save(updated)
        logger.info(f"Registry updated for '{site.id}': {changes}")
        return updated
