"""
An MkDocs plugin that cache-busts resource URLs inside built CSS files.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from mkdocs.config import config_options as c
from mkdocs.config.defaults import MkDocsConfig
from mkdocs.exceptions import PluginError
from mkdocs.plugins import BasePlugin

from plugins.css_cache_buster.cache_buster import transform_sync
from plugins.css_cache_buster.errors import CacheBusterError
from plugins.css_cache_buster.hasher import HashOptions, LocalResource, classify_locator

# Use MkDocs' recommended plugin logger namespace so debug logs appear only with `--verbose`.
logger = logging.getLogger(f"mkdocs.plugins.{__name__}")


class CssCacheBusterPlugin(BasePlugin):
    """MkDocs plugin that appends `md5-by-cache-buster=<md5>` to known url(...) references.

    Configuration options (all optional):
    - url_table (dict): URL as written in the CSS -> local path or http(s) URL of the resource.
    - css_files (str|list): Relative paths (under site_dir) or glob patterns of CSS files to rewrite.
    - base_dir (str): Directory relative local resources are resolved against. Defaults to the
      directory holding mkdocs.yml.
    - connect_timeout / read_timeout (number): Seconds allowed for remote connects and for each read.
    - debug (bool): Extra debug logging.
    """

    config_scheme = (
        ('url_table',       c.Type(dict, default={})),
        ('css_files',       c.Type((str, list), default=[])),
        ('base_dir',        c.Type(str, default="")),
        ('connect_timeout', c.Type((int, float), default=10)),
        ('read_timeout',    c.Type((int, float), default=30)),
        ('debug',           c.Type(bool, default=False)),
    )

    # -------------------------------
    # Helpers
    # -------------------------------

    def _dbg(self, msg: str, *args) -> None:
        """Debug log gated by plugin config."""
        if not self.config.get("debug", False):
            return

        logger.debug("[css_cache_buster] " + msg, *args)

    def _hash_options(self) -> HashOptions:
        return HashOptions(
            connect_timeout=float(self.config.get("connect_timeout", 10)),
            read_timeout=float(self.config.get("read_timeout", 30)),
        )

    def _base_dir(self, config: MkDocsConfig) -> Path:
        """Directory that relative local locators are resolved against."""
        config_file = config.get("config_file_path")
        root = Path(config_file).resolve().parent if config_file else Path.cwd()
        base_dir = self.config.get("base_dir") or ""
        return root / base_dir if base_dir else root

    def _resolved_url_table(self, base_dir: Path) -> Dict[str, str]:
        """Return the configured URL table with relative local paths made absolute."""
        table: Dict[str, str] = {}
        for url_on_css, locator in (self.config.get("url_table") or {}).items():
            resource = classify_locator(locator)
            if isinstance(resource, LocalResource) and not os.path.isabs(resource.path):
                locator = str(base_dir / resource.path)
            self._dbg("[table] %s -> %s", url_on_css, locator)
            table[url_on_css] = locator
        return table

    def _css_targets(self, site_dir: Path) -> List[Path]:
        """Expand `css_files` into existing files under site_dir, de-duplicated, in config order."""
        css_files: Union[str, List[str]] = self.config.get("css_files") or []

        # Normalize to a list so we can iterate uniformly.
        if not isinstance(css_files, list):
            css_files = [css_files]

        targets: List[Path] = []
        for fp in css_files:
            rel = fp.lstrip('/')
            if "*" in rel or "?" in rel:
                matches = sorted(site_dir.glob(rel))
                self._dbg("[targets] glob %s matched %d file(s)", fp, len(matches))
                targets.extend(matches)
            elif (site_dir / rel).is_file():
                targets.append(site_dir / rel)
            else:
                logger.warning("[css_cache_buster] CSS file '%s' not found under %s; skipping", fp, site_dir)

        seen = set()
        out: List[Path] = []
        for p in targets:
            if p not in seen:
                seen.add(p)
                out.append(p)
        return out

    def cache_bust_file(self, css_path: Path, url_table: Dict[str, str]) -> Optional[bytes]:
        """Rewrite one CSS file in place. Returns the new content, or None if nothing changed.

        The file is handled as UTF-8 bytes; invalid sequences become U+FFFD.
        """
        try:
            original = css_path.read_bytes()
            rewritten = transform_sync(original, url_table, options=self._hash_options())
            if rewritten == original:
                self._dbg("[rewrite] unchanged %s", css_path.as_posix())
                return None
            css_path.write_bytes(rewritten)
        except (CacheBusterError, OSError) as exc:
            raise PluginError(f"[css_cache_buster] {css_path}: {exc}") from exc

        return rewritten

    # -------------------------------
    # MkDocs events
    # -------------------------------

    def on_config(self, config: MkDocsConfig) -> Optional[MkDocsConfig]:
        """Reject URL tables whose keys or values are not strings."""
        for key, value in (self.config.get("url_table") or {}).items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise PluginError(
                    f"[css_cache_buster] url_table entries must map strings to strings, got {key!r}: {value!r}"
                )
        return config

    def on_post_build(self, *, config: MkDocsConfig) -> None:
        """Cache-bust every configured CSS file written to site_dir."""
        site_dir = Path(config["site_dir"])
        targets = self._css_targets(site_dir)
        if not targets:
            self._dbg("[post_build] no CSS files to process")
            return

        url_table = self._resolved_url_table(self._base_dir(config))
        for css_path in targets:
            rel = css_path.relative_to(site_dir).as_posix()
            if self.cache_bust_file(css_path, url_table) is not None:
                logger.info("[css_cache_buster] cache-busted %s", rel)

        self._dbg("[post_build] done")
