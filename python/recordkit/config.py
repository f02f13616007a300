"""Connection configuration."""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from recordkit.session import Session

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "recordkit.ini"
_TRUE = frozenset({"1", "true", "yes", "on"})


@dataclass
class DatabaseConfig:
    """Where and how to connect.

    Example recordkit.ini:
        [recordkit]
        url = postgresql://localhost/mydb
        echo = true
        max_connections = 20
        morph_map = post:Post, video:Video
    """

    url: str | None = None
    """Database connection URL (``sqlite:...`` or ``postgresql://...``)."""

    echo: bool = False
    """Log every statement at INFO instead of DEBUG."""

    min_connections: int = 1
    max_connections: int = 10

    morph_map: dict[str, str] = field(default_factory=dict)
    """Discriminator value -> model class name, for polymorphic relations."""

    extra: dict[str, Any] = field(default_factory=dict)
    """Additional configuration options."""

    _config_path: Path | None = None
    """Path to the config file (internal)."""

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> DatabaseConfig:
        return cls(url=url, **kwargs)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> DatabaseConfig:
        """Read ``DATABASE_URL`` and ``RECORDKIT_ECHO``."""
        environ = os.environ if environ is None else environ
        return cls(
            url=environ.get("DATABASE_URL") or None,
            echo=environ.get("RECORDKIT_ECHO", "").strip().lower() in _TRUE,
        )

    @classmethod
    def from_ini(cls, path: Path | str) -> DatabaseConfig:
        """Load configuration from the ``[recordkit]`` section of an ini file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If the section is missing or a value is malformed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        config = configparser.ConfigParser()
        config.read(path)

        if "recordkit" not in config:
            raise ValueError(f"No [recordkit] section in {path}")

        section = config["recordkit"]
        known_keys = {"url", "echo", "min_connections", "max_connections", "morph_map"}
        return cls(
            url=section.get("url"),
            echo=section.getboolean("echo", False),
            min_connections=section.getint("min_connections", 1),
            max_connections=section.getint("max_connections", 10),
            morph_map=_parse_morph_map(section.get("morph_map", "")),
            extra={k: v for k, v in section.items() if k not in known_keys},
            _config_path=path,
        )

    @classmethod
    def auto_detect(cls, start_path: Path | str | None = None) -> DatabaseConfig | None:
        """Search for recordkit.ini from ``start_path`` (default: cwd) upward."""
        current = Path.cwd() if start_path is None else Path(start_path)
        while True:
            ini_path = current / CONFIG_FILENAME
            if ini_path.exists():
                return cls.from_ini(ini_path)
            if current == current.parent:
                return None
            current = current.parent

    def get_url(self, override: str | None = None) -> str:
        """Get database URL with optional override.

        Raises:
            ValueError: If no URL available
        """
        url = override or self.url
        if not url:
            raise ValueError("No database URL configured")
        return url

    def apply_morph_map(self) -> None:
        """Register the configured discriminators with the model registry."""
        from recordkit.relationships import get_model, morph_map

        resolved = {}
        for alias, name in self.morph_map.items():
            model = get_model(name)
            if model is None:
                raise ValueError(f"morph_map entry {alias!r} names unknown model {name!r}")
            resolved[alias] = model
        morph_map(resolved)

    async def init_session(self, url: str | None = None, *, replace: bool = False) -> Session:
        """Connect and register the process-wide session.

        Example:
            >>> session = await DatabaseConfig.from_env().init_session()
        """
        from recordkit.adapters import connect
        from recordkit.session import init_session

        url = self.get_url(url)
        if url.startswith(("postgres://", "postgresql://")):
            adapter = await connect(url, min_connections=self.min_connections, max_connections=self.max_connections)
        else:
            adapter = await connect(url)
        self.apply_morph_map()
        logger.debug("Connected to %s", url.split("@")[-1])
        return init_session(adapter, echo=self.echo, replace=replace)


def _parse_morph_map(value: str) -> dict[str, str]:
    """Parse ``alias:Model, alias:Model``."""
    mapping: dict[str, str] = {}
    for item in value.replace("\n", ",").split(","):
        item = item.strip()
        if not item:
            continue
        alias, sep, name = item.partition(":")
        if not sep or not alias.strip() or not name.strip():
            raise ValueError(f"Invalid morph_map entry: {item!r}")
        mapping[alias.strip()] = name.strip()
    return mapping
