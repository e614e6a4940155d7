"""Central configuration for relaybot.

Settings are read from, in order of priority:

1. keyword arguments passed to :class:`RelaySettings`,
2. environment variables prefixed with ``RELAY_`` (nested fields use ``__``,
   e.g. ``RELAY_SERVERS__IRC__LIBERA__PASSWORD``),
3. a TOML file, ``relaybot.toml`` by default or the path in
   ``RELAY_CONFIG_FILE``.

``.env`` files are loaded into the environment by :mod:`relaybot.__main__`
via *python-dotenv* before the settings are built.

Example ``relaybot.toml``::

    debug = false

    [servers.irc.libera]
    host = "irc.libera.chat"
    use_tls = true
    nick = "relaybot"

    [servers.matrix.home]
    homeserver = "https://matrix.example.org"
    username = "relaybot"
    password = "hunter2"

    [[mappings]]
    from = { server = "libera", name = "#general" }
    to = { server = "home", name = "!abcdef:example.org" }

Usage::

    from relaybot.config import get_settings

    settings = get_settings()
    print(settings.mappings)
"""

from __future__ import annotations

import functools
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV: str = "RELAY_CONFIG_FILE"
"""Environment variable naming the TOML configuration file."""

DEFAULT_CONFIG_FILE: str = "relaybot.toml"


# ---------------------------------------------------------------------------
# Connector settings
# ---------------------------------------------------------------------------


class IRCServerConfig(BaseModel):
    """Connection settings for one IRC network."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(..., description="Hostname of the IRC server.")
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="TCP port.  Defaults to 6697 with TLS, 6667 without.",
    )
    use_tls: bool = False
    skip_tls_verify: bool = False
    username: str = Field(default="relaybot", description="USER name sent at registration.")
    password: SecretStr | None = Field(default=None, description="Server password (PASS).")
    nick: str = Field(default="relaybot", description="Nickname of the bot.")

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return 6697 if self.use_tls else 6667


class MatrixServerConfig(BaseModel):
    """Login settings for one Matrix homeserver."""

    model_config = ConfigDict(extra="forbid")

    homeserver: str = Field(..., description="Base URL, e.g. https://matrix.org.")
    username: str
    password: SecretStr
    display_name: str = Field(default="", description="Display name set after login.")


class DiscordServerConfig(BaseModel):
    """Bot credentials for one Discord application."""

    model_config = ConfigDict(extra="forbid")

    token: SecretStr = Field(..., description="Bot token from the Developer Portal.")


class ServersConfig(BaseModel):
    """Backend instances grouped by type, keyed by instance name."""

    irc: dict[str, IRCServerConfig] = Field(default_factory=dict)
    matrix: dict[str, MatrixServerConfig] = Field(default_factory=dict)
    discord: dict[str, DiscordServerConfig] = Field(default_factory=dict)

    def by_type(self) -> dict[str, dict[str, BaseModel]]:
        return {"irc": dict(self.irc), "matrix": dict(self.matrix), "discord": dict(self.discord)}

    def names(self) -> list[str]:
        """Every configured instance name, across all backend types."""
        return [name for configs in self.by_type().values() for name in configs]


# ---------------------------------------------------------------------------
# Route settings
# ---------------------------------------------------------------------------


class TargetConfig(BaseModel):
    server: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class MappingConfig(BaseModel):
    """One ``{from: {server, name}, to: {server, name}}`` route declaration."""

    model_config = ConfigDict(populate_by_name=True)

    source: TargetConfig = Field(..., alias="from")
    destination: TargetConfig = Field(..., alias="to")


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class RelaySettings(BaseSettings):
    """Validated configuration for the whole relay process."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_nested_delimiter="__",
        # RELAY_CONFIG_FILE and friends are not fields.
        extra="ignore",
    )

    debug: bool = Field(
        default=False,
        description="Log at DEBUG level and enable protocol tracing in connectors.",
    )
    servers: ServersConfig = Field(default_factory=ServersConfig)
    mappings: list[MappingConfig] = Field(default_factory=list)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_file = os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
        )

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _check_servers_and_routes(self) -> RelaySettings:
        """Reject duplicate instance names and routes to unknown servers."""
        names = self.servers.names()
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(
                f"Server names must be unique across backend types: {', '.join(duplicates)}"
            )

        known = set(names)
        for index, mapping in enumerate(self.mappings):
            for end in (mapping.source, mapping.destination):
                if end.server not in known:
                    raise ValueError(
                        f"mappings[{index}] references unknown server [{end.server}]"
                    )
        return self

    # ------------------------------------------------------------------
    # Repr safety
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        # SecretStr already masks passwords and tokens.
        return (
            f"RelaySettings(debug={self.debug!r}, "
            f"servers={self.servers.names()!r}, "
            f"mappings={len(self.mappings)})"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def find_config_file() -> Path | None:
    """Return the TOML file the settings will read, if it exists."""
    p = Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE))
    return p if p.is_file() else None


def dump_settings(settings: RelaySettings) -> dict[str, Any]:
    """JSON-safe view of *settings* for debug logging (secrets masked)."""
    return settings.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Lazy singleton accessor
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Return the process-wide :class:`RelaySettings`.

    Created on first call so that importing this module never reads the
    environment before ``.env`` files have been loaded.

    Raises:
        pydantic.ValidationError: If the configuration is malformed or a
            route references an unknown server.
    """
    logger.debug("Initialising RelaySettings (config file: %s)", find_config_file())
    return RelaySettings()
