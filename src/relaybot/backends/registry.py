"""Backend-type to connector factory map.

The relay never discovers connectors implicitly.  :func:`default_factories`
maps each ``[servers.<type>]`` section of the configuration to the class that
implements it, and :func:`build_backends` instantiates one backend per
configured instance.  Callers (and tests) can pass their own map.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from relaybot.backends.base import Backend
from relaybot.errors import ConfigurationError

if TYPE_CHECKING:
    from relaybot.config import RelaySettings

log = logging.getLogger(__name__)

BackendFactory = Callable[..., Backend]
"""``factory(name, config, *, debug=False) -> Backend``"""


def default_factories() -> dict[str, BackendFactory]:
    from relaybot.backends.discord_chat import DiscordBackend
    from relaybot.backends.irc import IRCBackend
    from relaybot.backends.matrix import MatrixBackend

    return {
        "irc": IRCBackend,
        "matrix": MatrixBackend,
        "discord": DiscordBackend,
    }


def build_backends(
    settings: RelaySettings,
    factories: Mapping[str, BackendFactory] | None = None,
) -> list[Backend]:
    """Instantiate every backend declared in ``settings.servers``.

    Backends are returned grouped by type in the order of *factories*, and
    by declaration order within a type.

    Raises:
        ConfigurationError: If a backend type has instances configured but no
            factory.
    """
    factories = default_factories() if factories is None else factories
    by_type: dict[str, dict[str, Any]] = settings.servers.by_type()

    missing = [t for t, configs in by_type.items() if configs and t not in factories]
    if missing:
        raise ConfigurationError(f"No connector registered for server type(s): {', '.join(missing)}")

    backends: list[Backend] = []
    for server_type, factory in factories.items():
        for name, config in by_type.get(server_type, {}).items():
            log.debug("Creating %s server [%s]", server_type, name)
            backends.append(factory(name, config, debug=settings.debug))

    log.info("Loaded %d server(s)", len(backends))
    return backends
