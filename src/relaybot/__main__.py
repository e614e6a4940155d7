"""Entry point for `python -m relaybot`."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

log = logging.getLogger("relaybot")


async def _run(supervisor) -> None:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(cancel.set))
    await supervisor.start(cancel)


def main() -> None:
    # Load .env before anything reads the environment.
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    log.info("Reading configuration")
    try:
        from relaybot.config import dump_settings, find_config_file, get_settings

        settings = get_settings()
    except Exception as e:
        log.error("Configuration error: %s", e)
        log.error("")
        log.error("  How to fix:")
        log.error("  1. Create relaybot.toml (or point RELAY_CONFIG_FILE at your file)")
        log.error("  2. Declare servers under [servers.irc.<name>], [servers.matrix.<name>]")
        log.error("     or [servers.discord.<name>]")
        log.error("  3. Every [[mappings]] entry needs from/to = { server, name } and")
        log.error("     each server must be one of the declared servers")
        sys.exit(1)

    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        log.debug("Setting logging DEBUG level")
        log.debug("Settings: %s", dump_settings(settings))

    if find_config_file() is None:
        log.warning("No configuration file found; using environment variables only")

    from relaybot.errors import ConfigurationError, RelayError
    from relaybot.supervisor import Supervisor

    log.info("Loading mappings")
    try:
        supervisor = Supervisor.from_settings(settings)
    except ConfigurationError as e:
        log.error("Configuration error: %s", e)
        sys.exit(1)

    log.info(
        "Starting relay with %d server(s) and %d route(s)",
        len(supervisor.backends), len(supervisor.table),
    )
    try:
        asyncio.run(_run(supervisor))
    except RelayError as e:
        log.error("Relay failed: %s", e)
        sys.exit(1)

    log.info("Relay stopped")


if __name__ == "__main__":
    main()
