"""IRC connector built on asyncio streams.

:meth:`IRCBackend.connect` opens the TCP (optionally TLS) connection,
registers with ``PASS``/``NICK``/``USER`` and waits on a future that the
receive loop resolves when the server sends ``001 RPL_WELCOME``.  The same
receive loop answers ``PING`` and turns ``PRIVMSG`` lines into envelopes once
:meth:`IRCBackend.read` has handed it a queue.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Iterable
from dataclasses import dataclass

from relaybot.backends.base import BackendBase, BackendState, EnvelopeQueue
from relaybot.config import IRCServerConfig
from relaybot.errors import (
    ConnectError,
    JoinError,
    ReadError,
    RelayCancelled,
    TargetNotFoundError,
    WriteError,
)
from relaybot.routing.envelope import MessageEnvelope
from relaybot.routing.target import Target

log = logging.getLogger(__name__)

EVENT_WELCOME = "001"  # RPL_WELCOME
EVENT_NICK_IN_USE = "433"  # ERR_NICKNAMEINUSE
EVENT_PRIVMSG = "PRIVMSG"

_QUIT_MESSAGE = "relaybot shutting down"


@dataclass(frozen=True, slots=True)
class IRCLine:
    """One parsed IRC protocol line.

    Attributes:
        prefix: Origin of the line (``nick!user@host`` or a server name).
        command: Upper-cased command or three-digit numeric.
        params: Parameters, the trailing one included as the last item.
    """

    prefix: str | None
    command: str
    params: tuple[str, ...]

    @property
    def nick(self) -> str:
        """Nickname part of the prefix, or ``""`` for server lines."""
        if not self.prefix:
            return ""
        return self.prefix.split("!", 1)[0]

    @classmethod
    def parse(cls, raw: str) -> IRCLine:
        """Parse *raw* (with or without the trailing CRLF).

        IRCv3 message tags are accepted and discarded.

        Raises:
            ValueError: If *raw* holds no command.
        """
        line = raw.rstrip("\r\n")
        if line.startswith("@"):
            _, _, line = line.partition(" ")

        prefix: str | None = None
        if line.startswith(":"):
            prefix, _, line = line[1:].partition(" ")

        if line.startswith(":"):
            head, trailing = "", [line[1:]]
        elif " :" in line:
            head, _, rest = line.partition(" :")
            trailing = [rest]
        else:
            head, trailing = line, []

        parts = head.split() + trailing
        if not parts or not parts[0]:
            raise ValueError(f"No command in IRC line {raw!r}")
        return cls(prefix, parts[0].upper(), tuple(parts[1:]))


class IRCBackend(BackendBase):
    """Backend for a single IRC network."""

    config: IRCServerConfig

    def __init__(self, name: str, config: IRCServerConfig, *, debug: bool = False) -> None:
        super().__init__(name, config, debug=debug)
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._receiver: asyncio.Task[None] | None = None
        self._welcome: asyncio.Future[None] | None = None
        self._queue: EnvelopeQueue | None = None
        self._joined: set[str] = set()
        self._send_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Backend API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        cfg = self.config
        self.state = BackendState.CONNECTING
        log.info(
            "[%s] Connecting to %s:%d as %s (tls=%s)",
            self.name, cfg.host, cfg.effective_port, cfg.nick, cfg.use_tls,
        )
        try:
            self._reader, self._writer = await asyncio.open_connection(
                cfg.host, cfg.effective_port, ssl=self._ssl_context(),
            )
        except OSError as exc:
            self._fail()
            raise ConnectError(self.name, exc) from exc

        self._welcome = asyncio.get_running_loop().create_future()
        self._receiver = asyncio.create_task(self._receive_loop(), name=f"irc-recv-{self.name}")

        try:
            if cfg.password is not None:
                await self._send(f"PASS {cfg.password.get_secret_value()}")
            await self._send(f"NICK {cfg.nick}")
            await self._send(f"USER {cfg.username} 0 * :{cfg.username}")
            await self._welcome
        except Exception as exc:
            await self.close()
            raise ConnectError(self.name, exc) from exc

        self.state = BackendState.CONNECTED
        log.info("[%s] Connected successfully", self.name)

    async def set_targets(self, targets: Iterable[Target]) -> None:
        for target in self._remember_targets(targets):
            key = target.name.lower()
            if key in self._joined:
                log.debug("[%s] Skipping joining room [%s] as already joined", self.name, target.name)
                continue
            log.info("[%s] Joining room [%s]", self.name, target.name)
            try:
                await self._send(f"JOIN {target.name}")
            except OSError as exc:
                self._fail()
                raise JoinError(self.name, exc) from exc
            self._joined.add(key)
        self.state = BackendState.JOINED

    async def read(self, cancel: asyncio.Event, queue: EnvelopeQueue) -> None:
        if self._receiver is None:
            raise ReadError(self.name, "not connected")
        self._queue = queue
        try:
            await self._wait_cancelled(cancel, self._receiver)
        except RelayCancelled:
            raise
        except Exception as exc:
            await self.close()
            raise ReadError(self.name, exc) from exc
        await self.close()
        raise ReadError(self.name, "connection closed")

    async def write(self, envelope: MessageEnvelope) -> None:
        destination = envelope.destination
        if destination is None:
            raise WriteError(self.name, "?", "envelope has no destination")

        text = envelope.render()
        log.debug("[%s] Sending message [%s] to room [%s]", self.name, text, destination.name)
        try:
            # IRC has no multi-line messages; one PRIVMSG per line.
            for line in text.splitlines() or [""]:
                await self._send(f"{EVENT_PRIVMSG} {destination.name} :{line}")
        except OSError as exc:
            raise WriteError(self.name, destination.name, exc) from exc

    async def close(self) -> None:
        receiver, self._receiver = self._receiver, None
        if receiver is not None:
            receiver.cancel()
            await asyncio.gather(receiver, return_exceptions=True)

        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                if not writer.is_closing():
                    writer.write(f"QUIT :{_QUIT_MESSAGE}\r\n".encode())
                    await writer.drain()
                writer.close()
                await writer.wait_closed()
            except (OSError, ssl.SSLError) as exc:
                log.debug("[%s] Error while closing connection: %s", self.name, exc)

        self._reader = None
        self._queue = None
        self._joined.clear()
        self.state = BackendState.CLOSED

    def get_target(self, room: str) -> Target:
        # Channel names are case-insensitive.
        key = room.lower()
        for target in self.targets:
            if target.name.lower() == key:
                return target
        raise TargetNotFoundError(room)

    # ------------------------------------------------------------------
    # Protocol internals
    # ------------------------------------------------------------------

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.config.use_tls:
            return None
        context = ssl.create_default_context()
        if self.config.skip_tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _send(self, line: str) -> None:
        if self.debug:
            shown = "PASS ***" if line.startswith("PASS ") else line
            log.debug("[%s] >>> %s", self.name, shown)
        async with self._send_lock:
            # close() may have run while we waited for the lock.
            writer = self._writer
            if writer is None:
                raise ConnectionError("not connected")
            writer.write(line.encode("utf-8") + b"\r\n")
            await writer.drain()

    async def _receive_loop(self) -> None:
        try:
            reader = self._reader
            if reader is None:
                raise ConnectionError("not connected")
            while True:
                raw = await reader.readline()
                if not raw:
                    raise ConnectionError("connection closed by server")
                text = raw.decode("utf-8", errors="replace").strip("\r\n")
                if not text:
                    continue
                if self.debug:
                    log.debug("[%s] <<< %s", self.name, text)
                try:
                    line = IRCLine.parse(text)
                except ValueError:
                    log.warning("[%s] Ignoring malformed line %r", self.name, text)
                    continue
                await self.handle_line(line)
        except Exception as exc:
            if self._welcome is not None and not self._welcome.done():
                self._welcome.set_exception(exc)
            raise

    async def handle_line(self, line: IRCLine) -> None:
        """React to one line from the server."""
        command = line.command
        if command == "PING":
            await self._send(f"PONG :{line.params[-1] if line.params else ''}")
        elif command == EVENT_WELCOME:
            if self._welcome is not None and not self._welcome.done():
                self._welcome.set_result(None)
        elif command == EVENT_NICK_IN_USE and not self._registered:
            raise ConnectionError(f"nickname [{self.config.nick}] is already in use")
        elif command == "ERROR":
            raise ConnectionError(f"server error: {' '.join(line.params)}")
        elif command == EVENT_PRIVMSG:
            self._on_privmsg(line)
        elif command in ("PART", "KICK") and self._is_self_removed(line):
            self._joined.discard(line.params[0].lower())

    @property
    def _registered(self) -> bool:
        return self._welcome is not None and self._welcome.done()

    def _is_self_removed(self, line: IRCLine) -> bool:
        if not line.params:
            return False
        me = self.config.nick.lower()
        if line.command == "KICK":
            return len(line.params) > 1 and line.params[1].lower() == me
        return line.nick.lower() == me

    def _on_privmsg(self, line: IRCLine) -> None:
        if self._queue is None or len(line.params) < 2:
            return
        if line.nick.lower() == self.config.nick.lower():
            log.debug("[%s] Ignoring message as bot user", self.name)
            return
        room, text = line.params[0], line.params[-1]
        self._enqueue(self._queue, room, line.nick, text)
