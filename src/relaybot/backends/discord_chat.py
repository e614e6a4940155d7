"""Discord connector built on discord.py.

Targets are text channel ids (as strings).  A bot cannot "join" a channel,
so :meth:`DiscordBackend.set_targets` resolves each id and fails if the bot
cannot see the channel.

Usage::

    backend = DiscordBackend("discord1", DiscordServerConfig(token="..."))
    await backend.connect()   # returns once the gateway reports READY
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import discord

from relaybot.backends.base import BackendBase, BackendState, EnvelopeQueue
from relaybot.config import DiscordServerConfig
from relaybot.errors import (
    ConnectError,
    JoinError,
    ReadError,
    RelayCancelled,
    WriteError,
)
from relaybot.routing.envelope import MessageEnvelope
from relaybot.routing.target import Target

log = logging.getLogger(__name__)

# Discord hard limit
_MESSAGE_CHAR_LIMIT: int = 2000


def truncate_for_discord(text: str, limit: int = _MESSAGE_CHAR_LIMIT) -> str:
    """Trim *text* to Discord's message limit, marking the cut."""
    if len(text) <= limit:
        return text
    return text[: limit - 15] + " ...(truncated)"


class DiscordBackend(BackendBase):
    """Backend for a single Discord bot account."""

    config: DiscordServerConfig

    def __init__(self, name: str, config: DiscordServerConfig, *, debug: bool = False) -> None:
        super().__init__(name, config, debug=debug)
        self.client: discord.Client | None = None
        self._runner: asyncio.Task[None] | None = None
        self._channels: dict[str, Any] = {}
        self._queue: EnvelopeQueue | None = None

    def _make_client(self) -> discord.Client:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True
        client = discord.Client(intents=intents)
        client.event(self.on_message)
        return client

    # ------------------------------------------------------------------
    # Backend API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self.state = BackendState.CONNECTING
        log.info("[%s] Connecting to Discord gateway", self.name)
        self.client = self._make_client()
        try:
            await self.client.login(self.config.token.get_secret_value())
        except (discord.LoginFailure, discord.HTTPException) as exc:
            await self.close()
            raise ConnectError(self.name, exc) from exc

        self._runner = asyncio.create_task(
            self.client.connect(reconnect=True), name=f"discord-gateway-{self.name}",
        )
        ready = asyncio.create_task(self.client.wait_until_ready())
        done, _ = await asyncio.wait({ready, self._runner}, return_when=asyncio.FIRST_COMPLETED)
        if ready not in done:
            ready.cancel()
            reason = _task_failure(self._runner) or "gateway closed before READY"
            await self.close()
            raise ConnectError(self.name, reason)

        self.state = BackendState.CONNECTED
        log.info("[%s] Logged in as %s", self.name, self.client.user)

    async def set_targets(self, targets: Iterable[Target]) -> None:
        if self.client is None:
            self._fail()
            raise JoinError(self.name, "not connected")
        for target in self._remember_targets(targets):
            if target.name in self._channels:
                log.debug("[%s] Skipping channel [%s] as already resolved", self.name, target.name)
                continue
            try:
                channel_id = int(target.name)
            except ValueError:
                self._fail()
                raise JoinError(self.name, f"invalid channel id [{target.name}]") from None

            channel = self.client.get_channel(channel_id)
            if channel is None:
                try:
                    channel = await self.client.fetch_channel(channel_id)
                except (discord.HTTPException, discord.InvalidData) as exc:
                    self._fail()
                    raise JoinError(self.name, exc) from exc
            log.info("[%s] Using channel [#%s] (%s)", self.name, getattr(channel, "name", "?"), target.name)
            self._channels[target.name] = channel
        self.state = BackendState.JOINED

    async def read(self, cancel: asyncio.Event, queue: EnvelopeQueue) -> None:
        if self._runner is None:
            raise ReadError(self.name, "not connected")
        self._queue = queue
        try:
            await self._wait_cancelled(cancel, self._runner)
        except RelayCancelled:
            raise
        except Exception as exc:
            await self.close()
            raise ReadError(self.name, exc) from exc
        await self.close()
        raise ReadError(self.name, "gateway connection closed")

    async def write(self, envelope: MessageEnvelope) -> None:
        destination = envelope.destination
        if destination is None:
            raise WriteError(self.name, "?", "envelope has no destination")
        channel = self._channels.get(destination.name)
        if channel is None:
            raise WriteError(self.name, destination.name, "channel not resolved")

        text = truncate_for_discord(envelope.render())
        log.debug("[%s] Sending message [%s] to channel [%s]", self.name, text, destination.name)
        try:
            await channel.send(text, allowed_mentions=discord.AllowedMentions.none())
        except discord.HTTPException as exc:
            raise WriteError(self.name, destination.name, exc) from exc

    async def close(self) -> None:
        self._queue = None
        client = self.client
        if client is not None and not client.is_closed():
            await client.close()

        runner, self._runner = self._runner, None
        if runner is not None:
            if not runner.done():
                runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        self.state = BackendState.CLOSED

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    async def on_message(self, message: discord.Message) -> None:
        """Turn a channel message into an envelope while reading."""
        if self._queue is None:
            return
        if self.debug:
            log.debug("[%s] Got message %r", self.name, message)
        if self.client is not None and message.author == self.client.user:
            log.debug("[%s] Ignoring message as bot user", self.name)
            return
        if not message.content:
            return
        self._enqueue(
            self._queue,
            str(message.channel.id),
            message.author.display_name,
            message.clean_content,
        )


def _task_failure(task: asyncio.Task[Any]) -> BaseException | None:
    if task.cancelled():
        return None
    return task.exception()
