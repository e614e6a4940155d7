"""Matrix connector speaking the client-server API over aiohttp.

The backend logs in with a password, optionally sets its display name, joins
its rooms and then long-polls ``/sync``.  The first sync of a read loop uses
``timeout=0`` and only records the ``next_batch`` token, so messages sent
while the relay was down are not replayed.

Room aliases (``#room:server``) are accepted as targets; the room id returned
by ``/join`` is mapped back to the configured target so inbound events (which
carry room ids) resolve correctly.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from collections.abc import Iterable
from typing import Any
from urllib.parse import quote

import aiohttp

from relaybot.backends.base import BackendBase, BackendState, EnvelopeQueue
from relaybot.config import MatrixServerConfig
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

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_PREFIX: str = "/_matrix/client/v3"

EVENT_MESSAGE: str = "m.room.message"

_SYNC_TIMEOUT_MS: int = 30_000
"""Server-side long-poll duration for ``/sync``."""

_MAX_SYNC_FAILURES: int = 5
"""Consecutive failed syncs tolerated before the read loop gives up."""

_RETRY_BACKOFF_BASE: float = 1.0
"""Base delay in seconds for exponential backoff between failed syncs."""

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60)
_SYNC_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=_SYNC_TIMEOUT_MS / 1000 + 30)

_SYNC_FILTER: str = json.dumps({
    "presence": {"types": []},
    "account_data": {"types": []},
    "room": {
        "timeline": {"types": [EVENT_MESSAGE], "limit": 50},
        "state": {"lazy_load_members": True},
        "ephemeral": {"types": []},
        "account_data": {"types": []},
    },
})

_RequestErrors = (aiohttp.ClientError, asyncio.TimeoutError)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class MatrixError(Exception):
    """Raised when the homeserver answers with an error response.

    Attributes:
        message: The ``error`` field of the response, or the HTTP reason.
        status_code: HTTP status code of the failed response.
        errcode: Matrix error code (``M_FORBIDDEN``, ...), if present.
    """

    def __init__(self, message: str, status_code: int, errcode: str | None = None) -> None:
        self.message = message
        self.status_code = status_code
        self.errcode = errcode
        super().__init__(
            f"Matrix error {status_code}"
            f"{f' ({errcode})' if errcode else ''}: {message}"
        )

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class MatrixBackend(BackendBase):
    """Backend for a single Matrix account on one homeserver."""

    config: MatrixServerConfig

    def __init__(self, name: str, config: MatrixServerConfig, *, debug: bool = False) -> None:
        super().__init__(name, config, debug=debug)
        self._base_url: str = config.homeserver.rstrip("/") + API_PREFIX
        self._session: aiohttp.ClientSession | None = None
        self._access_token: str | None = None
        self.user_id: str | None = None
        self._next_batch: str | None = None
        self._sync_task: asyncio.Task[None] | None = None
        # room id -> configured target, and the reverse for sending.
        self._room_targets: dict[str, Target] = {}
        self._target_rooms: dict[Target, str] = {}
        self._txn_prefix = f"relaybot{int(time.time() * 1000)}"
        self._txn_counter = itertools.count()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=_REQUEST_TIMEOUT)
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> dict[str, Any]:
        """Send one API request and return the decoded JSON body.

        Raises:
            MatrixError: On a 4xx/5xx response.
            aiohttp.ClientError: On transport failures.
        """
        session = await self._ensure_session()
        kwargs: dict[str, Any] = {}
        if params is not None:
            kwargs["params"] = params
        if payload is not None:
            kwargs["json"] = payload
        if timeout is not None:
            kwargs["timeout"] = timeout
        if self._access_token:
            kwargs["headers"] = {"Authorization": f"Bearer {self._access_token}"}

        if self.debug:
            log.debug("[%s] %s %s", self.name, method, path)

        async with session.request(method, self._base_url + path, **kwargs) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            if not isinstance(data, dict):
                data = {}
            if resp.status >= 400:
                raise MatrixError(
                    data.get("error") or resp.reason or "unknown error",
                    resp.status,
                    data.get("errcode"),
                )
            return data

    # ------------------------------------------------------------------
    # Backend API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        cfg = self.config
        self.state = BackendState.CONNECTING
        log.info("[%s] Connecting to %s as %s", self.name, cfg.homeserver, cfg.username)
        try:
            resp = await self._request("POST", "/login", payload={
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": cfg.username},
                "password": cfg.password.get_secret_value(),
                "initial_device_display_name": "relaybot",
            })
            self._access_token = resp["access_token"]
            self.user_id = resp["user_id"]

            if cfg.display_name:
                await self._request(
                    "PUT",
                    f"/profile/{quote(self.user_id, safe='')}/displayname",
                    payload={"displayname": cfg.display_name},
                )
        except (MatrixError, KeyError, *_RequestErrors) as exc:
            await self.close()
            raise ConnectError(self.name, exc) from exc

        self.state = BackendState.CONNECTED
        log.info("[%s] Connected successfully as %s", self.name, self.user_id)

    async def set_targets(self, targets: Iterable[Target]) -> None:
        try:
            resp = await self._request("GET", "/joined_rooms")
            joined = set(resp.get("joined_rooms", []))
            for target in self._remember_targets(targets):
                if target.name in joined:
                    log.debug("[%s] Skipping joining room [%s] as already joined", self.name, target.name)
                    room_id = target.name
                else:
                    log.info("[%s] Joining room [%s]", self.name, target.name)
                    joined_resp = await self._request(
                        "POST", f"/join/{quote(target.name, safe='')}", payload={},
                    )
                    room_id = joined_resp.get("room_id", target.name)
                    joined.add(room_id)
                self._room_targets[room_id] = target
                self._target_rooms[target] = room_id
        except (MatrixError, *_RequestErrors) as exc:
            self._fail()
            raise JoinError(self.name, exc) from exc
        self.state = BackendState.JOINED

    async def read(self, cancel: asyncio.Event, queue: EnvelopeQueue) -> None:
        if self._access_token is None:
            raise ReadError(self.name, "not connected")
        self._sync_task = asyncio.create_task(
            self._sync_loop(queue), name=f"matrix-sync-{self.name}",
        )
        try:
            await self._wait_cancelled(cancel, self._sync_task)
        except RelayCancelled:
            raise
        except Exception as exc:
            await self.close()
            raise ReadError(self.name, exc) from exc
        await self.close()
        raise ReadError(self.name, "sync loop stopped")

    async def write(self, envelope: MessageEnvelope) -> None:
        destination = envelope.destination
        if destination is None:
            raise WriteError(self.name, "?", "envelope has no destination")

        room_id = self._target_rooms.get(destination, destination.name)
        text = envelope.render()
        txn_id = f"{self._txn_prefix}.{next(self._txn_counter)}"
        log.debug("[%s] Sending message [%s] to room [%s]", self.name, text, room_id)
        try:
            await self._request(
                "PUT",
                f"/rooms/{quote(room_id, safe='')}/send/{EVENT_MESSAGE}/{txn_id}",
                payload={"msgtype": "m.text", "body": text},
            )
        except (MatrixError, *_RequestErrors) as exc:
            raise WriteError(self.name, destination.name, exc) from exc

    async def close(self) -> None:
        sync_task, self._sync_task = self._sync_task, None
        if sync_task is not None:
            sync_task.cancel()
            await asyncio.gather(sync_task, return_exceptions=True)

        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
        self.state = BackendState.CLOSED

    def get_target(self, room: str) -> Target:
        target = self._room_targets.get(room)
        if target is not None:
            return target
        return super().get_target(room)

    # ------------------------------------------------------------------
    # Sync loop
    # ------------------------------------------------------------------

    async def _sync(self, timeout_ms: int) -> dict[str, Any]:
        params = {"timeout": str(timeout_ms), "filter": _SYNC_FILTER}
        if self._next_batch:
            params["since"] = self._next_batch
        resp = await self._request("GET", "/sync", params=params, timeout=_SYNC_REQUEST_TIMEOUT)
        self._next_batch = resp.get("next_batch", self._next_batch)
        return resp

    async def _sync_loop(self, queue: EnvelopeQueue) -> None:
        if self._next_batch is None:
            await self._sync(0)
            log.debug("[%s] Initial sync done, since=%s", self.name, self._next_batch)

        failures = 0
        while True:
            try:
                resp = await self._sync(_SYNC_TIMEOUT_MS)
            except (MatrixError, *_RequestErrors) as exc:
                if isinstance(exc, MatrixError) and not exc.retryable:
                    raise
                failures += 1
                if failures >= _MAX_SYNC_FAILURES:
                    raise
                delay = _RETRY_BACKOFF_BASE * (2 ** (failures - 1))
                log.warning(
                    "[%s] Sync failed (%d/%d), retrying in %.1fs: %s",
                    self.name, failures, _MAX_SYNC_FAILURES, delay, exc,
                )
                await asyncio.sleep(delay)
                continue
            failures = 0
            await self.handle_sync(resp, queue)

    async def handle_sync(self, resp: dict[str, Any], queue: EnvelopeQueue) -> None:
        """Queue an envelope for every chat message in a ``/sync`` response."""
        rooms = resp.get("rooms", {}).get("join", {})
        for room_id, room in rooms.items():
            for event in room.get("timeline", {}).get("events", []):
                await self._handle_event(room_id, event, queue)

    async def _handle_event(self, room_id: str, event: dict[str, Any], queue: EnvelopeQueue) -> None:
        if event.get("type") != EVENT_MESSAGE:
            return
        if self.debug:
            log.debug("[%s] Got event %s", self.name, event)

        sender = event.get("sender", "")
        if sender == self.user_id:
            log.debug("[%s] Ignoring message as bot user", self.name)
            return

        body = event.get("content", {}).get("body")
        if not isinstance(body, str) or not body:
            return

        display_name = await self._display_name(sender)
        if self._enqueue(queue, room_id, display_name, body) and "event_id" in event:
            await self._mark_read(room_id, event["event_id"])

    async def _display_name(self, user_id: str) -> str:
        try:
            resp = await self._request("GET", f"/profile/{quote(user_id, safe='')}/displayname")
        except (MatrixError, *_RequestErrors) as exc:
            log.error("[%s] Failed to retrieve display name for user [%s]: %s", self.name, user_id, exc)
            return user_id
        return resp.get("displayname") or user_id

    async def _mark_read(self, room_id: str, event_id: str) -> None:
        try:
            await self._request(
                "POST",
                f"/rooms/{quote(room_id, safe='')}/receipt/m.read/{quote(event_id, safe='')}",
                payload={},
            )
        except (MatrixError, *_RequestErrors) as exc:
            log.warning("[%s] Failed to mark event [%s] as read: %s", self.name, event_id, exc)
