"""Offline play: local-network transports and the musical-director sync adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from chordstage import config
from chordstage.errors import TransportUnavailable
from chordstage.messages import (
    Delta,
    OfflineSectionChange,
    OfflineSongChange,
    parse_delta,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]

SYNC_REQUEST = "sync_request"
SYNC_RESPONSE = "sync_response"
CLIENT_DISCONNECTED = "client_disconnected"
SONG_DATA = "song_data"


def encode_frame(message: dict[str, Any]) -> bytes:
    """One JSON object per line."""
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def decode_frame(data: bytes) -> dict[str, Any] | None:
    line = data.strip()
    if not line:
        return None
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.debug("Dropping undecodable frame (%d bytes)", len(data))
        return None
    return message if isinstance(message, dict) else None


# ── Transports ──────────────────────────────────────────────────────────────

class LocalTransport(ABC):
    """A local-network link carrying JSON messages between MD and guests."""

    def __init__(self) -> None:
        self.on_message: MessageHandler | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Short transport name for logs."""

    @abstractmethod
    async def start_host(self) -> None:
        """
        Start serving as musical director.

        Raises:
            TransportUnavailable: If the transport cannot be opened.
        """

    @abstractmethod
    async def connect(self, address: str | None = None) -> None:
        """
        Open the guest side of the link.

        Raises:
            TransportUnavailable: If the link cannot be opened.
        """

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send one message to the other side(s)."""

    @abstractmethod
    async def close(self) -> None:
        """Release sockets and tasks."""

    def _deliver(self, message: dict[str, Any]) -> None:
        if self.on_message is not None:
            self.on_message(message)


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: UdpBroadcastTransport) -> None:
        self._owner = owner

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        message = decode_frame(data)
        if message is not None:
            self._owner._deliver(message)

    def error_received(self, exc: Exception) -> None:
        logger.debug("UDP error: %s", exc)


class UdpBroadcastTransport(LocalTransport):
    """
    Short-range tier: JSON datagrams broadcast on a fixed port.

    Guests need no address; every device binds the same port and hears every
    broadcast, so receivers must ignore their own messages.
    """

    def __init__(
        self,
        port: int = config.UDP_SYNC_PORT,
        broadcast_addr: str = config.UDP_BROADCAST_ADDR,
        bind_host: str = "0.0.0.0",
    ) -> None:
        super().__init__()
        self.port = port
        self.broadcast_addr = broadcast_addr
        self.bind_host = bind_host
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def name(self) -> str:
        return "udp-broadcast"

    async def _open(self) -> None:
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramProtocol(self),
                local_addr=(self.bind_host, self.port),
                allow_broadcast=True,
                reuse_port=hasattr(socket, "SO_REUSEPORT"),
            )
        except (OSError, ValueError) as exc:
            raise TransportUnavailable(f"UDP broadcast unavailable on port {self.port}: {exc}") from exc
        self._transport = transport
        logger.debug("UDP endpoint bound on %s:%d", self.bind_host, self.port)

    async def start_host(self) -> None:
        await self._open()

    async def connect(self, address: str | None = None) -> None:
        await self._open()

    async def send(self, message: dict[str, Any]) -> None:
        if self._transport is None:
            raise TransportUnavailable("UDP endpoint is not open")
        data = encode_frame(message)
        if len(data) > config.MAX_DATAGRAM_BYTES:
            logger.warning(
                "Dropping %s message: %d bytes exceeds datagram limit",
                message.get("type"),
                len(data),
            )
            return
        self._transport.sendto(data, (self.broadcast_addr, self.port))

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


def _split_address(address: str, default_port: int) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, default_port
    try:
        return host, int(port)
    except ValueError as exc:
        raise TransportUnavailable(f"Invalid address {address!r}") from exc


class TcpRelayTransport(LocalTransport):
    """
    General local-network tier: the MD runs a TCP server and guests connect
    by address. Frames are newline-delimited JSON.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = config.TCP_SYNC_PORT,
        connect_timeout: float = config.CONNECT_TIMEOUT_SEC,
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return "tcp-relay"

    @property
    def is_host(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start_host(self) -> None:
        if self._server is not None:
            return
        try:
            server = await asyncio.start_server(
                self._serve_client, self.host, self.port, limit=config.TCP_FRAME_LIMIT_BYTES
            )
        except OSError as exc:
            raise TransportUnavailable(f"Cannot listen on {self.host}:{self.port}: {exc}") from exc
        self._server = server
        if self.port == 0 and server.sockets:
            self.port = server.sockets[0].getsockname()[1]
        logger.info("TCP relay listening on %s:%d", self.host, self.port)

    async def _serve_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._clients.add(writer)
        logger.info("Guest connected (%d total)", len(self._clients))
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                message = decode_frame(line)
                if message is not None:
                    self._deliver(message)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Guest connection dropped: %s", exc)
        except ValueError as exc:
            logger.warning("Guest frame over the relay limit, closing: %s", exc)
        finally:
            self._clients.discard(writer)
            writer.close()
            logger.info("Guest disconnected (%d remaining)", len(self._clients))

    async def connect(self, address: str | None = None) -> None:
        if self._writer is not None:
            return
        host, port = _split_address(address, self.port) if address else ("127.0.0.1", self.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=config.TCP_FRAME_LIMIT_BYTES),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportUnavailable(f"Cannot reach MD at {host}:{port}: {exc}") from exc
        self._writer = writer
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(reader))
        logger.info("Connected to MD at %s:%d", host, port)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                message = decode_frame(line)
                if message is not None:
                    self._deliver(message)
        except ConnectionError as exc:
            logger.debug("MD connection dropped: %s", exc)
        except ValueError as exc:
            logger.warning("MD frame over the relay limit, disconnecting: %s", exc)
        logger.info("Disconnected from MD")

    async def send(self, message: dict[str, Any]) -> None:
        frame = encode_frame(message)
        if self._server is not None:
            dead: list[asyncio.StreamWriter] = []
            for writer in list(self._clients):
                try:
                    writer.write(frame)
                    await writer.drain()
                except ConnectionError:
                    dead.append(writer)
            for writer in dead:
                self._clients.discard(writer)
            return
        if self._writer is None:
            raise TransportUnavailable("Not connected to an MD")
        try:
            self._writer.write(frame)
            await self._writer.drain()
        except ConnectionError as exc:
            raise TransportUnavailable(f"MD connection lost: {exc}") from exc

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        for writer in list(self._clients):
            writer.close()
        self._clients.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


# ── Sync adapter ────────────────────────────────────────────────────────────

@dataclass
class OfflineState:
    """
    Position and session data the MD hands to guests on request.

    ``songs`` carries the song records of the setlist so guests can render
    without their own store.
    """

    setlist_id: str | None = None
    current_song_index: int = 0
    current_section_index: int = 0
    song_ids: list[str] = field(default_factory=list)
    songs: list[dict[str, Any]] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": SYNC_RESPONSE,
            "setlistId": self.setlist_id,
            "currentSongIndex": self.current_song_index,
            "currentSectionIndex": self.current_section_index,
            "songIds": list(self.song_ids),
            "songs": list(self.songs),
        }

    def to_frames(self, max_bytes: int = config.MAX_DATAGRAM_BYTES) -> list[dict[str, Any]]:
        """
        Messages that hand this state to a guest.

        A state too large for one datagram is split into one ``song_data``
        message per song followed by a ``sync_response`` without songs.
        """
        message = self.to_message()
        if len(encode_frame(message)) <= max_bytes:
            return [message]
        frames: list[dict[str, Any]] = [{"type": SONG_DATA, "song": song} for song in self.songs]
        frames.append({**message, "songs": []})
        return frames

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> OfflineState:
        return cls(
            setlist_id=message.get("setlistId"),
            current_song_index=int(message.get("currentSongIndex") or 0),
            current_section_index=int(message.get("currentSectionIndex") or 0),
            song_ids=[str(s) for s in message.get("songIds") or []],
            songs=[s for s in message.get("songs") or [] if isinstance(s, dict)],
        )


class OfflineSyncAdapter:
    """
    Stands in for the channel manager when there is no network service.

    The device elected musical director (MD) is the only one that sends
    position changes; guests consume them. Transports are tried in tier
    order: short-range broadcast first, then the local-network relay.
    """

    def __init__(
        self,
        device_id: str,
        transports: list[LocalTransport] | None = None,
        on_delta: Callable[[Delta], None] | None = None,
        on_sync: Callable[[OfflineState], None] | None = None,
        probe_timeout: float = config.MD_PROBE_TIMEOUT_SEC,
    ) -> None:
        self.device_id = device_id
        self.transports = transports if transports is not None else [
            UdpBroadcastTransport(),
            TcpRelayTransport(),
        ]
        self.on_delta = on_delta
        self.on_sync = on_sync
        self.probe_timeout = probe_timeout
        self.state = OfflineState()
        self.is_md = False
        self.active: LocalTransport | None = None
        self._synced: asyncio.Event | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self._song_buffer: list[dict[str, Any]] = []

    @property
    def is_connected(self) -> bool:
        return self.active is not None

    # ── Roles ───────────────────────────────────────────────────────────

    async def start_as_md(self, initial: OfflineState | None = None) -> LocalTransport:
        """
        Become MD on the first transport tier that opens.

        Raises:
            TransportUnavailable: If no tier could be started.
        """
        if initial is not None:
            self.state = initial
        for transport in self.transports:
            try:
                await transport.start_host()
            except TransportUnavailable as exc:
                logger.warning("%s unavailable as MD: %s", transport.name, exc)
                continue
            transport.on_message = self._handle_message
            self.active = transport
            self.is_md = True
            logger.info("Hosting offline session over %s", transport.name)
            return transport
        raise TransportUnavailable("No local transport could be started")

    async def join_as_guest(self, address: str | None = None) -> LocalTransport:
        """
        Join an MD, tier by tier; a tier counts only once the MD answers.

        Raises:
            TransportUnavailable: If no tier reached an MD.
        """
        self._synced = asyncio.Event()
        for transport in self.transports:
            try:
                await transport.connect(address)
            except TransportUnavailable as exc:
                logger.warning("%s unavailable as guest: %s", transport.name, exc)
                continue
            transport.on_message = self._handle_message
            self.active = transport
            self.is_md = False
            await self._send({"type": SYNC_REQUEST})
            try:
                await asyncio.wait_for(self._synced.wait(), timeout=self.probe_timeout)
            except asyncio.TimeoutError:
                logger.info("No MD answered over %s", transport.name)
                self.active = None
                transport.on_message = None
                await transport.close()
                continue
            logger.info("Joined offline session over %s", transport.name)
            return transport
        raise TransportUnavailable("No musical director found on the local network")

    async def elect_role(
        self, initial: OfflineState | None = None, address: str | None = None
    ) -> bool:
        """
        Join an existing MD if one answers, otherwise become MD.

        Returns:
            True when this device became MD.
        """
        try:
            await self.join_as_guest(address)
        except TransportUnavailable:
            await self.start_as_md(initial)
            return True
        return False

    # ── MD actions ──────────────────────────────────────────────────────

    async def change_section(self, index: int) -> bool:
        if not self.is_md:
            logger.debug("Guest section change to %d dropped", index)
            return False
        self.state.current_section_index = index
        return await self.publish(OfflineSectionChange(current_section_index=index))

    async def change_song(self, index: int) -> bool:
        if not self.is_md:
            logger.debug("Guest song change to %d dropped", index)
            return False
        self.state.current_song_index = index
        self.state.current_section_index = 0
        return await self.publish(OfflineSongChange(current_song_index=index))

    async def publish(self, delta: Delta) -> bool:
        """Send any delta to guests (MD only)."""
        if not self.is_md or self.active is None:
            logger.debug("Dropping %s; not the MD", delta.KIND)
            return False
        await self._send(delta.to_wire())
        return True

    async def close(self) -> None:
        transport, self.active = self.active, None
        for task in list(self._pending):
            task.cancel()
        if transport is None:
            return
        if not self.is_md:
            try:
                await transport.send(self._stamp({"type": CLIENT_DISCONNECTED}))
            except TransportUnavailable as exc:
                logger.debug("Could not announce disconnect: %s", exc)
        await transport.close()
        self.is_md = False

    # ── Messages ────────────────────────────────────────────────────────

    def _stamp(self, message: dict[str, Any]) -> dict[str, Any]:
        stamped = dict(message)
        stamped["deviceId"] = self.device_id
        return stamped

    async def _send(self, message: dict[str, Any]) -> None:
        if self.active is None:
            raise TransportUnavailable("No active local transport")
        await self.active.send(self._stamp(message))

    async def _send_all(self, messages: list[dict[str, Any]]) -> None:
        try:
            for message in messages:
                await self._send(message)
        except TransportUnavailable as exc:
            logger.warning("Sync answer not sent: %s", exc)

    def _spawn_send(self, messages: list[dict[str, Any]]) -> None:
        task = asyncio.get_running_loop().create_task(self._send_all(messages))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _handle_message(self, message: dict[str, Any]) -> None:
        if message.get("deviceId") == self.device_id:
            return
        kind = message.get("type")

        if kind == SYNC_REQUEST:
            if self.is_md:
                logger.debug("Answering sync request from %s", message.get("deviceId"))
                self._spawn_send(self.state.to_frames())
            return

        if kind == SONG_DATA:
            song = message.get("song")
            if not self.is_md and isinstance(song, dict):
                self._song_buffer.append(song)
            return

        if kind == SYNC_RESPONSE:
            if self.is_md:
                return
            try:
                self.state = OfflineState.from_message(message)
            except (TypeError, ValueError) as exc:
                logger.warning("Malformed sync response: %s", exc)
                return
            if self._song_buffer:
                self.state.songs = self._song_buffer + self.state.songs
                self._song_buffer = []
            if self.on_sync is not None:
                self.on_sync(self.state)
            if self._synced is not None:
                self._synced.set()
            return

        if kind == CLIENT_DISCONNECTED:
            logger.info("Guest %s left", message.get("deviceId"))
            return

        if self.is_md:
            # Guests never originate position changes
            return
        delta = parse_delta(message)
        if delta is None:
            return
        if isinstance(delta, OfflineSongChange):
            self.state.current_song_index = delta.current_song_index
            self.state.current_section_index = 0
        elif isinstance(delta, OfflineSectionChange):
            self.state.current_section_index = delta.current_section_index
        if self.on_delta is not None:
            self.on_delta(delta)
