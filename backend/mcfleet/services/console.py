"""Remote administration console (RCON) for running servers.

Packets are ``<length:int32><request id:int32><type:int32><body>\\0\\0``,
little-endian.  Authentication failure is signalled by request id -1.
"""

import asyncio
import itertools
import logging
import re
import struct

from mcfleet.core.config import Settings, settings
from mcfleet.core.encryption import CredentialVault
from mcfleet.core.exceptions import ConnectionFailed, InvalidRequest, NotFound
from mcfleet.models.managed_server import ManagedServer
from mcfleet.schemas.console import PlayerList
from mcfleet.schemas.server import ServerStatus
from mcfleet.services.store import ServerStore

logger = logging.getLogger(__name__)

TYPE_RESPONSE = 0
TYPE_COMMAND = 2
TYPE_AUTH_RESPONSE = 2
TYPE_AUTH = 3

MAX_PAYLOAD = 4096

_PLAYER_LIST = re.compile(
    r"There are (?P<online>\d+) of a max of (?P<max>\d+) players online:?\s*(?P<names>.*)",
    re.DOTALL,
)


def clean_console_output(text: str) -> str:
    """Strip ANSI and section-format control codes."""
    cleaned = text or ""
    cleaned = re.sub(r"\x1b\[[0-9;]*[A-Za-z]", "", cleaned)
    cleaned = re.sub(r"§.", "", cleaned)
    return cleaned


def parse_player_list(text: str) -> PlayerList:
    match = _PLAYER_LIST.search(clean_console_output(text))
    if match is None:
        raise InvalidRequest(f"Unexpected player list response: {text[:80]!r}")
    names = [n.strip() for n in match["names"].split(",") if n.strip()]
    return PlayerList(online=int(match["online"]), max=int(match["max"]), players=names)


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    payload = struct.pack("<ii", request_id, packet_type) + body.encode("utf-8") + b"\x00\x00"
    return struct.pack("<i", len(payload)) + payload


class RconClient:
    def __init__(self, host: str, port: int, password: str, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "RconClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except (OSError, TimeoutError) as e:
            raise ConnectionFailed(
                f"Could not connect to server console at {self.host}:{self.port}"
            ) from e
        request_id = next(self._ids)
        await self._send(request_id, TYPE_AUTH, self.password)
        # Some servers send an empty RESPONSE before the AUTH_RESPONSE
        while True:
            response_id, packet_type, _ = await self._receive()
            if packet_type == TYPE_AUTH_RESPONSE:
                break
        if response_id == -1 or response_id != request_id:
            await self.close()
            raise ConnectionFailed("Console authentication failed")

    async def command(self, command: str) -> str:
        if self._writer is None:
            raise ConnectionFailed("Console is not connected")
        if len(command.encode("utf-8")) > MAX_PAYLOAD - 10:
            raise InvalidRequest("Console command is too long")
        request_id = next(self._ids)
        await self._send(request_id, TYPE_COMMAND, command)
        _, _, body = await self._receive()
        return clean_console_output(body)

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass
            self._writer = None
            self._reader = None

    async def _send(self, request_id: int, packet_type: int, body: str) -> None:
        self._writer.write(encode_packet(request_id, packet_type, body))
        try:
            await asyncio.wait_for(self._writer.drain(), self.timeout)
        except (OSError, TimeoutError) as e:
            raise ConnectionFailed("Lost connection to server console") from e

    async def _receive(self) -> tuple[int, int, str]:
        try:
            (length,) = struct.unpack("<i", await asyncio.wait_for(
                self._reader.readexactly(4), self.timeout
            ))
            if not 10 <= length <= 1 << 20:
                raise ConnectionFailed("Malformed console packet")
            data = await asyncio.wait_for(self._reader.readexactly(length), self.timeout)
        except (OSError, TimeoutError, asyncio.IncompleteReadError) as e:
            raise ConnectionFailed("Lost connection to server console") from e
        request_id, packet_type = struct.unpack("<ii", data[:8])
        body = data[8:].rstrip(b"\x00").decode("utf-8", errors="replace")
        return request_id, packet_type, body


class ConsoleService:
    def __init__(self, store: ServerStore, vault: CredentialVault, config: Settings = settings):
        self.store = store
        self.vault = vault
        self.config = config

    async def _running_server(self, account_id: int, server_id: int) -> tuple[ManagedServer, str]:
        server = await self.store.get_server(server_id)
        if server is None or server.account_id != account_id:
            raise NotFound("Server not found")
        if server.status != ServerStatus.RUNNING:
            raise InvalidRequest("Server must be running to use the console")
        host = await self.store.get_host(server.host_id)
        if host is None:
            raise NotFound("Host not found")
        return server, host.address

    async def execute(self, account_id: int, server_id: int, command: str) -> str:
        command = command.strip().removeprefix("/")
        if not command:
            raise InvalidRequest("Command cannot be empty")
        server, address = await self._running_server(account_id, server_id)
        password = self.vault.decrypt(server.console_secret_encrypted)
        logger.info("Console command on server %s: %s", server_id, command.split(" ", 1)[0])
        async with RconClient(address, server.console_port, password, self.config.CONSOLE_TIMEOUT) as rcon:
            return await rcon.command(command)

    async def players(self, account_id: int, server_id: int) -> PlayerList:
        response = await self.execute(account_id, server_id, "list")
        players = parse_player_list(response)
        await self.store.update_server(server_id, current_players=players.online)
        return players

    async def broadcast(self, account_id: int, server_id: int, message: str) -> str:
        message = " ".join(message.split())
        if not message:
            raise InvalidRequest("Message cannot be empty")
        return await self.execute(account_id, server_id, f"say {message}")

    async def stop(self, account_id: int, server_id: int) -> str:
        """Ask the game server to save and shut down from inside."""
        return await self.execute(account_id, server_id, "stop")
