"""Per-host allocation of game and console ports from two fixed ranges."""

import logging
from enum import StrEnum

from pydantic import BaseModel

from mcfleet.core.config import Settings, settings
from mcfleet.core.exceptions import InvalidRequest, PortsExhausted
from mcfleet.services.store import ServerStore

logger = logging.getLogger(__name__)


class PortKind(StrEnum):
    GAME = "game"
    CONSOLE = "console"


class PortRange(BaseModel):
    start: int
    end: int  # inclusive

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end


class PortPair(BaseModel):
    game_port: int
    console_port: int


class PortUsage(BaseModel):
    kind: PortKind
    used: int
    total: int
    available: int


def _lowest_free(port_range: PortRange, used: set[int]) -> int | None:
    for port in range(port_range.start, port_range.end + 1):
        if port not in used:
            return port
    return None


class PortAllocator:
    def __init__(self, store: ServerStore, config: Settings = settings):
        self.store = store
        self.ranges = {
            PortKind.GAME: PortRange(start=config.GAME_PORT_START, end=config.GAME_PORT_END),
            PortKind.CONSOLE: PortRange(start=config.CONSOLE_PORT_START, end=config.CONSOLE_PORT_END),
        }

    def port_ranges(self) -> dict[PortKind, PortRange]:
        return dict(self.ranges)

    def is_valid_port(self, port: int, kind: PortKind) -> bool:
        return port in self.ranges[kind]

    async def allocate(self, host_id: int) -> PortPair:
        """Lowest free port in each range; the two ranges are independent."""
        used_game, used_console = await self.store.used_ports(host_id)
        game = _lowest_free(self.ranges[PortKind.GAME], used_game)
        if game is None:
            raise PortsExhausted("No available game ports on this host")
        console = _lowest_free(self.ranges[PortKind.CONSOLE], used_console)
        if console is None:
            raise PortsExhausted("No available console ports on this host")
        logger.debug("Allocated ports %d/%d on host %s", game, console, host_id)
        return PortPair(game_port=game, console_port=console)

    async def reserve(self, host_id: int, game_port: int, console_port: int) -> PortPair:
        """Validate an explicit, user-chosen pair against ranges and current usage."""
        if not self.is_valid_port(game_port, PortKind.GAME):
            r = self.ranges[PortKind.GAME]
            raise InvalidRequest(f"Game port must be between {r.start} and {r.end}")
        if not self.is_valid_port(console_port, PortKind.CONSOLE):
            r = self.ranges[PortKind.CONSOLE]
            raise InvalidRequest(f"Console port must be between {r.start} and {r.end}")
        used_game, used_console = await self.store.used_ports(host_id)
        if game_port in used_game:
            raise InvalidRequest(f"Game port {game_port} is already in use")
        if console_port in used_console:
            raise InvalidRequest(f"Console port {console_port} is already in use")
        return PortPair(game_port=game_port, console_port=console_port)

    async def usage_stats(self, host_id: int) -> list[PortUsage]:
        used_game, used_console = await self.store.used_ports(host_id)
        stats = []
        for kind, used in ((PortKind.GAME, used_game), (PortKind.CONSOLE, used_console)):
            r = self.ranges[kind]
            in_range = len({p for p in used if p in r})
            stats.append(PortUsage(kind=kind, used=in_range, total=r.size, available=r.size - in_range))
        return stats
