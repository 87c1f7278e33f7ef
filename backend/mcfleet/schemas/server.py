from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class ServerStatus(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class ServerVariant(StrEnum):
    VANILLA = "vanilla"
    FABRIC = "fabric"
    FORGE = "forge"
    PAPER = "paper"
    PURPUR = "purpur"


class ServerCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    variant: ServerVariant
    version: str = Field(pattern=r"^\d+\.\d+(\.\d+)?$")  # e.g. "1.20.1"
    memory_mb: int = Field(ge=512, le=32768)
    max_players: int = Field(default=20, ge=1, le=1000)
    # Optional explicit port pair; allocated automatically when omitted
    game_port: int | None = None
    console_port: int | None = None

    @model_validator(mode="after")
    def _ports_come_in_pairs(self) -> "ServerCreate":
        if (self.game_port is None) != (self.console_port is None):
            raise ValueError("game_port and console_port must be given together")
        return self


class ServerUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    memory_mb: int | None = Field(default=None, ge=512, le=32768)
    max_players: int | None = Field(default=None, ge=1, le=1000)


class ServerLogs(BaseModel):
    supervisor_status: str
    supervisor_logs: str
    directory_listing: str
    server_logs: str
