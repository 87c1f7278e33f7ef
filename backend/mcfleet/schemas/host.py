import hashlib
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class HostStatus(StrEnum):
    PENDING = "pending"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class SSHCredentials(BaseModel):
    """Already-decrypted connection material for one remote host."""

    host: str
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    private_key: str | None = Field(default=None, repr=False)
    password: str | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _require_auth(self) -> "SSHCredentials":
        if not self.private_key and not self.password:
            raise ValueError("Either private_key or password must be provided")
        return self

    def fingerprint(self) -> str:
        """Digest identifying this exact credential set, used to detect changes."""
        digest = hashlib.sha256()
        for part in (self.host, str(self.port), self.username, self.private_key or "", self.password or ""):
            digest.update(part.encode("utf-8"))
            digest.update(b"\0")
        return digest.hexdigest()


class HostTarget(BaseModel):
    """A host id plus decrypted credentials: the input every remote call needs."""

    host_id: str
    credentials: SSHCredentials


class HostCreate(BaseModel):
    name: str = Field(max_length=100)
    address: str = Field(max_length=255)
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_user: str = Field(max_length=100)
    ssh_key: str | None = None  # PEM, or base64 of the PEM
    ssh_password: str | None = None

    @model_validator(mode="after")
    def _require_auth(self) -> "HostCreate":
        if not self.ssh_key and not self.ssh_password:
            raise ValueError("Either ssh_key or ssh_password must be provided")
        return self


class HostUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    address: str | None = Field(default=None, max_length=255)
    ssh_port: int | None = Field(default=None, ge=1, le=65535)
    ssh_user: str | None = Field(default=None, max_length=100)
    ssh_key: str | None = None
    ssh_password: str | None = None


class SystemInfo(BaseModel):
    total_ram_mb: int
    cpu_cores: int
    disk_gb: int
    os_label: str
