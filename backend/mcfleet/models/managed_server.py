from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mcfleet.models.base import Base, TimestampMixin


class ManagedServer(TimestampMixin, Base):
    __tablename__ = "managed_servers"
    __table_args__ = (
        UniqueConstraint("host_id", "game_port", name="uq_server_host_game_port"),
        UniqueConstraint("host_id", "console_port", name="uq_server_host_console_port"),
    )

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, index=True)
    host_id: Mapped[int] = mapped_column(ForeignKey("remote_hosts.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Supervisor service name and remote directory name
    internal_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    variant: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[str] = mapped_column(String(20), nullable=False)  # e.g. "1.20.1"
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    max_players: Mapped[int] = mapped_column(Integer, default=20)
    game_port: Mapped[int] = mapped_column(Integer, nullable=False)
    console_port: Mapped[int] = mapped_column(Integer, nullable=False)
    console_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    server_path: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="stopped")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_players: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    account: Mapped["Account"] = relationship(back_populates="servers")
    host: Mapped["RemoteHost"] = relationship(back_populates="servers")
