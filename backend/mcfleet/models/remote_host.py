from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mcfleet.models.base import Base, TimestampMixin


class RemoteHost(TimestampMixin, Base):
    __tablename__ = "remote_hosts"

    # One host per account
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    ssh_user: Mapped[str] = mapped_column(String(100), nullable=False)
    ssh_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    ssh_password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_check_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Discovered capacity
    total_ram_mb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cpu_cores: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disk_gb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    os_label: Mapped[str | None] = mapped_column(String(100), nullable=True)

    account: Mapped["Account"] = relationship(back_populates="host")
    servers: Mapped[list["ManagedServer"]] = relationship(back_populates="host")
