from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mcfleet.models.base import Base, TimestampMixin


class Account(TimestampMixin, Base):
    __tablename__ = "accounts"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    plan_tier: Mapped[str] = mapped_column(String(20), default="free")  # free | pro | premium

    host: Mapped["RemoteHost | None"] = relationship(back_populates="account", uselist=False)
    servers: Mapped[list["ManagedServer"]] = relationship(back_populates="account")
