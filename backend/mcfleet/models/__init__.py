from mcfleet.models.base import Base, TimestampMixin
from mcfleet.models.account import Account
from mcfleet.models.remote_host import RemoteHost
from mcfleet.models.managed_server import ManagedServer

__all__ = [
    "Base",
    "TimestampMixin",
    "Account",
    "RemoteHost",
    "ManagedServer",
]
