"""Persistence collaborator used by the provisioning core.

The core only reads and writes records through a ``ServerStore``.
``SqlServerStore`` implements it on SQLAlchemy's async ORM; each method runs
in its own short session, so returned objects are detached snapshots and
relationships are never lazy-loaded from them.
"""

from collections.abc import Iterable
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mcfleet.core.exceptions import Conflict
from mcfleet.models import Account, ManagedServer, RemoteHost
from mcfleet.schemas.server import ServerStatus

# Statuses that count against the concurrent-run ceiling
ACTIVE_STATUSES = (ServerStatus.RUNNING, ServerStatus.STARTING)


class ServerStore(Protocol):
    async def get_account(self, account_id: int) -> Account | None: ...

    async def get_host(self, host_id: int) -> RemoteHost | None: ...

    async def get_host_for_account(self, account_id: int) -> RemoteHost | None: ...

    async def add_host(self, host: RemoteHost) -> RemoteHost: ...

    async def update_host(self, host_id: int, **fields) -> None: ...

    async def delete_host(self, host_id: int) -> None: ...

    async def get_server(self, server_id: int) -> ManagedServer | None: ...

    async def list_servers(self, account_id: int) -> list[ManagedServer]: ...

    async def list_servers_to_reconcile(self) -> list[ManagedServer]: ...

    async def add_server(self, server: ManagedServer) -> ManagedServer: ...

    async def update_server(self, server_id: int, **fields) -> None: ...

    async def transition_status(
        self, server_id: int, expected: Iterable[str], new_status: str, **fields
    ) -> bool: ...

    async def delete_server(self, server_id: int) -> None: ...

    async def count_servers(self, account_id: int) -> int: ...

    async def count_active_servers(self, account_id: int) -> int: ...

    async def count_servers_on_host(self, host_id: int) -> int: ...

    async def used_ports(self, host_id: int) -> tuple[set[int], set[int]]: ...


class SqlServerStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    # --- Accounts and hosts -----------------------------------------------

    async def get_account(self, account_id: int) -> Account | None:
        async with self._sessions() as db:
            return await db.get(Account, account_id)

    async def add_account(self, account: Account) -> Account:
        async with self._sessions() as db:
            db.add(account)
            await db.commit()
            await db.refresh(account)
            return account

    async def get_host(self, host_id: int) -> RemoteHost | None:
        async with self._sessions() as db:
            return await db.get(RemoteHost, host_id)

    async def get_host_for_account(self, account_id: int) -> RemoteHost | None:
        async with self._sessions() as db:
            result = await db.execute(
                select(RemoteHost).where(RemoteHost.account_id == account_id)
            )
            return result.scalar_one_or_none()

    async def add_host(self, host: RemoteHost) -> RemoteHost:
        async with self._sessions() as db:
            db.add(host)
            await db.commit()
            await db.refresh(host)
            return host

    async def update_host(self, host_id: int, **fields) -> None:
        async with self._sessions() as db:
            await db.execute(update(RemoteHost).where(RemoteHost.id == host_id).values(**fields))
            await db.commit()

    async def delete_host(self, host_id: int) -> None:
        async with self._sessions() as db:
            await db.execute(delete(RemoteHost).where(RemoteHost.id == host_id))
            await db.commit()

    # --- Servers ----------------------------------------------------------

    async def get_server(self, server_id: int) -> ManagedServer | None:
        async with self._sessions() as db:
            return await db.get(ManagedServer, server_id)

    async def list_servers(self, account_id: int) -> list[ManagedServer]:
        async with self._sessions() as db:
            result = await db.execute(
                select(ManagedServer)
                .where(ManagedServer.account_id == account_id)
                .order_by(ManagedServer.created_at.desc(), ManagedServer.id.desc())
            )
            return list(result.scalars().all())

    async def list_servers_to_reconcile(self) -> list[ManagedServer]:
        async with self._sessions() as db:
            result = await db.execute(
                select(ManagedServer)
                .where(ManagedServer.status != ServerStatus.ERROR.value)
                .order_by(ManagedServer.host_id, ManagedServer.id)
            )
            return list(result.scalars().all())

    async def add_server(self, server: ManagedServer) -> ManagedServer:
        async with self._sessions() as db:
            db.add(server)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise Conflict("Port or internal name already in use on this host") from e
            await db.refresh(server)
            return server

    async def update_server(self, server_id: int, **fields) -> None:
        async with self._sessions() as db:
            await db.execute(
                update(ManagedServer).where(ManagedServer.id == server_id).values(**fields)
            )
            await db.commit()

    async def transition_status(
        self, server_id: int, expected: Iterable[str], new_status: str, **fields
    ) -> bool:
        """Set ``status`` only if it is currently one of ``expected``.

        Returns False when another writer got there first.
        """
        expected = [str(s) for s in expected]
        async with self._sessions() as db:
            result = await db.execute(
                update(ManagedServer)
                .where(ManagedServer.id == server_id, ManagedServer.status.in_(expected))
                .values(status=str(new_status), **fields)
            )
            await db.commit()
            return result.rowcount == 1

    async def delete_server(self, server_id: int) -> None:
        async with self._sessions() as db:
            await db.execute(delete(ManagedServer).where(ManagedServer.id == server_id))
            await db.commit()

    # --- Counts -----------------------------------------------------------

    async def _count(self, *criteria) -> int:
        async with self._sessions() as db:
            result = await db.execute(
                select(func.count()).select_from(ManagedServer).where(*criteria)
            )
            return result.scalar_one()

    async def count_servers(self, account_id: int) -> int:
        return await self._count(ManagedServer.account_id == account_id)

    async def count_active_servers(self, account_id: int) -> int:
        return await self._count(
            ManagedServer.account_id == account_id,
            ManagedServer.status.in_([s.value for s in ACTIVE_STATUSES]),
        )

    async def count_servers_on_host(self, host_id: int) -> int:
        return await self._count(ManagedServer.host_id == host_id)

    async def used_ports(self, host_id: int) -> tuple[set[int], set[int]]:
        """Game and console ports already assigned on ``host_id``."""
        async with self._sessions() as db:
            result = await db.execute(
                select(ManagedServer.game_port, ManagedServer.console_port).where(
                    ManagedServer.host_id == host_id
                )
            )
            rows = result.all()
        return {r.game_port for r in rows}, {r.console_port for r in rows}
