"""Client for the coordinator's cluster membership metadata (``pg_dist_node``).

The client reads and appends only: it never removes nodes or changes roles.
Errors are surfaced to the caller; nothing here retries.
"""

import asyncio
from typing import Optional, Union

import structlog
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from citus_registrar.cluster.models import MembershipRecord, NodeRole
from citus_registrar.storage.database import Database

logger = structlog.get_logger(__name__)

LIST_MEMBERS_SQL = (
    "SELECT nodename, nodeport, groupid, isactive "
    "FROM pg_dist_node ORDER BY nodename, nodeport"
)
IS_REGISTERED_SQL = (
    "SELECT COUNT(*) FROM pg_dist_node WHERE nodename = :name AND nodeport = :port"
)
ADD_NODE_SQL = "SELECT citus_add_node(:name, :port)"


# Connection failures from asyncpg reach callers as plain OSError or timeouts.
STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


class MembershipStoreError(Exception):
    """Raised when the coordinator metadata cannot be read or written."""


class RegistrationError(MembershipStoreError):
    """Raised when the coordinator refuses to add a node."""

    def __init__(self, node_name: str, port: int, reason: str) -> None:
        self.node_name = node_name
        self.port = port
        self.reason = reason
        super().__init__(reason)


def _describe(exc: Union[SQLAlchemyError, OSError, asyncio.TimeoutError]) -> str:
    """The server's own message when there is one, else the error text or its type."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        message = str(exc.orig).strip()
        if message:
            return message
    return str(exc).strip() or exc.__class__.__name__


def role_for_group(group_id: int) -> NodeRole:
    """Citus keeps the coordinator in group 0; every other group is a worker."""
    return NodeRole.COORDINATOR if group_id == 0 else NodeRole.WORKER


class MembershipStore:
    """Reads and appends cluster members on the coordinator.

    Args:
        database: Connected ``Database`` pointing at the coordinator.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    async def ping(self) -> bool:
        """Return True if the coordinator accepts queries."""
        return await self.database.health_check()

    async def list_members(self) -> list[MembershipRecord]:
        """Snapshot of every node known to the coordinator.

        Raises:
            MembershipStoreError: If the metadata cannot be read.
        """
        try:
            rows = await self.database.fetch_all(LIST_MEMBERS_SQL)
        except STORE_ERRORS as exc:
            raise MembershipStoreError(f"Could not list members: {_describe(exc)}") from exc

        return [
            MembershipRecord(
                node_name=row[0],
                port=int(row[1]),
                group_id=int(row[2]),
                role=role_for_group(int(row[2])),
                active=bool(row[3]),
            )
            for row in rows
        ]

    async def is_registered(self, node_name: str, port: int) -> bool:
        """Return True if (node_name, port) already has a membership record.

        Raises:
            MembershipStoreError: If the check itself fails.
        """
        try:
            rows = await self.database.fetch_all(
                IS_REGISTERED_SQL, {"name": node_name, "port": port}
            )
        except STORE_ERRORS as exc:
            raise MembershipStoreError(
                f"Could not check registration of {node_name}:{port}: {_describe(exc)}"
            ) from exc
        return bool(rows) and int(rows[0][0]) > 0

    async def add_member(self, node_name: str, port: int) -> None:
        """Add a worker to the cluster.

        Raises:
            RegistrationError: With the coordinator's message, verbatim.
        """
        try:
            await self.database.execute(ADD_NODE_SQL, {"name": node_name, "port": port})
        except STORE_ERRORS as exc:
            reason = _describe(exc)
            await logger.aerror(
                "worker_registration_rejected",
                node=node_name,
                port=port,
                reason=reason,
            )
            raise RegistrationError(node_name, port, reason) from exc

        await logger.ainfo("worker_registered", node=node_name, port=port)

    async def count_active_workers(
        self, members: Optional[list[MembershipRecord]] = None
    ) -> int:
        """Active members with the worker role; the coordinator is never counted."""
        if members is None:
            members = await self.list_members()
        return sum(1 for m in members if m.role is NodeRole.WORKER and m.active)
