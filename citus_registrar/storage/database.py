"""PostgreSQL access with async SQLAlchemy (asyncpg driver)."""

import asyncio
from typing import Any, Optional, Union

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

logger = structlog.get_logger(__name__)

DRIVER = "postgresql+asyncpg"


def build_url(host: str, port: int, user: str, password: str, database: str) -> URL:
    """Build an asyncpg connection URL; credentials are escaped by SQLAlchemy."""
    return URL.create(
        DRIVER,
        username=user,
        password=password,
        host=host,
        port=port,
        database=database,
    )


async def check_connection(url: Union[str, URL], timeout: float = 5.0) -> bool:
    """Open one authenticated connection and run ``SELECT 1``.

    Uses a throwaway ``NullPool`` engine so nothing stays open between probes.

    Returns:
        True if the server accepted the connection and answered.
    """
    engine = create_async_engine(
        url,
        poolclass=NullPool,
        connect_args={"timeout": timeout},
    )
    try:
        async with engine.connect() as conn:
            await asyncio.wait_for(conn.execute(text("SELECT 1")), timeout=timeout)
        return True
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        await logger.adebug("connection_check_failed", error=str(exc))
        return False
    finally:
        await engine.dispose()


class Database:
    """Manages the async connection pool to one PostgreSQL server.

    Attributes:
        url: Connection URL (async dialect).
        engine: SQLAlchemy async engine, created by ``connect()``.
        session_factory: Async session maker.
        pool_size: Maximum pool size.
        max_overflow: Maximum overflow connections.
    """

    def __init__(
        self,
        url: Union[str, URL],
        pool_size: int = 10,
        max_overflow: int = 10,
        connect_timeout: float = 5.0,
        echo: bool = False,
    ) -> None:
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.connect_timeout = connect_timeout
        self.echo = echo
        self.engine = None
        self.session_factory = None
        self._is_connected = False

    @property
    def display_url(self) -> str:
        """URL with the password masked, safe for logs."""
        if isinstance(self.url, URL):
            return self.url.render_as_string(hide_password=True)
        return str(self.url)

    async def connect(self) -> None:
        """Create the engine and session factory.

        No connection is opened here; the server may still be booting.
        Reachability is checked with ``health_check()``.
        """
        if self.engine is not None:
            return

        self.engine = create_async_engine(
            self.url,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            pool_pre_ping=True,
            connect_args={"timeout": self.connect_timeout},
            echo=self.echo,
        )
        self.session_factory = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._is_connected = True

        await logger.ainfo(
            "database_engine_created",
            url=self.display_url,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
        )

    async def disconnect(self) -> None:
        """Close all pooled connections."""
        if not self.engine:
            return

        await self.engine.dispose()
        self.engine = None
        self.session_factory = None
        self._is_connected = False
        await logger.ainfo("database_disconnected", url=self.display_url)

    def get_session(self) -> AsyncSession:
        """Get a new async database session.

        Raises:
            RuntimeError: If database not connected.
        """
        if not self.session_factory:
            raise RuntimeError("Database not connected. Call connect() first.")

        return self.session_factory()

    async def health_check(self) -> bool:
        """Return True if the server answers ``SELECT 1``."""
        if not self._is_connected or not self.engine:
            return False

        try:
            async with self.engine.connect() as conn:
                await asyncio.wait_for(
                    conn.execute(text("SELECT 1")),
                    timeout=self.connect_timeout,
                )
            return True
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            await logger.adebug(
                "database_health_check_failed",
                url=self.display_url,
                error=str(exc),
            )
            return False

    async def fetch_all(self, query: str, params: Optional[dict[str, Any]] = None) -> list[Row]:
        """Run a read-only statement and return every row.

        Raises:
            SQLAlchemyError: If the statement fails.
        """
        session = self.get_session()
        try:
            result = await session.execute(text(query), params or {})
            return list(result.fetchall())
        finally:
            await session.close()

    async def execute(self, query: str, params: Optional[dict[str, Any]] = None) -> int:
        """Run a mutating statement in its own transaction.

        Returns:
            Number of affected rows.

        Raises:
            SQLAlchemyError: If the statement fails (the transaction is rolled back).
        """
        session = self.get_session()
        try:
            result = await session.execute(text(query), params or {})
            await session.commit()
            return result.rowcount
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

