"""Async database engine and session factory.

One Database instance is created at startup and shared by every SQLAlchemy
repository. Repositories open a short-lived session per operation, because
workflow executions and monitoring cycles outlive any single request.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from aumos_compliance_orchestrator.core.models import Base
from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)


class Database:
    """Owns the async engine for the orchestrator's primary database.

    Args:
        database_url: SQLAlchemy async URL.
        pool_size: Connection pool size. Ignored for SQLite.
        echo: Echo SQL statements to the log.
    """

    def __init__(self, database_url: str, pool_size: int = 10, echo: bool = False) -> None:
        """Create the engine and session factory.

        Args:
            database_url: SQLAlchemy async URL, e.g. postgresql+asyncpg://...
            pool_size: Connection pool size for server databases.
            echo: Echo SQL statements to the log.
        """
        engine_options: dict[str, object] = {"echo": echo, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_options["pool_size"] = pool_size
        self.engine: AsyncEngine = create_async_engine(database_url, **engine_options)
        self.sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._url = self.engine.url.render_as_string(hide_password=True)

    async def create_schema(self) -> None:
        """Create every orchestrator table that does not exist yet."""
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured", database_url=self._url)

    async def dispose(self) -> None:
        """Close every pooled connection."""
        await self.engine.dispose()
        logger.info("Database engine disposed", database_url=self._url)
