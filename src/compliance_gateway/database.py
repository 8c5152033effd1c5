"""Async SQLAlchemy engines and session factories.

Two logical databases are managed here:
- primary - applications, environment configs, compliance evaluations
- audit   - the append-only compliance audit log

They may point at the same server. Keeping separate engines lets the audit
log run under a role holding only INSERT and SELECT grants.

Key exports:
- Base                    - declarative base for all ORM rows
- init_databases(...)     - call at startup to create engines and session factories
- close_databases()       - call at shutdown to dispose engines
- get_session_factory()   - session factory for the primary database
- get_audit_session_factory() - session factory for the audit database
- create_all()            - create tables for local and dev bootstrapping
"""

from functools import partial

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from compliance_gateway.observability import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for compliance gateway ORM rows."""


# Module-level engines and session factories, initialized by init_databases()
_engine: AsyncEngine | None = None
_audit_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_audit_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(url: str, pool_size: int, max_overflow: int) -> AsyncEngine:
    if url.startswith("sqlite"):
        # SQLite drivers do not accept queue pool sizing arguments
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        # Echo is explicitly disabled: evidence payloads must not be logged
        echo=False,
        pool_pre_ping=True,
    )


def init_databases(
    database_url: str,
    audit_db_url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    audit_pool_size: int = 5,
    audit_max_overflow: int = 2,
) -> None:
    """Initialize primary and audit engines and their session factories.

    Must be called once at application startup before any repository is used.

    Args:
        database_url: Async URL for the primary database.
        audit_db_url: Async URL for the audit database.
        pool_size: Primary connection pool size.
        max_overflow: Primary max overflow connections.
        audit_pool_size: Audit connection pool size.
        audit_max_overflow: Audit max overflow connections.
    """
    global _engine, _audit_engine, _session_factory, _audit_session_factory  # noqa: PLW0603

    logger.info("Initializing database engines", pool_size=pool_size, audit_pool_size=audit_pool_size)

    _engine = _build_engine(database_url, pool_size, max_overflow)
    _audit_engine = _build_engine(audit_db_url, audit_pool_size, audit_max_overflow)

    _session_factory = async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)
    _audit_session_factory = async_sessionmaker(
        bind=_audit_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_databases() -> None:
    """Dispose both engines. Must be called at application shutdown."""
    global _engine, _audit_engine, _session_factory, _audit_session_factory  # noqa: PLW0603

    for engine in (_engine, _audit_engine):
        if engine is not None:
            await engine.dispose()
    _engine = None
    _audit_engine = None
    _session_factory = None
    _audit_session_factory = None
    logger.info("Database engines disposed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the primary session factory.

    Raises:
        RuntimeError: If init_databases() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError("Databases have not been initialized. Call init_databases() in the lifespan handler.")
    return _session_factory


def get_audit_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the audit session factory.

    Raises:
        RuntimeError: If init_databases() has not been called yet.
    """
    if _audit_session_factory is None:
        raise RuntimeError("Databases have not been initialized. Call init_databases() in the lifespan handler.")
    return _audit_session_factory


async def create_all() -> None:
    """Create each database's own tables. Intended for local and dev setups.

    The primary engine gets the registry and evaluation tables and the audit
    engine gets only the audit log table.
    """
    from compliance_gateway.core.models import (
        ApplicationRow,
        AuditLogRow,
        ComplianceEvaluationRow,
        EnvironmentConfigRow,
    )

    if _engine is None or _audit_engine is None:
        raise RuntimeError("Databases have not been initialized. Call init_databases() first.")
    primary_tables = [ApplicationRow.__table__, EnvironmentConfigRow.__table__, ComplianceEvaluationRow.__table__]
    audit_tables = [AuditLogRow.__table__]
    for engine, tables in ((_engine, primary_tables), (_audit_engine, audit_tables)):
        async with engine.begin() as connection:
            await connection.run_sync(partial(Base.metadata.create_all, tables=tables))
        logger.info("Tables created", tables=[t.name for t in tables])
