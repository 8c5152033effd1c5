"""Tests for engine setup and table bootstrapping on SQLite."""

from pathlib import Path

import httpx
import pytest
import respx
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from compliance_gateway import database
from compliance_gateway.main import create_app, lifespan
from compliance_gateway.settings import Settings


async def _table_names(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as connection:
        return set(await connection.run_sync(lambda c: inspect(c).get_table_names()))


@pytest.mark.asyncio()
async def test_create_all_keeps_audit_table_on_audit_engine(tmp_path: Path) -> None:
    database.init_databases(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'primary.db'}",
        audit_db_url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
    )
    try:
        await database.create_all()
        primary_tables = await _table_names(database._engine)
        audit_tables = await _table_names(database._audit_engine)
    finally:
        await database.close_databases()

    assert primary_tables == {
        "compliance_applications",
        "compliance_environment_configs",
        "compliance_evaluations",
    }
    assert audit_tables == {"compliance_audit_logs"}


@pytest.mark.asyncio()
async def test_create_all_requires_initialized_engines() -> None:
    with pytest.raises(RuntimeError):
        await database.create_all()


def test_session_factories_require_initialization() -> None:
    with pytest.raises(RuntimeError):
        database.get_session_factory()
    with pytest.raises(RuntimeError):
        database.get_audit_session_factory()


@pytest.mark.asyncio()
async def test_lifespan_creates_tables_when_enabled(tmp_path: Path) -> None:
    settings = Settings(
        log_json=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'primary.db'}",
        audit_db_url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
        opa_url="http://opa.test:8181",
        create_tables_on_startup=True,
    )
    app = create_app(settings)

    with respx.mock:
        respx.get("http://opa.test:8181/health").mock(return_value=httpx.Response(200))
        async with lifespan(app):
            assert "compliance_evaluations" in await _table_names(database._engine)
            assert await _table_names(database._audit_engine) == {"compliance_audit_logs"}

    assert database._engine is None
