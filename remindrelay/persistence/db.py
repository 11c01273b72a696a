from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from remindrelay.core.config import Settings, get_settings
from remindrelay.domain.models import Base


def engine_options(database_url: str, settings: Settings) -> dict[str, Any]:
    """Connection options for the delivery database.

    Postgres gets a bounded asyncpg pool and an optional statement timeout.
    SQLite (tests, single-node trials) keeps SQLAlchemy's defaults because
    its pool classes reject the sizing arguments.
    """
    if database_url.startswith("sqlite"):
        return {}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if settings.db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return options


def build_sessionmaker(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    # Job loops open short sessions between gateway calls, so objects must outlive each commit.
    settings = get_settings()
    url = database_url or settings.database_url
    bound = create_async_engine(url, **engine_options(url, settings))
    return async_sessionmaker(bound, expire_on_commit=False)


async def create_schema(sessionmaker: async_sessionmaker[AsyncSession]) -> None:
    # Migrations own Postgres; this bootstraps throwaway SQLite databases.
    bound: AsyncEngine = sessionmaker.kw["bind"]
    async with bound.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


SessionLocal = build_sessionmaker()
engine: AsyncEngine = SessionLocal.kw["bind"]


def pool_stats() -> dict[str, int | None]:
    # Checked-out connections show how many job loops are mid-write.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for name, attribute in (
        ("size", "size"),
        ("checked_out", "checkedout"),
        ("checked_in", "checkedin"),
        ("overflow", "overflow"),
    ):
        fn = getattr(pool, attribute, None)
        stats[name] = int(fn()) if callable(fn) else None
    return stats
