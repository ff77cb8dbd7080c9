from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from posthub.config import Settings, settings
from posthub.middleware import install_query_counter


class Base(DeclarativeBase):
    pass


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the post store and the job queue."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def engine_options(config: Settings) -> dict:
    """
    Keyword arguments for ``create_async_engine`` that bound every store
    call: waiting for a pooled connection and running a statement.
    """
    url = make_url(config.DATABASE_URL)
    options: dict = {"echo": config.DEBUG, "pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        # Busy timeout; SQLite pools take no pool_timeout.
        options["connect_args"] = {"timeout": config.DB_COMMAND_TIMEOUT}
        return options
    options["pool_timeout"] = config.DB_POOL_TIMEOUT
    if url.get_driver_name() == "asyncpg":
        options["connect_args"] = {"command_timeout": config.DB_COMMAND_TIMEOUT}
    return options


# Module-level engine variable allows tests to build their own factory instead.
engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings))

install_query_counter(engine)

async_session = make_session_factory(engine)


async def create_schema(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
