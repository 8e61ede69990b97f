from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def get_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    if not database_url:
        raise RuntimeError("database url is not set")
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, **kwargs)
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True, **kwargs)


def get_session(engine: AsyncEngine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )


async def create_all(engine: AsyncEngine):
    # dev/test bootstrap; production schema is owned by alembic
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
