from typing import Any
from typing import AsyncGenerator

import fastapi
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base

from wallog.config import Config

Base: Any = declarative_base()


class Database:
    """Owns the async engine, built at process start and disposed on shutdown."""

    def __init__(self, config: Config) -> None:
        self.url = f"sqlite+aiosqlite:///{config.database_path}"
        self.engine = create_async_engine(
            self.url, echo=config.debug, connect_args={"timeout": 15}
        )
        self.session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self) -> None:
        logger.info(f"Initializing database {self.url}")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def shutdown(self) -> None:
        await self.engine.dispose()


async def get_db_session(
    request: fastapi.Request,
) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI Depends"""
    database: Database = request.app.state.federation.database
    async with database.session() as session:
        try:
            yield session
        finally:
            await session.close()
