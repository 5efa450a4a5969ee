import asyncio

from sqlalchemy.ext.asyncio import AsyncEngine

from lqa.config import DATABASE_URL
from lqa.database import Base, build_engine
import lqa.models  # noqa: F401  registers tables on Base.metadata


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    engine = build_engine(DATABASE_URL)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    print("Database tables created successfully!")


def main():
    asyncio.run(init_db())


if __name__ == "__main__":
    main()
