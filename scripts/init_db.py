"""Script to create the users table without running migrations."""

import asyncio

from app.database import engine
from app.models import metadata


async def init_db() -> None:
    """Create all tables known to the application metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
