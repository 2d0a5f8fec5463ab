# src/risk_ingest/db.py
import asyncpg

from .config import Settings


async def get_pool(settings: Settings) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        user=settings.pg_user,
        password=settings.pg_password,
        host=settings.pg_host,
        port=settings.pg_port,
        database=settings.pg_db,
        min_size=1, max_size=10,
    )
