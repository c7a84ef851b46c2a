import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg

PG_HOST = os.getenv("PG_HOST", "localhost")
PG_PORT = int(os.getenv("PG_PORT", "5432"))
PG_DB = os.getenv("PG_DB", "mechatronics")
PG_USER = os.getenv("PG_USER", "mechatronics")
PG_PASS = os.getenv("PG_PASS", "mechatronics_dev")
DATABASE_URL = os.getenv("DATABASE_URL")
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "2"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))


async def create_pool(dsn: Optional[str] = None) -> asyncpg.Pool:
    dsn = dsn or DATABASE_URL
    if dsn:
        return await asyncpg.create_pool(
            dsn=dsn,
            min_size=PG_POOL_MIN,
            max_size=PG_POOL_MAX,
            command_timeout=30,
        )
    return await asyncpg.create_pool(
        host=PG_HOST,
        port=PG_PORT,
        database=PG_DB,
        user=PG_USER,
        password=PG_PASS,
        min_size=PG_POOL_MIN,
        max_size=PG_POOL_MAX,
        command_timeout=30,
    )


@asynccontextmanager
async def tenant_connection(pool: asyncpg.Pool, tenant_id: int) -> AsyncGenerator[asyncpg.Connection, None]:
    """
    Acquire a connection inside a transaction with app.tenant_id set.

    Row level security policies on tenant tables compare against
    app.tenant_id, so a query that forgets its tenant filter still only
    sees the caller's rows.

        async with tenant_connection(pool, tenant_id) as conn:
            rows = await conn.fetch("SELECT * FROM alerts")
    """
    if tenant_id is None:
        raise ValueError("tenant_id is required for tenant_connection")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute("SELECT set_config('app.tenant_id', $1, true)", str(tenant_id))
            yield conn


@asynccontextmanager
async def system_connection(pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Connection, None]:
    """
    Connection without tenant context, for cross-tenant jobs (device health
    check, API key lookup). Only reachable from routes guarded by a shared
    secret or by the key lookup itself.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn
