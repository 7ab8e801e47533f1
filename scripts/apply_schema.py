#!/usr/bin/env python3
"""Apply the jobq schema: jobs and rate_limit_buckets tables."""
import asyncio
import os

import asyncpg

from jobq.repositories.schema import SCHEMA


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(SCHEMA)
        print("jobq schema applied")

        # Verify
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = 'jobs'"
        )
        print(f"jobs table has {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
