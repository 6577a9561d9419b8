"""
Database initialization script for the FastAPI example.

This script:
1. Creates the users table
2. Inserts 1000 sample users spread across a few statuses, in batches
"""

import asyncio
import os

import asyncpg
from dotenv import load_dotenv


load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

STATUSES = ["active", "active", "active", "inactive", "invited", "suspended"]
FIRST_NAMES = ["Ada", "Grace", "Linus", "Margaret", "Dennis", "Barbara", "Ken", "Frances"]


async def init_database():
    """Initialize the database with schema and sample users"""
    print("🔄 Connecting to database...")
    conn = await asyncpg.connect(DATABASE_URL)

    try:
        print("🗑️  Dropping existing users table (if exists)...")
        await conn.execute("DROP TABLE IF EXISTS users CASCADE")

        print("🏗️  Creating users table...")
        await conn.execute(
            """
            CREATE TABLE users (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                email VARCHAR(255) NOT NULL UNIQUE,
                status VARCHAR(32) NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        await conn.execute("CREATE INDEX users_status_idx ON users (status)")

        total_users = 1000
        all_users = []
        for i in range(total_users):
            first = FIRST_NAMES[i % len(FIRST_NAMES)]
            all_users.append(
                (
                    f"{first} #{i + 1}",
                    f"{first.lower()}{i + 1}@example.com",
                    STATUSES[i % len(STATUSES)],
                )
            )

        # Insert in batches to reduce database load
        batch_size = 100
        total_inserted = 0

        for i in range(0, len(all_users), batch_size):
            batch = all_users[i : i + batch_size]
            await conn.executemany(
                """
                INSERT INTO users (name, email, status)
                VALUES ($1, $2, $3)
                """,
                batch,
            )
            total_inserted += len(batch)
            print(f"  Inserted {total_inserted}/{total_users} users...")

        rows = await conn.fetch(
            "SELECT status, COUNT(*) AS n FROM users GROUP BY status ORDER BY status"
        )
        print("✅ Database initialized successfully:")
        for row in rows:
            print(f"  - {row['status']}: {row['n']} users")

    except Exception as e:
        print(f"❌ Error initializing database: {e}")
        raise
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(init_database())
