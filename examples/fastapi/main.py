"""
FastAPI example demonstrating shared queries over PostgreSQL.

This example shows the difference between:
1. Normal endpoint - Every request runs its own query
2. Shared endpoint - Concurrent identical requests attach to one in-flight query
3. Dashboard endpoint - A long-lived QueryCoordinator refreshed on demand
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from shared_query import (
    CancellationToken,
    InFlightRegistry,
    QueryCoordinator,
    TransportError,
    error_for_status,
)


# Load environment variables
load_dotenv()

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

registry = InFlightRegistry()

# Database connection pool
db_pool = None
dashboard: Optional[QueryCoordinator] = None


class User(BaseModel):
    """User model"""

    id: int
    name: str
    email: str
    status: str


class UserListResponse(BaseModel):
    """Query timing and results"""

    query_time_ms: float
    timestamp: float
    users: list[User]
    endpoint_type: str


async def fetch_users_from_db(params: dict, token: CancellationToken) -> list[User]:
    """
    Fetch users with a given status - simulates a slow query.

    The artificial delay stands in for expensive joins or aggregations.
    """
    async with db_pool.acquire() as conn:
        # Simulate slow query, giving up early if every caller went away
        await token.guard(asyncio.sleep(0.5))

        try:
            rows = await conn.fetch(
                """
                SELECT id, name, email, status
                FROM users
                WHERE status = $1
                ORDER BY id
                LIMIT 100
                """,
                params["status"],
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise error_for_status(503, message=str(e)) from e

        return [User(**dict(row)) for row in rows]


@registry.group()
async def fetch_users_shared(params: dict, token: CancellationToken) -> list[User]:
    """
    Shared version - concurrent requests for the same status run ONE query.

    When 100 requests arrive for `status=active` at once, only one query
    executes and the other 99 attach to it.
    """
    return await fetch_users_from_db(params, token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for the pool and the dashboard query"""
    global db_pool, dashboard
    db_pool = await asyncpg.create_pool(
        DATABASE_URL,
        min_size=5,
        max_size=10,
        command_timeout=60,
    )
    print("✅ Database connection pool created")

    dashboard = QueryCoordinator(
        fetch_users_from_db, {"status": "active"}, registry=registry, placeholder=list
    )
    dashboard.activate()
    yield

    dashboard.close()
    await db_pool.close()
    print("👋 Database connection pool closed")


app = FastAPI(
    title="Shared Query FastAPI Example",
    description="Demonstrates shared in-flight queries with PostgreSQL",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Shared Query FastAPI Example",
        "endpoints": {
            "/users/normal/{status}": "Normal endpoint - every request hits DB",
            "/users/shared/{status}": "Shared endpoint - requests attach to one query",
            "/dashboard": "Last loaded active users, with loading/error flags",
            "/dashboard/refetch": "Force the dashboard query to reload",
            "/stats": "View registry statistics",
            "/health": "Health check",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        async with db_pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return {"status": "healthy", "database": "connected"}
    except (OSError, asyncpg.PostgresError) as e:
        return {"status": "unhealthy", "error": str(e)}


async def timed(fetch, status: str, endpoint_type: str) -> UserListResponse:
    start_time = time.perf_counter()
    try:
        users = await fetch({"status": status}, CancellationToken())
    except TransportError as e:
        raise HTTPException(status_code=e.status or 502, detail=str(e)) from e
    query_time = (time.perf_counter() - start_time) * 1000

    return UserListResponse(
        query_time_ms=round(query_time, 2),
        timestamp=time.time(),
        users=users,
        endpoint_type=endpoint_type,
    )


@app.get("/users/normal/{status}", response_model=UserListResponse)
async def get_users_normal(status: str):
    """Normal endpoint - EVERY request hits the database."""
    return await timed(fetch_users_from_db, status, "normal")


@app.get("/users/shared/{status}", response_model=UserListResponse)
async def get_users_shared(status: str):
    """Shared endpoint - concurrent requests for one status share a query."""
    return await timed(fetch_users_shared, status, "shared")


@app.get("/dashboard")
async def get_dashboard():
    """Current dashboard state; stale users stay visible next to any error."""
    state = dashboard.snapshot()
    return {
        "status": state.status.value,
        "is_loading": state.is_loading,
        "error": str(state.error) if state.error else None,
        "users": [user.model_dump() for user in state.data],
    }


@app.post("/dashboard/refetch")
async def refetch_dashboard():
    """Reload the dashboard, attaching to any identical query already running"""
    dashboard.refetch()
    return {"message": "Refetch started"}


@app.get("/stats")
async def get_stats():
    """Get registry statistics"""
    stats = registry.get_stats()
    return {
        "hits": stats.hits,
        "misses": stats.misses,
        "errors": stats.errors,
        "cancelled": stats.cancelled,
        "in_flight": stats.in_flight,
        "hit_rate": f"{stats.hit_rate:.1%}",
        "total_requests": stats.hits + stats.misses,
        "queries_prevented": stats.hits,
    }


@app.post("/stats/reset")
async def reset_stats():
    """Reset registry statistics"""
    registry.reset_stats()
    return {"message": "Statistics reset successfully"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
