"""Real-world example: a filterable user list backed by a rate-limited API.

Demonstrates how QueryCoordinator keeps a view consistent while the user
flips filters faster than the API can answer, and how several widgets on
the same page share requests instead of burning through the rate limit.
"""

import asyncio
import time


try:
    from shared_query import InFlightRegistry, QueryCoordinator, TransportError, error_for_status
except ModuleNotFoundError:
    import sys
    from pathlib import Path

    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
    from shared_query import InFlightRegistry, QueryCoordinator, TransportError, error_for_status


class RateLimitedAPIClient:
    """Mock external API with strict rate limiting."""

    def __init__(self, rate_limit: int = 10, window_seconds: float = 1.0):
        """Initialize API client with rate limiting.

        Args:
            rate_limit: Maximum requests allowed per window.
            window_seconds: Time window for rate limiting.
        """
        self.rate_limit = rate_limit
        self.window_seconds = window_seconds
        self.request_timestamps: list[float] = []
        self.total_requests = 0
        self.completed_requests = 0

    def _check_rate_limit(self):
        """Raise a 429 transport error if the request would exceed the rate limit."""
        now = time.time()
        cutoff = now - self.window_seconds
        self.request_timestamps = [ts for ts in self.request_timestamps if ts > cutoff]

        if len(self.request_timestamps) >= self.rate_limit:
            limit = f"{self.rate_limit} requests per {self.window_seconds}s"
            raise error_for_status(429, message=f"Rate limit exceeded: {limit}")

        self.request_timestamps.append(now)
        self.total_requests += 1

    async def list_users(self, params: dict, token) -> list[dict]:
        """Fetch users matching `params` (rate limited, honors cancellation)."""
        self._check_rate_limit()
        print(f"🌐 API Request #{self.total_requests}: users {params}")

        # Simulate network latency; abandon early if the view moved on
        await token.guard(asyncio.sleep(0.2))
        self.completed_requests += 1

        return [
            {"id": i, "username": f"{params['status']}_user_{i}", "status": params["status"]}
            for i in range(3)
        ]


async def scenario_filter_switching():
    """The user clicks through filters; only the last one should render."""
    print("\n" + "=" * 70)
    print("🎯 SCENARIO 1: User flips the status filter quickly")
    print("=" * 70)

    api = RateLimitedAPIClient()
    registry = InFlightRegistry()
    users = QueryCoordinator(
        api.list_users, {"status": "active"}, registry=registry, placeholder=list
    )
    users.activate()

    for status in ["inactive", "invited", "suspended", "active"]:
        await asyncio.sleep(0.02)
        users.update({"status": status})

    await users.wait()
    stats = registry.get_stats()

    print("\n📊 RESULTS:")
    print(f"   Requests Started:      {api.total_requests}")
    print(f"   Requests Completed:    {api.completed_requests}")
    print(f"   Cancelled:             {stats.cancelled}")
    print(f"   Rendered Status:       {users.data[0]['status']}")
    print(f"   Error Shown:           {users.error}")
    users.close()


async def scenario_shared_widgets():
    """Ten widgets on one page ask for the same users."""
    print("\n" + "=" * 70)
    print("✅ SCENARIO 2: Ten widgets share one request")
    print("=" * 70)

    api = RateLimitedAPIClient(rate_limit=2)
    registry = InFlightRegistry()
    widgets = [
        QueryCoordinator(api.list_users, {"status": "active"}, registry=registry, placeholder=list)
        for _ in range(10)
    ]
    for widget in widgets:
        widget.activate()
    await asyncio.gather(*(widget.wait() for widget in widgets))

    stats = registry.get_stats()
    print(f"   Widgets Rendered:      {sum(1 for w in widgets if w.data)}")
    print(f"   Actual API Calls:      {api.total_requests}")
    print(f"   Attach Rate:           {stats.hit_rate * 100:.1f}%")


async def scenario_rate_limited_refresh():
    """Refreshing past the rate limit keeps the last good data on screen."""
    print("\n" + "=" * 70)
    print("❌ SCENARIO 3: Refresh button mashed past the rate limit")
    print("=" * 70)

    api = RateLimitedAPIClient(rate_limit=1, window_seconds=5.0)
    users = QueryCoordinator(api.list_users, {"status": "active"}, registry=InFlightRegistry())
    await users.load()
    await users.refetch()

    print(f"   Data Still Shown:      {len(users.data)} users")
    print(f"   Error Indicator:       {users.error}")
    print(f"   Is Transport Error:    {isinstance(users.error, TransportError)}")
    users.close()


async def main():
    """Run all scenarios."""
    await scenario_filter_switching()
    await scenario_shared_widgets()
    await scenario_rate_limited_refresh()

    print("\n" + "=" * 70)
    print("✨ Demo complete!")
    print("=" * 70)


if __name__ == "__main__":
    asyncio.run(main())
