"""Benchmark showing many views of the same query sharing one fetch."""

import asyncio
import time


try:
    from shared_query import InFlightRegistry, QueryCoordinator
except ModuleNotFoundError:
    import sys
    from pathlib import Path

    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
    from shared_query import InFlightRegistry, QueryCoordinator


# Simulate expensive aggregation query
query_count = 0


async def trending_posts(params: dict, token) -> dict:
    """Simulates a complex query taking 2 seconds."""
    global query_count
    query_count += 1
    await token.guard(asyncio.sleep(2.0))
    return {
        "trending_posts": [1, 2, 3, 4, 5],
        "window": params["window"],
        "computed_at": time.time(),
    }


async def simulate_herd_without_sharing():
    """100 views each issue their own fetch."""
    global query_count
    query_count = 0

    print("\n⏱️  Loading 100 dashboards WITHOUT a shared registry...")
    start = time.perf_counter()

    views = [
        QueryCoordinator(trending_posts, {"window": "24h"}, registry=InFlightRegistry())
        for _ in range(100)
    ]
    for view in views:
        view.activate()
    await asyncio.gather(*(view.wait() for view in views))

    duration = time.perf_counter() - start

    print("❌ WITHOUT sharing:")
    print(f"   Duration: {duration:.3f}s")
    print(f"   DB Queries: {query_count} (should be 1!)")
    print(f"   Wasted Queries: {query_count - 1}")


async def simulate_herd_with_sharing():
    """100 views of the same query attach to one fetch."""
    global query_count
    query_count = 0

    registry = InFlightRegistry()

    print("\n⏱️  Loading 100 dashboards WITH a shared registry...")
    start = time.perf_counter()

    views = [
        QueryCoordinator(trending_posts, {"window": "24h"}, registry=registry)
        for _ in range(100)
    ]
    for view in views:
        view.activate()
    await asyncio.gather(*(view.wait() for view in views))

    duration = time.perf_counter() - start
    stats = registry.get_stats()

    print("✅ WITH sharing (InFlightRegistry):")
    print(f"   Duration: {duration:.3f}s")
    print(f"   DB Queries: {query_count}")
    print(f"   Attach Rate: {stats.hit_rate * 100:.1f}%")
    print(f"   Queries Prevented: {stats.hits}")


async def main():
    print("\n🚀 Shared Query Benchmark")
    print("Scenario: 100 dashboards open the same trending-posts widget")
    print("         Expensive query takes 2 seconds\n")

    await simulate_herd_without_sharing()
    await simulate_herd_with_sharing()

    print(f"\n{'=' * 60}")
    print("💡 Key Insight:")
    print("   Without sharing: Database gets 100 queries")
    print("   With sharing: Database gets 1 query")
    print(f"{'=' * 60}\n")


if __name__ == "__main__":
    asyncio.run(main())
