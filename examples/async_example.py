import asyncio

from shared_query import InFlightRegistry, QueryCoordinator


registry = InFlightRegistry()


async def get_users(params: dict, token) -> list[dict[str, str]]:
    await token.guard(asyncio.sleep(0.01))
    return [{"id": "42", "name": "Async User", "status": params["status"]}]


async def main() -> None:
    async with QueryCoordinator(get_users, {"status": "active"}, registry=registry) as users:
        await users.wait()
        print(f"Loaded users: {users.data}")


if __name__ == "__main__":
    asyncio.run(main())
