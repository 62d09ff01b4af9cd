import asyncio

from onedrive import api
from onedrive.env import load_env, setup_logging


async def watch_status() -> None:
    async for event in api.get_session().status.subscribe():
        print(f"[status] authenticated={event.is_authenticated}")


async def main() -> None:
    load_env()
    setup_logging()

    result = await api.initialize()
    if not result.ok:
        raise RuntimeError(result.message)
    watcher = asyncio.create_task(watch_status())

    try:
        result = await api.quick_authenticate(lambda challenge: print(challenge.message))
        if not result.ok:
            raise RuntimeError(result.message)

        async with api.build_graph_client() as graph:
            response = await graph.get("/me/drive/root/children", params={"$top": "10"})
            response.raise_for_status()
            for item in response.json().get("value", []):
                kind = "folder" if "folder" in item else "file"
                print(f"{kind:6} {item['name']}")
    finally:
        watcher.cancel()
        await api.dispose()


if __name__ == "__main__":
    asyncio.run(main())
