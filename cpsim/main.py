import asyncio
import logging

import uvicorn

from .api import create_app
from .config import HTTP_HOST, HTTP_PORT, LOG_LEVEL
from .registry import DeviceRegistry


async def main():
    registry = DeviceRegistry()
    app = create_app(registry)
    server = uvicorn.Server(
        uvicorn.Config(app, host=HTTP_HOST, port=HTTP_PORT, loop="asyncio", log_level=LOG_LEVEL.lower())
    )
    logging.info(f"Control API listening on http://{HTTP_HOST}:{HTTP_PORT}")
    try:
        await server.serve()
    finally:
        await registry.close()


def run():
    logging.basicConfig(level=LOG_LEVEL.upper(), format="%(asctime)s | %(levelname)s | %(message)s")
    asyncio.run(main())


if __name__ == "__main__":
    run()
