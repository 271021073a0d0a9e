from __future__ import annotations

import asyncio
import logging

import uvicorn

from claimgraph.runtime import open_runtime
from claimgraph.settings import settings

from .app import create_app


async def _main() -> None:
    logging.basicConfig(
        level=(settings.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime = await open_runtime(settings)
    app = create_app(runtime.store)

    config = uvicorn.Config(
        app,
        host=settings.bind_host,
        port=settings.bind_port,
        log_level=(settings.log_level or "info").lower(),
        loop="uvloop",
        http="httptools",
    )
    server = uvicorn.Server(config)

    try:
        await server.serve()
    finally:
        await runtime.aclose()


def main() -> None:
    asyncio.run(_main())


if __name__ == "__main__":
    main()
