"""
Tab identity service entry point.

Starts the registry (loading the previous session), then serves the browser
extension over the local WebSocket gateway until interrupted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from .config import RegistryConfig
from .errors import ConsistencyError
from .gateway import ExtensionGateway
from .persist import JsonFileStore
from .registry import TabRegistry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("tab_identity")


async def run(config: RegistryConfig) -> int:
    registry = TabRegistry(JsonFileStore(config.data_dir), key=config.storage_key)
    gateway = ExtensionGateway(
        registry,
        host=config.host,
        port=config.port,
        expected_extension_id=config.expected_extension_id,
        removal_grace=config.removal_grace,
    )

    # Listen first: tab events that beat the snapshot load are buffered by the registry.
    await gateway.start()
    await registry.start()

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    serve = loop.create_task(gateway.serve_forever())
    stopper = loop.create_task(stop.wait())
    code = 0
    try:
        await asyncio.wait({serve, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if serve.done():
            serve.result()
    except ConsistencyError as exc:
        logger.error("fatal: %s", exc)
        code = 2
    finally:
        stopper.cancel()
        await gateway.stop()
        await registry.shutdown()
        if not serve.done():
            serve.cancel()
    return code


def main() -> None:
    config = RegistryConfig.from_env()
    if config.trace:
        logging.getLogger().setLevel(logging.DEBUG)
    logger.info("tab identity service data_dir=%s port=%s", config.data_dir, config.port)
    try:
        code = asyncio.run(run(config))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
