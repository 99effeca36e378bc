# relaybridge/__main__.py
"""Run the bridge headless: python -m relaybridge (or the relay-bridge script)."""
import asyncio
import signal
import sys

# Load .env BEFORE any relaybridge imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv()

from relaybridge.bridge import RelayBridge
from relaybridge.config import Settings
from relaybridge.errors import ConfigError
from relaybridge.monitoring import logger


async def run(settings: Settings) -> None:
    bridge = RelayBridge(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await bridge.start()
    try:
        await stop.wait()
    finally:
        await bridge.stop()


def main() -> int:
    try:
        settings = Settings.from_env()
        settings.validate()
    except ConfigError as e:
        logger.error(str(e))
        return 1
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
