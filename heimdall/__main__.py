"""Entry point: python -m heimdall"""
from __future__ import annotations

import asyncio
import logging
import sys

from heimdall.config import ConfigError
from heimdall.debug.health_monitor import WatchdogError
from heimdall.main import HeimdallBot

log = logging.getLogger("heimdall")


def main() -> None:
    try:
        bot = HeimdallBot()
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        print("\nHeimdall shutting down.")
        sys.exit(0)
    except (ConfigError, WatchdogError) as e:
        log.critical("[FATAL] %s", e)
        print(f"Heimdall fatal: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
