import asyncio

from . import config
from .log import setup_logging
from .server import run_all


def main():
    setup_logging(config.LOG_LEVEL)
    try:
        asyncio.run(run_all())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
