"""``python -m sparkgate`` entry point."""

import asyncio
import sys

from sparkgate.main import main


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
