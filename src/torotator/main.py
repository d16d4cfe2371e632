from __future__ import annotations

import asyncio
import sys
from typing import Optional, Sequence

from . import __version__
from .application import TorotatorApp
from .config_manager import build_arg_parser, load_settings
from .exceptions import FatalStartupError
from .logging_utils import configure_logging, get_logger


async def run(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args)
    except ValueError as error:
        parser.error(str(error))
    configure_logging(settings)
    logger = get_logger("main")
    logger.info("rotating tor proxy %s", __version__)

    app = TorotatorApp(settings)
    try:
        await app.run()
    except FatalStartupError as error:
        logger.critical("%s", error)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    sys.exit(asyncio.run(run(argv)))


if __name__ == "__main__":
    main()
