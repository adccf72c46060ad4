"""Logging setup: module loggers everywhere, one RichHandler at the root."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_FORMAT = "%(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO, *, console: Console | None = None) -> None:
    """Install a RichHandler on the ``compound_docs`` logger (idempotent).

    Library code only ever calls ``logging.getLogger(__name__)``; hosts that
    configure logging themselves can skip this function.
    """
    logger = logging.getLogger("compound_docs")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)
    # litellm is chatty at INFO
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)
