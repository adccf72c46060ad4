"""Tests for logging setup."""

from __future__ import annotations

import io
import logging

from rich.console import Console
from rich.logging import RichHandler

from compound_docs.logging_config import configure_logging


def _rich_handlers():
    return [h for h in logging.getLogger("compound_docs").handlers if isinstance(h, RichHandler)]


def test_configure_logging_is_idempotent():
    configure_logging(logging.DEBUG)
    configure_logging(logging.DEBUG)
    assert len(_rich_handlers()) == 1
    assert logging.getLogger("compound_docs").level == logging.DEBUG
    assert logging.getLogger("LiteLLM").level == logging.WARNING


def test_module_loggers_reach_the_console():
    buf = io.StringIO()
    configure_logging(logging.INFO, console=Console(file=buf, width=200))
    logging.getLogger("compound_docs.sync.reconciler").info("indexed notes.md")
    assert "indexed notes.md" in buf.getvalue()
