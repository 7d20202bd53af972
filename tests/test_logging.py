"""Tests for the rotating log setup."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from mithril.utils import logging as logging_utils


@pytest.fixture
def restore_root_logger(monkeypatch: pytest.MonkeyPatch):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)


def test_setup_is_idempotent_until_forced(tmp_path: Path, restore_root_logger) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False)
    again = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert first == again == tmp_path / "a" / "mithril.log"

    forced = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path / "b", console=False, force=True)
    logging.getLogger("mithril.tests").debug("debug line reaches the file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert forced == tmp_path / "b" / "mithril.log"
    assert logging_utils.get_log_path() == forced
    assert "debug line reaches the file" in forced.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING
