from __future__ import annotations

import logging
import os

import pytest

from clawbridge.core.exceptions import TransportError
from tests.fakes import FakeGateway, ScriptedTransport


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.clawbridge and any CLAWBRIDGE_* settings."""
    for key in list(os.environ):
        if key.startswith("CLAWBRIDGE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    yield
    # CLI tests install handlers on the package logger; undo that for caplog.
    logger = logging.getLogger("clawbridge")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def broken_transport() -> ScriptedTransport:
    return ScriptedTransport(fail_open=TransportError("connection refused"))
