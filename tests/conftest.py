"""Shared test fixtures."""

import pytest

from eventconsole.config import Config
from eventconsole.state import SessionState
from fakes import RecordingRenderer


@pytest.fixture
def state() -> SessionState:
    return SessionState()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def config() -> Config:
    return Config(database_url="https://db.example.test/")
