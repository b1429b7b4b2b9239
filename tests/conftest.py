"""Shared fixtures."""

import pytest

from helpers import RecordingFactory
from rlsp.output import OutputChannel


@pytest.fixture
def factory() -> RecordingFactory:
    return RecordingFactory()


@pytest.fixture
def sink() -> OutputChannel:
    return OutputChannel()
