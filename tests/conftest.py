from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from dvm_node.hooks import EventLogger


@pytest.fixture
def telemetry() -> EventLogger:
    return EventLogger()
