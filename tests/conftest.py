import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src to path for imports to work with src/ layout
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from reflection_gate.backends import BackendRouter, MemoryLearningBackend  # noqa: E402
from reflection_gate.cache import StatsCacheManager  # noqa: E402
from reflection_gate.config import Config  # noqa: E402
from reflection_gate.events import EventLog  # noqa: E402
from reflection_gate.session_store import MemorySessionStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def sessions():
    return MemorySessionStore()


@pytest.fixture
def router():
    return BackendRouter(project=MemoryLearningBackend("project"), personal=MemoryLearningBackend("personal"))


@pytest.fixture
def stats_manager(tmp_path):
    project = tmp_path / ".reflection-gate"
    return StatsCacheManager(project / "stats-cache.json", EventLog(project / "stats.log"))


def make_candidate(summary="Retry the flaky fixture with a fresh port", **overrides):
    candidate = {
        "category": "pitfall",
        "summary": summary,
        "detail": "The integration fixture binds a fixed port; reuse across tests causes EADDRINUSE.",
        "scope": "project",
        "confidence": "high",
        "claimed_criteria": ["behavior_changing"],
        "tags": ["testing", "fixtures"],
        "context_files": ["tests/conftest.py"],
    }
    candidate.update(overrides)
    return candidate
