"""
Pytest configuration and shared fixtures for the personalization engine tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

# Load environment variables
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Test doubles
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualTimer:
    """threading.Timer stand-in fired explicitly by the test."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class TimerFactory:
    """Records every ManualTimer it creates."""

    def __init__(self):
        self.timers: List[ManualTimer] = []

    def __call__(self, interval: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(interval, callback)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[ManualTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


# ============================================================================
# Fixtures: Infrastructure
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> TimerFactory:
    return TimerFactory()


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """Records backoff delays instead of sleeping."""
    delays: List[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def store():
    from storage.document_store import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture
def service(store, clock, timers, no_sleep):
    """PersonalizationService on the in-memory store with manual timers."""
    from services.interaction_tracker import InteractionTracker
    from services.personalization_service import PersonalizationService

    tracker = InteractionTracker(clock=clock, timer_factory=timers)
    svc = PersonalizationService(store=store, clock=clock, sleep=no_sleep, tracker=tracker)
    yield svc
    svc.tracker.shutdown()


# ============================================================================
# Fixtures: Test Data Factories
# ============================================================================

@pytest.fixture
def make_event(clock) -> Callable[..., Dict[str, Any]]:
    """Factory for raw event dicts with unique ids."""
    counter = {"n": 0}

    def factory(event_type: str = "liked", user_id: str = "user-1", **overrides) -> Dict[str, Any]:
        counter["n"] += 1
        event = {
            "event_id": f"evt-{counter['n']}",
            "user_id": user_id,
            "type": event_type,
            "timestamp": clock().isoformat(),
            "outfit_id": f"outfit-{counter['n']}",
            "outfit": {
                "colors": ["navy", "cream"],
                "styles": ["minimalist"],
                "occasion": "office",
                "season": "winter",
            },
        }
        event.update(overrides)
        return event

    return factory


@pytest.fixture
def sample_candidates() -> List[Dict[str, Any]]:
    """Mixed candidates covering several colors and styles."""
    palette = [
        (["navy", "cream"], ["minimalist"], "office"),
        (["orange", "navy"], ["classic"], "office"),
        (["cream", "beige"], ["minimalist"], "casual"),
        (["neon yellow", "black"], ["streetwear"], "party"),
        (["olive", "white"], ["bohemian"], "casual"),
        (["burgundy", "gold"], ["elegant"], "party"),
        (["teal", "white"], ["sporty"], "casual"),
        (["navy", "white"], ["preppy"], "office"),
    ]
    return [
        {
            "candidate_id": f"cand-{i}",
            "attributes": {"colors": colors, "styles": styles, "occasion": occasion},
            "title": f"Look {i}",
        }
        for i, (colors, styles, occasion) in enumerate(palette)
    ]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "redis: marks tests that exercise the Redis backend")
