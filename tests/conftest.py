"""
Test bootstrap:
- Register markers used to bucket the suite
- Provide a controllable clock, a recording sleep and action factories
"""
import pytest

from reliable_actions.models import ActionDescriptor


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated component tests")
    config.addinivalue_line("markers", "integration: tests wiring several components together")


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Awaitable sleep that returns immediately and remembers each delay."""

    def __init__(self, clock: FakeClock = None):
        self.delays = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class FakeHttpError(Exception):
    """Remote-call failure carrying an HTTP status and optional headers."""

    def __init__(self, message: str, status_code: int = None, headers: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.headers = headers or {}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def http_error():
    return FakeHttpError


@pytest.fixture
def make_action():
    """Factory for action descriptors with sensible defaults."""

    def factory(action_type: str = "create_task", target: str = "notion",
                correlation_id: str = "sig-1", **parameters):
        return ActionDescriptor(
            correlation_id=correlation_id,
            action_type=action_type,
            target=target,
            parameters=parameters or {"name": "X"},
        )

    return factory
