"""Shared fixtures: in-memory database and a recording event bus."""

import pytest

from minicrm.common.db import Base, make_engine, make_session_factory
from minicrm.services.lead import models as lead_models  # noqa: F401
from minicrm.services.notification import models as notification_models  # noqa: F401
from minicrm.services.user import models as user_models  # noqa: F401


class RecordingBus:
    """Stands in for `KafkaBus`: keeps published events, or fails every publish."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events = []

    async def publish(self, event):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.events.append(event)
        return None

    @property
    def topics(self) -> list[str]:
        return [event.topic for event in self.events]


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def broken_bus():
    return RecordingBus(fail=True)
