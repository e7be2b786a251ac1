# tests/conftest.py
"""Pytest configuration and fixtures"""
import io
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from PIL import Image

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.domain import DeliveryEndpoint, Principal, SendResult  # noqa: E402
from app.infra.memory_repos import InMemoryEndpointDirectory  # noqa: E402
from app.infra.metrics import get_metrics_collector  # noqa: E402


class FakeTransport:
    """
    Records every send. Replies are scripted per endpoint url:
    a ``SendResult`` is returned, an ``Exception`` is raised.
    """

    def __init__(self, replies: dict | None = None):
        self.replies = replies or {}
        self.calls: list[tuple[DeliveryEndpoint, object]] = []

    async def send(self, endpoint, payload):
        self.calls.append((endpoint, payload))
        reply = self.replies.get(endpoint.url, SendResult.ok())
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def alice():
    return Principal(id="alice", nickname="Alice")


@pytest.fixture
def bob():
    return Principal(id="bob")


@pytest.fixture
def admin():
    return Principal(id="root", role="admin")


@pytest.fixture
def endpoints():
    """alice: two in g1, one ungrouped, one inactive in g1. bob: one in g2."""
    return [
        DeliveryEndpoint(id="w1", url="https://hook.example/send?key=aaaa1111", owner_id="alice", group_id="g1"),
        DeliveryEndpoint(id="w2", url="https://hook.example/send?key=bbbb2222", owner_id="alice", group_id="g1"),
        DeliveryEndpoint(id="w3", url="https://hook.example/send?key=cccc3333", owner_id="alice"),
        DeliveryEndpoint(
            id="w4", url="https://hook.example/send?key=dddd4444", owner_id="alice", group_id="g1", active=False,
        ),
        DeliveryEndpoint(id="w5", url="https://hook.example/send?key=eeee5555", owner_id="bob", group_id="g2"),
    ]


@pytest.fixture
def directory(endpoints):
    return InMemoryEndpointDirectory(endpoints, {"g1": "alice", "g2": "bob"})


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def future_time(fixed_now):
    return fixed_now + timedelta(hours=2)


@pytest.fixture
def fake_clock():
    return FakeClock()


def make_png(width: int = 8, height: int = 8, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def make_noise_png(width: int, height: int) -> bytes:
    """Noisy gradient: large as PNG, small as JPEG."""
    noise = Image.effect_noise((width, height), 12)
    gradient = Image.linear_gradient("L").resize((width, height))
    img = Image.merge("RGB", (noise, gradient, Image.blend(noise, gradient, 0.5)))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def png_factory():
    return make_png


@pytest.fixture
def noise_png_factory():
    return make_noise_png


@pytest.fixture
def transport_factory():
    return FakeTransport
