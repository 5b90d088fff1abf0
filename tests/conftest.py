import asyncio
import math
from typing import Dict, List, Optional

import pytest

from core.errors import GatewayError
from core.gateway import NotificationGateway
from core.geo import EARTH_RADIUS_KM
from core.messages import EmergencyMessageComposer
from core.registry import AmbulanceRegistry
from models import AmbulanceRegistration, GatewayReceipt

DELHI = (28.6139, 77.2090)


def north_of(latitude: float, km: float) -> float:
    """Latitude ``km`` kilometres due north on the haversine sphere."""
    return latitude + math.degrees(km / EARTH_RADIUS_KM)


class FakeGateway(NotificationGateway):
    """Records notifications; can fail or stall for chosen contacts."""

    name = "fake"

    def __init__(self, fail_for=(), delay: float = 0.0, slow_for=()):
        self.fail_for = set(fail_for)
        self.slow_for = set(slow_for)
        self.delay = delay
        self.calls: List[Dict[str, Optional[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def is_live(self) -> bool:
        return True

    async def notify(self, contact, message, callback_phone):
        self.calls.append({"contact": contact, "message": message, "callback_phone": callback_phone})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay and (not self.slow_for or contact in self.slow_for):
                await asyncio.sleep(self.delay)
            if contact in self.fail_for:
                raise GatewayError(f"provider rejected {contact}")
            return GatewayReceipt(status="queued", provider=self.name,
                                  provider_id=f"CA-{contact}", sms_id=f"SM-{contact}")
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


@pytest.fixture(name="north_of")
def north_of_fixture():
    return north_of


@pytest.fixture
def delhi():
    return DELHI


@pytest.fixture
def registry(tmp_path):
    return AmbulanceRegistry(data_dir=str(tmp_path / "registry"))


@pytest.fixture
def composer():
    # Empty key: always the built-in template
    return EmergencyMessageComposer(api_key="")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_gateway():
    return FakeGateway


@pytest.fixture
def add_ambulance(registry):
    """Register an ambulance with sensible defaults."""
    counter = {"n": 0}

    def _add(latitude=DELHI[0], longitude=DELHI[1], target=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "name": f"Ambulance {n}",
            "vehicle_number": f"DL{n:02d}AB{n:04d}",
            "driver_name": f"Driver {n}",
            "driver_contact": f"98765{n:05d}",
            "latitude": latitude,
            "longitude": longitude,
        }
        data.update(fields)
        return (target or registry).register(AmbulanceRegistration(**data))

    return _add
