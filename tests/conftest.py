"""Shared fixtures and builders."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from oee_engine.models import Machine, OrderStatus, ProductionOrder
from oee_engine.reference import ApiReferenceData

BASE = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)
BASE_URL = "http://planning.test/api/v1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = BASE):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_order(
    order_id="1",
    machine_id="M1",
    start=BASE,
    minutes=210,
    quantity=210,
    **kwargs,
) -> ProductionOrder:
    return ProductionOrder(
        order_id=order_id,
        machine_id=machine_id,
        planned_start=start,
        planned_end=start + timedelta(minutes=minutes),
        planned_quantity=quantity,
        order_number=kwargs.pop("order_number", f"PO-{order_id}"),
        status=kwargs.pop("status", OrderStatus.RELEASED),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine():
    return Machine(machine_id="M1", name="Line1", plant="Plant1", area="Area1", line_id="Line1")


class FakePlanningApi:
    """Records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path.replace("/api/v1", "", 1))
        if key not in self.routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)


def make_api(routes, api_key="secret"):
    handler = FakePlanningApi(routes)
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return ApiReferenceData(BASE_URL, api_key=api_key, client=client), handler
