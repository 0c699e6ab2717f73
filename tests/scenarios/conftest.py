"""
Fixtures and helpers for end-to-end booking scenarios.

Provides:
- ``api``: terse calls to the HTTP routes as a given user
- ``outbox_events``: the notification events queued for a user
- ``ledger``: transaction types recorded for a booking
"""
from typing import Any, Optional

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.outbox_message import OutboxMessage
from app.db.models.transaction import Transaction
from app.db.models.user import User


class ScenarioApi:
    """Thin wrapper over the test client; every call returns the response"""

    def __init__(self, client: httpx.AsyncClient, headers_for) -> None:
        self.client = client
        self._headers_for = headers_for

    async def post(self, user: Optional[User], path: str, json: Any = None, **headers: str) -> httpx.Response:
        all_headers = dict(self._headers_for(user)) if user is not None else {}
        all_headers.update(headers)
        return await self.client.post(f"/api{path}", json=json, headers=all_headers)

    async def get(self, user: Optional[User], path: str, **headers: str) -> httpx.Response:
        all_headers = dict(self._headers_for(user)) if user is not None else {}
        all_headers.update(headers)
        return await self.client.get(f"/api{path}", headers=all_headers)

    async def book(self, sender: User, trip_id: int, weight_kg: str = "2.00", price: str = "100.00") -> int:
        response = await self.post(
            sender, "/bookings", {"trip_id": trip_id, "weight_kg": weight_kg, "proposed_price": price}
        )
        assert response.status_code == 201, response.text
        return response.json()["booking"]["id"]

    async def code(self, owner: User, booking_id: int, code_type: str) -> str:
        response = await self.get(owner, f"/bookings/{booking_id}/codes/{code_type}")
        assert response.status_code == 200, response.text
        return response.json()["code"]["code"]

    async def booking(self, user: User, booking_id: int) -> dict:
        response = await self.get(user, f"/bookings/{booking_id}")
        assert response.status_code == 200, response.text
        return response.json()["booking"]


@pytest.fixture
def api(test_client, auth_headers) -> ScenarioApi:
    return ScenarioApi(test_client, auth_headers)


@pytest.fixture
def outbox_events(db_session: AsyncSession):
    """outbox_events(user) -> event types queued for that user, oldest first"""
    async def _events(user: User) -> list[str]:
        result = await db_session.execute(
            select(OutboxMessage.event_type)
            .where(OutboxMessage.user_id == user.id)
            .order_by(OutboxMessage.id)
        )
        return list(result.scalars().all())

    return _events


@pytest.fixture
def ledger(db_session: AsyncSession):
    """ledger(booking_id) -> (type, status, amount) of every transaction row"""
    async def _ledger(booking_id: int) -> list[tuple[str, str, str]]:
        result = await db_session.execute(
            select(Transaction)
            .where(Transaction.booking_id == booking_id)
            .order_by(Transaction.id)
            .execution_options(populate_existing=True)
        )
        return [(t.type.value, t.status.value, f"{t.amount:.2f}") for t in result.scalars().all()]

    return _ledger
