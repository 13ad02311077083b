"""
Fixtures for end-to-end conversation scenarios.

Everything goes through the admin HTTP surface, the way an operator or
a messaging gateway would drive a conversation:
- say: send customer messages
- fire: fire a system trigger (payment verified / failed / timed out)
- inspect: read the live session
- order_status: read an order's status straight from the DB
"""
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.order import Order, OrderStatus

SCENARIO_PHONE = "+2348031234567"
ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}


@pytest.fixture
def say(test_client: AsyncClient):
    """Send one or more messages; returns the reply to the last one"""
    async def _say(*messages: str, phone: str = SCENARIO_PHONE) -> dict:
        data: dict = {}
        for message in messages:
            response = await test_client.post(
                f"/api/admin/sessions/{phone}/messages",
                json={"text": message},
                headers=ADMIN_HEADERS,
            )
            assert response.status_code == 200, response.text
            data = response.json()
        return data

    return _say


@pytest.fixture
def fire(test_client: AsyncClient):
    async def _fire(trigger: str, phone: str = SCENARIO_PHONE) -> dict:
        response = await test_client.post(
            f"/api/admin/sessions/{phone}/triggers",
            json={"trigger": trigger},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _fire


@pytest.fixture
def inspect(test_client: AsyncClient):
    async def _inspect(phone: str = SCENARIO_PHONE) -> dict:
        response = await test_client.get(f"/api/admin/sessions/{phone}", headers=ADMIN_HEADERS)
        assert response.status_code == 200, response.text
        return response.json()

    return _inspect


@pytest.fixture
def order_status(db_session: AsyncSession):
    async def _order_status(order_id: int) -> OrderStatus:
        order = await db_session.get(Order, order_id)
        assert order is not None, f"order {order_id} not found"
        await db_session.refresh(order)
        return order.status

    return _order_status
