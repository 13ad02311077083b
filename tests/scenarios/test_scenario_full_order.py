"""
Scenario 1 - a customer orders, pays, and orders again

Covers:
- greeting -> browsing -> cart -> review -> payment -> complete over HTTP
- order row created at confirmation and completed on PAYMENT_VERIFIED
- a second order from the same phone starts from a clean cart
- losing the cache mid-conversation does not lose progress
"""
import pytest

from app.db.models.order import OrderStatus


@pytest.mark.scenario
class TestFullOrder:

    @pytest.mark.asyncio
    async def test_order_paid_and_completed(self, say, fire, inspect, order_status, menu_products):
        reply = await say("hi", "menu", "1", "2 pizzas", "cart")
        assert reply["next_state"] == "reviewing_order"
        assert "Total: ₦14,850.00" in reply["response_text"]

        reply = await say("confirm")
        assert reply["next_state"] == "awaiting_payment"

        session = await inspect()
        order_id = session["context"]["order_id"]
        reference = session["context"]["payment_reference"]
        assert await order_status(order_id) == OrderStatus.PENDING

        reply = await say("paid")
        assert reply["next_state"] == "payment_confirmation"
        assert reference in reply["response_text"]

        reply = await fire("payment_verified")
        assert reply["next_state"] == "order_complete"
        assert await order_status(order_id) == OrderStatus.COMPLETED

        session = await inspect()
        assert session["current_state"] == "order_complete"
        assert session["allowed_triggers"]
        assert set(session["allowed_triggers"]) <= {"start_over", "start_conversation", "view_products"}

    @pytest.mark.asyncio
    async def test_second_order_starts_clean(self, say, fire, inspect, menu_products):
        await say("hi", "menu", "pizza", "cart", "confirm", "paid")
        await fire("payment_verified")
        first_order_id = (await inspect())["context"]["order_id"]

        reply = await say("menu")
        assert reply["next_state"] == "browsing_products"
        session = await inspect()
        assert session["context"]["current_order"] is None
        assert session["context"]["payment_reference"] is None

        await say("2", "cart", "confirm")

        session = await inspect()
        assert session["current_state"] == "awaiting_payment"
        assert [line["name"] for line in session["context"]["current_order"]["items"]] == ["Burger"]
        assert session["context"]["order_id"] != first_order_id

    @pytest.mark.asyncio
    async def test_cache_loss_mid_conversation(self, say, inspect, fake_redis, menu_products):
        await say("hi", "menu", "pizza")

        await fake_redis.aclose()

        reply = await say("cart")
        assert reply["next_state"] == "reviewing_order"
        assert "Total: ₦4,950.00" in reply["response_text"]
        assert (await inspect())["context"]["current_order"]["items"][0]["quantity"] == 1
