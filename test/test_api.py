"""Tests for the FastAPI app."""

import pytest
from fastapi.testclient import TestClient

from _helper import CUSTOMER_ID, DRIVER_ID, OTHER_CUSTOMER_ID, OTHER_DRIVER_ID
from hmarket import main as main_module
from hmarket.auth import JwtAuthVerifier
from hmarket.main import create_app
from hmarket.models import Role

SECRET = "test-secret"
WEBHOOK_SECRET = "hook-secret"

ORDER_BODY = {
    "items": [{"product_ref": "prod-1", "title": "Panier bio", "unit_price": "12.99", "quantity": 1}],
    "address": {"street": "12 rue de Rivoli", "city": "Paris", "postal_code": "75004"},
    "delivery_mode": "express",
}


@pytest.fixture
def auth():
    return JwtAuthVerifier(SECRET)


@pytest.fixture
def api_client(service, auth):
    app = create_app(service=service, auth=auth, webhook_secret=WEBHOOK_SECRET)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def as_client(auth):
    return {"Authorization": f"Bearer {auth.issue(CUSTOMER_ID, Role.CLIENT)}"}


@pytest.fixture
def as_driver(auth):
    return {"Authorization": f"Bearer {auth.issue(DRIVER_ID, Role.LIVREUR)}"}


@pytest.fixture
def as_admin(auth):
    return {"Authorization": f"Bearer {auth.issue('admin-1', Role.ADMIN)}"}


def headers_for(auth, actor_id, role):
    return {"Authorization": f"Bearer {auth.issue(actor_id, role)}"}


@pytest.fixture
def placed(api_client, as_client):
    response = api_client.post("/orders", json=ORDER_BODY, headers=as_client)
    assert response.status_code == 201
    return response.json()["order"]


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics(self, api_client, placed):
        response = api_client.get("/metrics")
        assert response.status_code == 200
        assert "orders_placed_total" in response.text


class TestAuthentication:
    def test_missing_token(self, api_client):
        response = api_client.get("/orders")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    def test_invalid_token(self, api_client):
        response = api_client.get("/orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestOrders:
    def test_place_order(self, placed):
        assert placed["order_status"] == "pending"
        assert placed["customer_id"] == CUSTOMER_ID
        assert placed["totals"]["subtotal"] == "12.99"
        assert placed["totals"]["delivery_fee"] == "5.99"
        assert placed["totals"]["taxes"] == "2.60"
        assert placed["totals"]["total"] == "21.58"
        assert placed["order_number"].startswith("HM-")
        assert len(placed["delivery"]["delivery_code"]) == 6

    def test_driver_cannot_place_order(self, api_client, as_driver):
        response = api_client.post("/orders", json=ORDER_BODY, headers=as_driver)
        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    def test_empty_cart(self, api_client, as_client):
        response = api_client.post("/orders", json={**ORDER_BODY, "items": []}, headers=as_client)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_list_own_orders(self, api_client, as_client, placed):
        response = api_client.get("/orders", headers=as_client)
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["orders"][0]["id"] == placed["id"]

    def test_admin_lists_every_order(self, api_client, auth, as_admin, placed):
        other = api_client.post("/orders", json=ORDER_BODY, headers=headers_for(auth, OTHER_CUSTOMER_ID, Role.CLIENT))
        response = api_client.get("/orders", headers=as_admin)
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert {o["id"] for o in data["orders"]} == {placed["id"], other.json()["order"]["id"]}

    def test_admin_filters_by_status(self, api_client, as_client, as_admin, placed):
        api_client.post(f"/orders/{placed['id']}/cancel", headers=as_client)
        response = api_client.get("/orders", params={"order_status": "cancelled"}, headers=as_admin)
        assert [o["id"] for o in response.json()["orders"]] == [placed["id"]]
        response = api_client.get("/orders", params={"delivery_status": "assigned"}, headers=as_admin)
        assert response.json()["count"] == 0

    def test_unknown_status_filter(self, api_client, as_admin):
        response = api_client.get("/orders", params={"order_status": "lost"}, headers=as_admin)
        assert response.status_code == 422

    def test_get_order(self, api_client, as_client, placed):
        response = api_client.get(f"/orders/{placed['id']}", headers=as_client)
        assert response.status_code == 200
        assert response.json()["order"]["order_number"] == placed["order_number"]

    def test_get_foreign_order(self, api_client, auth, placed):
        response = api_client.get(f"/orders/{placed['id']}", headers=headers_for(auth, OTHER_CUSTOMER_ID, Role.CLIENT))
        assert response.status_code == 403

    def test_get_unknown_order(self, api_client, as_admin):
        response = api_client.get("/orders/missing", headers=as_admin)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_cancel_without_body(self, api_client, as_client, placed):
        response = api_client.post(f"/orders/{placed['id']}/cancel", headers=as_client)
        assert response.status_code == 200
        assert response.json()["order"]["order_status"] == "cancelled"

    def test_transition_on_cancelled_order(self, api_client, as_client, as_admin, placed):
        api_client.post(f"/orders/{placed['id']}/cancel", headers=as_client)
        response = api_client.post(
            f"/orders/{placed['id']}/transition", json={"order_status": "confirmed"}, headers=as_admin
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_transition"
        assert "cancelled" in body["message"]

    def test_pay_without_gateway(self, api_client, as_client, placed):
        response = api_client.post(f"/orders/{placed['id']}/pay", headers=as_client)
        assert response.status_code == 400


class TestDelivery:
    def test_accept_and_progress(self, api_client, as_driver, as_client, placed):
        response = api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        assert response.status_code == 200
        order = response.json()["order"]
        assert order["delivery"]["status"] == "assigned"
        assert order["order_status"] == "confirmed"
        assert order["delivery"]["delivery_code"] is None

        response = api_client.post(
            f"/orders/{placed['id']}/transition", json={"delivery_status": "picked_up"}, headers=as_driver
        )
        assert response.status_code == 200
        assert response.json()["order"]["order_status"] == "preparing"

        response = api_client.get(f"/orders/{placed['id']}/tracking", headers=as_client)
        assert response.status_code == 200
        tracking = response.json()["tracking"]
        assert tracking["order"]["delivery_code"] == placed["delivery"]["delivery_code"]
        assert tracking["driver"]["name"] == "Karim"
        assert [e["status"] for e in tracking["tracking_history"]] == ["pending", "assigned", "picked_up"]

    def test_second_driver_gets_conflict(self, api_client, auth, as_driver, placed):
        api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        response = api_client.post(
            "/delivery/accept",
            json={"order_id": placed["id"]},
            headers=headers_for(auth, OTHER_DRIVER_ID, Role.LIVREUR),
        )
        assert response.status_code == 409
        assert response.json()["error"] == "already_assigned"

    def test_skipping_a_step_is_rejected(self, api_client, as_driver, placed):
        api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        response = api_client.post(
            f"/orders/{placed['id']}/transition", json={"delivery_status": "delivered"}, headers=as_driver
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    def test_client_cannot_accept(self, api_client, as_client, placed):
        response = api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_client)
        assert response.status_code == 403

    def test_my_deliveries(self, api_client, as_driver, placed):
        api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        response = api_client.get("/delivery/my-deliveries", headers=as_driver)
        assert response.status_code == 200
        assert [o["id"] for o in response.json()["orders"]] == [placed["id"]]

    def test_stats(self, api_client, as_client, as_driver, placed):
        api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        response = api_client.get("/delivery/stats", headers=as_driver)
        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["driver_id"] == DRIVER_ID
        assert stats["active_deliveries"] == 1
        assert stats["completed_deliveries"] == 0
        assert stats["total_revenue"] == "0.00"

        assert api_client.get("/delivery/stats", headers=as_client).status_code == 403

    def test_admin_stats_need_driver_id(self, api_client, as_admin):
        assert api_client.get("/delivery/stats", headers=as_admin).status_code == 400
        response = api_client.get("/delivery/stats", params={"driver_id": OTHER_DRIVER_ID}, headers=as_admin)
        assert response.status_code == 200
        assert response.json()["stats"]["available"] is True

    def test_update_location(self, api_client, as_driver, placed):
        api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        response = api_client.post(
            "/delivery/update-location",
            json={"lat": 48.8566, "lng": 2.3522, "order_id": placed["id"]},
            headers=as_driver,
        )
        assert response.status_code == 200
        assert response.json()["order"]["delivery"]["current_location"]["lat"] == 48.8566

    def test_update_location_out_of_range(self, api_client, as_driver):
        response = api_client.post("/delivery/update-location", json={"lat": 123, "lng": 2}, headers=as_driver)
        assert response.status_code == 422


class TestDrivers:
    def test_off_duty_driver_cannot_accept(self, api_client, as_driver, placed):
        response = api_client.put(f"/drivers/{DRIVER_ID}/availability", json={"available": False}, headers=as_driver)
        assert response.status_code == 200
        assert response.json() == {"driver_id": DRIVER_ID, "available": False}

        response = api_client.post("/delivery/accept", json={"order_id": placed["id"]}, headers=as_driver)
        assert response.status_code == 400
        assert response.json()["error"] == "driver_unavailable"

    def test_driver_cannot_toggle_colleague(self, api_client, as_driver):
        response = api_client.put(
            f"/drivers/{OTHER_DRIVER_ID}/availability", json={"available": False}, headers=as_driver
        )
        assert response.status_code == 403


class TestPaymentWebhook:
    def _post(self, api_client, order_id, secret=WEBHOOK_SECRET, outcome="succeeded"):
        return api_client.post(
            "/webhooks/payment",
            json={"order_id": order_id, "outcome": outcome, "reference": "pi_123"},
            headers={"X-Webhook-Secret": secret},
        )

    def test_wrong_secret(self, api_client, placed):
        assert self._post(api_client, placed["id"], secret="guess").status_code == 401

    def test_success_confirms_and_lists_order(self, api_client, as_driver, placed):
        response = self._post(api_client, placed["id"])
        assert response.status_code == 200
        assert response.json()["payment_status"] == "succeeded"
        assert response.json()["order_status"] == "confirmed"

        response = api_client.get("/delivery/available-orders", headers=as_driver)
        assert [o["id"] for o in response.json()["orders"]] == [placed["id"]]

    def test_replay_is_idempotent(self, api_client, placed):
        self._post(api_client, placed["id"])
        response = self._post(api_client, placed["id"], outcome="failed")
        assert response.status_code == 200
        assert response.json()["payment_status"] == "succeeded"

    def test_unknown_order(self, api_client):
        assert self._post(api_client, "missing").status_code == 404

    def test_closed_order_rejects_payment(self, api_client, as_client, placed):
        api_client.post(f"/orders/{placed['id']}/cancel", headers=as_client)
        response = self._post(api_client, placed["id"])
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"


class TestPaymentWebhookWithoutSecret:
    @pytest.fixture
    def open_client(self, service, auth, monkeypatch):
        monkeypatch.setattr(main_module.settings, "payment_webhook_secret", None)
        with TestClient(create_app(service=service, auth=auth)) as client:
            yield client

    def test_unset_secret_rejects_everything(self, open_client, as_client):
        placed = open_client.post("/orders", json=ORDER_BODY, headers=as_client).json()["order"]
        for headers in ({}, {"X-Webhook-Secret": ""}, {"X-Webhook-Secret": "anything"}):
            response = open_client.post(
                "/webhooks/payment",
                json={"order_id": placed["id"], "outcome": "succeeded"},
                headers=headers,
            )
            assert response.status_code == 401
            assert response.json()["error"] == "unauthenticated"

        order = open_client.get(f"/orders/{placed['id']}", headers=as_client).json()["order"]
        assert order["payment"]["status"] == "pending"
        assert order["order_status"] == "pending"
