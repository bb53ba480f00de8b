"""
API tests for reservations, windows, completion and billing endpoints.

Requests carry the upstream identity headers; the database dependency is
overridden with the test session.
"""

from datetime import date, datetime, time, timedelta

import pytest
from fastapi.testclient import TestClient

from core.database import get_db
from main import app
from services.journal_service import JournalService
from services.order_service import OrderService
from services.reservation_service import ReservationService
from utils.datetime_utils import facility_now
from factories import MONDAY, NOW, at, create_account, create_facility, create_policy, create_price_group, create_product, create_rule

USER_HEADERS = {"X-Actor-Id": "501", "X-Actor-Role": "user"}
STAFF_HEADERS = {"X-Actor-Id": "1", "X-Actor-Role": "staff"}


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def lab(db_session):
    """Instrument open every day 09:00-17:00 with an account priced at $60/hour."""
    facility = create_facility(db_session)
    product = create_product(db_session, facility)
    create_rule(db_session, product, day_of_week=None)
    account = create_account(db_session)
    group = create_price_group(db_session, accounts=[account])
    create_policy(db_session, product, group, unit_rate_cents=6000, start_date=date(2020, 1, 1))
    return product, account


def upcoming_day() -> date:
    return facility_now().date() + timedelta(days=2)


def booking(product, account, start_hour=10, end_hour=11, **extra):
    day = upcoming_day()
    return {
        "product_id": product.id,
        "account_id": account.id,
        "start_at": datetime.combine(day, time(start_hour)).isoformat(),
        "end_at": datetime.combine(day, time(end_hour)).isoformat(),
        **extra,
    }


class TestReservationEndpoints:

    def test_create_reservation(self, client, lab):
        product, account = lab

        response = client.post("/api/reservations", json=booking(product, account), headers=USER_HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["product_id"] == product.id
        assert body["is_admin_override"] is False

    def test_missing_identity(self, client, lab):
        product, account = lab

        response = client.post("/api/reservations", json=booking(product, account))

        assert response.status_code == 401

    def test_conflict_is_409(self, client, lab):
        product, account = lab
        client.post("/api/reservations", json=booking(product, account), headers=USER_HEADERS)

        response = client.post(
            "/api/reservations", json=booking(product, account, 10, 12), headers=USER_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "conflict"

    def test_unavailable_slot_lists_nearby_windows(self, client, lab):
        product, account = lab

        response = client.post(
            "/api/reservations", json=booking(product, account, 16, 18), headers=USER_HEADERS
        )

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "slot_unavailable"
        assert detail["nearby_windows"]

    def test_rule_violation_is_422(self, client, lab):
        product, account = lab
        payload = booking(product, account)
        payload["end_at"] = payload["start_at"].replace("10:00", "10:05")

        response = client.post("/api/reservations", json=payload, headers=USER_HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"]["rule"] == "interval"

    def test_override_requires_staff(self, client, lab):
        product, account = lab

        forbidden = client.post(
            "/api/reservations", json=booking(product, account, 18, 19, admin_override=True), headers=USER_HEADERS
        )
        allowed = client.post(
            "/api/reservations", json=booking(product, account, 18, 19, admin_override=True), headers=STAFF_HEADERS
        )

        assert forbidden.status_code == 403
        assert allowed.status_code == 201
        assert allowed.json()["is_admin_override"] is True

    def test_cancel_and_waiver_permissions(self, client, lab):
        product, account = lab
        created = client.post("/api/reservations", json=booking(product, account), headers=USER_HEADERS).json()

        forbidden = client.post(
            f"/api/reservations/{created['id']}/cancel", json={"waive_fee": True}, headers=USER_HEADERS
        )
        cancelled = client.post(
            f"/api/reservations/{created['id']}/cancel", json={"reason": "Plans changed"}, headers=USER_HEADERS
        )

        assert forbidden.status_code == 403
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    def test_check_in_and_out(self, client, lab, db_session):
        product, account = lab
        reservation = ReservationService.request_reservation(
            db_session, product.id, account.id, 501, at(MONDAY, 10), at(MONDAY, 11), at=NOW
        )

        started = client.post(
            f"/api/reservations/{reservation.id}/start",
            json={"at": at(MONDAY, 10).isoformat()},
            headers=USER_HEADERS,
        )
        ended = client.post(
            f"/api/reservations/{reservation.id}/end",
            json={"at": at(MONDAY, 11).isoformat()},
            headers=USER_HEADERS,
        )

        assert started.json()["status"] == "in_progress"
        assert ended.json()["status"] == "completed"
        assert reservation.order_detail.net_cost_cents == 6000

    def test_mark_missed_is_staff_only(self, client, lab, db_session):
        product, account = lab
        reservation = ReservationService.request_reservation(
            db_session, product.id, account.id, 501, at(MONDAY, 10), at(MONDAY, 11), at=NOW
        )
        payload = {"at": at(MONDAY, 10, 30).isoformat()}

        forbidden = client.post(f"/api/reservations/{reservation.id}/missed", json=payload, headers=USER_HEADERS)
        missed = client.post(f"/api/reservations/{reservation.id}/missed", json=payload, headers=STAFF_HEADERS)

        assert forbidden.status_code == 403
        assert missed.json()["status"] == "missed"

    def test_unknown_reservation(self, client):
        response = client.post("/api/reservations/999/start", headers=USER_HEADERS)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"


class TestProductEndpoints:

    def test_list_windows(self, client, lab):
        product, _ = lab

        response = client.get(
            f"/api/products/{product.id}/windows",
            params={"start": at(MONDAY, 0).isoformat(), "end": at(MONDAY + timedelta(days=2), 0).isoformat()},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        windows = response.json()["windows"]
        assert len(windows) == 2
        assert windows[0]["start"].startswith("2030-01-07T09:00")
        assert windows[0]["capacity"] == 1

    def test_inverted_range_is_400(self, client, lab):
        product, _ = lab

        response = client.get(
            f"/api/products/{product.id}/windows",
            params={"start": at(MONDAY, 12).isoformat(), "end": at(MONDAY, 9).isoformat()},
            headers=USER_HEADERS,
        )

        assert response.status_code == 400

    def test_unknown_product(self, client):
        response = client.get(
            "/api/products/999/windows",
            params={"start": at(MONDAY, 0).isoformat(), "end": at(MONDAY, 12).isoformat()},
            headers=USER_HEADERS,
        )

        assert response.status_code == 404


class TestBillingEndpoints:

    @pytest.fixture
    def used_hour(self, db_session, lab):
        product, account = lab
        reservation = ReservationService.request_reservation(
            db_session, product.id, account.id, 501, at(MONDAY, 10), at(MONDAY, 11), at=NOW
        )
        ReservationService.start_reservation(db_session, reservation.id, at=at(MONDAY, 10))
        ReservationService.end_reservation(db_session, reservation.id, at=at(MONDAY, 11))
        return account

    def test_journal_run(self, client, used_hour):
        response = client.post(
            f"/api/accounts/{used_hour.id}/journal", json={"as_of": "2030-01-07"}, headers=STAFF_HEADERS
        )

        assert response.status_code == 200
        body = response.json()
        assert body["row_count"] == 1
        assert body["total_cents"] == 6000

    def test_journal_requires_staff(self, client, used_hour):
        response = client.post(f"/api/accounts/{used_hour.id}/journal", headers=USER_HEADERS)

        assert response.status_code == 403

    def test_statement(self, client, used_hour, db_session):
        JournalService.run_journal_batch(db_session, used_hour.id, MONDAY)
        period = {"period_start": "2030-01-01", "period_end": "2030-01-31"}

        created = client.post(f"/api/accounts/{used_hour.id}/statements", json=period, headers=STAFF_HEADERS)
        again = client.post(f"/api/accounts/{used_hour.id}/statements", json=period, headers=STAFF_HEADERS)

        assert created.status_code == 200
        assert created.json()["total_cents"] == 6000
        assert again.json()["statement_number"] == created.json()["statement_number"]

    def test_statement_with_nothing_to_bill(self, client, lab):
        _, account = lab

        response = client.post(
            f"/api/accounts/{account.id}/statements",
            json={"period_start": "2030-01-01", "period_end": "2030-01-31"},
            headers=STAFF_HEADERS,
        )

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "nothing_to_bill"

    def test_complete_order_detail_endpoint(self, client, lab, db_session):
        product, account = lab
        item = create_product(db_session, product.facility, kind="item", name="Gloves")
        group = create_price_group(db_session, accounts=[account])
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, start_date=date(2020, 1, 1))
        order = OrderService.create_order(db_session, account.id, 501, product.facility_id, [{"product_id": item.id}])
        OrderService.place_order(db_session, order.id, at=NOW)

        response = client.post(
            f"/api/order-details/{order.details[0].id}/complete",
            json={"quantity": 3, "at": at(MONDAY, 14).isoformat()},
            headers=STAFF_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["net_cost_cents"] == 1500
        assert response.json()["state"] == "complete"

    def test_reservation_detail_is_refused_before_check_out(self, client, lab, db_session):
        product, account = lab
        reservation = ReservationService.request_reservation(
            db_session, product.id, account.id, 501, at(MONDAY, 13), at(MONDAY, 14), at=NOW
        )

        response = client.post(
            f"/api/order-details/{reservation.order_detail_id}/complete",
            json={"at": at(MONDAY, 14).isoformat()},
            headers=STAFF_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "invalid_transition"
        assert response.json()["detail"]["reservation_id"] == reservation.id


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
