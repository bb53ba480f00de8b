"""
Integration tests for price policy resolution, policy locking, usage caps
and order detail completion.
"""

from datetime import date, timedelta
from unittest.mock import patch

import pytest

from core.exceptions import (
    CapExceededError, CoreFacilityError, InvalidPolicyError, InvalidTransitionError, NoPolicyFoundError,
    PolicyLockedError,
)
from core.locks import lock_row
from models import Account, OrderDetail, Reservation
from services.order_service import OrderService
from services.price_policy_service import PricePolicyService
from services.reservation_service import ReservationService
from shared_types.billing import Usage
from utils.datetime_utils import facility_now
from factories import (
    MONDAY, NOW, at, create_account, create_facility, create_policy, create_price_group, create_product,
    setup_instrument,
)

USER_ID = 501


@pytest.fixture
def supplies(db_session):
    """Facility with a consumable item, an account and an internal group without policies."""
    facility = create_facility(db_session)
    item = create_product(db_session, facility, kind="item", name="Deuterated solvent")
    account = create_account(db_session)
    group = create_price_group(db_session, accounts=[account])
    return facility, item, account, group


def order_item(db, facility, product, account, quantity=1) -> OrderDetail:
    order = OrderService.create_order(
        db, account.id, USER_ID, facility.id, [{"product_id": product.id, "quantity": quantity}]
    )
    OrderService.place_order(db, order.id, at=NOW)
    return order.details[0]


def use_instrument(db, product, account, day, start_hour, end_hour) -> OrderDetail:
    """Book, check in and check out a session; returns its order detail."""
    reservation = ReservationService.request_reservation(
        db, product.id, account.id, USER_ID, at(day, start_hour), at(day, end_hour), at=NOW
    )
    ReservationService.start_reservation(db, reservation.id, at=at(day, start_hour))
    ReservationService.end_reservation(db, reservation.id, at=at(day, end_hour))
    return reservation.order_detail


class TestPolicyResolution:
    """Which policy prices a (product, account, date)."""

    def test_configured_priority_wins(self, db_session, supplies):
        facility, item, account, internal = supplies
        external = create_price_group(db_session, name="External", accounts=[account], display_order=5)
        create_policy(db_session, item, internal, rate_type="unit", unit_rate_cents=500)
        preferred = create_policy(db_session, item, external, rate_type="unit", unit_rate_cents=900)
        facility.settings = {"pricing_settings": {"price_group_priority": [external.id]}}
        db_session.commit()

        assert PricePolicyService.resolve(db_session, item, account.id, MONDAY).id == preferred.id

    def test_unlisted_groups_rank_by_display_order(self, db_session, supplies):
        _, item, account, internal = supplies
        later = create_price_group(db_session, name="Cancer Center", accounts=[account], display_order=3)
        first = create_policy(db_session, item, internal, rate_type="unit", unit_rate_cents=500)
        create_policy(db_session, item, later, rate_type="unit", unit_rate_cents=300)

        assert PricePolicyService.resolve(db_session, item, account.id, MONDAY).id == first.id

    def test_latest_start_date_wins_within_group(self, db_session, supplies):
        _, item, account, group = supplies
        old = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, start_date=date(2029, 1, 1))
        new = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=550, start_date=date(2029, 7, 1))

        assert PricePolicyService.resolve(db_session, item, account.id, MONDAY).id == new.id
        assert PricePolicyService.resolve(db_session, item, account.id, date(2029, 3, 1)).id == old.id

    def test_expired_and_blocked_policies_are_skipped(self, db_session, supplies):
        _, item, account, group = supplies
        policy = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        PricePolicyService.expire_policy(db_session, policy.id, date(2029, 12, 31))
        create_policy(
            db_session, item, group, rate_type="unit", unit_rate_cents=500,
            start_date=date(2030, 1, 1), can_purchase=False,
        )

        with pytest.raises(NoPolicyFoundError) as exc_info:
            PricePolicyService.resolve(db_session, item, account.id, MONDAY)
        assert exc_info.value.to_detail()["price_group_ids"] == [group.id]

    def test_orderer_membership_counts(self, db_session, supplies):
        _, item, _, _ = supplies
        other_account = create_account(db_session, number="ACCT-2")
        lab_group = create_price_group(db_session, name="Lab members", user_ids=[USER_ID])
        policy = create_policy(db_session, item, lab_group, rate_type="unit", unit_rate_cents=400)

        with pytest.raises(NoPolicyFoundError):
            PricePolicyService.resolve(db_session, item, other_account.id, MONDAY)
        assert PricePolicyService.resolve(db_session, item, other_account.id, MONDAY, user_id=USER_ID).id == policy.id

    def test_other_facility_group_is_ignored(self, db_session, supplies):
        _, item, account, _ = supplies
        other = create_facility(db_session, abbreviation="MS")
        foreign = create_price_group(db_session, name="MS internal", accounts=[account], facility=other)
        create_policy(db_session, item, foreign, rate_type="unit", unit_rate_cents=100)

        with pytest.raises(NoPolicyFoundError):
            PricePolicyService.resolve(db_session, item, account.id, MONDAY)

    def test_resolution_is_stable(self, db_session, supplies):
        _, item, account, group = supplies
        external = create_price_group(db_session, name="External", accounts=[account], display_order=5)
        current = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        create_policy(db_session, item, external, rate_type="unit", unit_rate_cents=900)

        first = [PricePolicyService.resolve(db_session, item, account.id, MONDAY).id for _ in range(3)]
        create_policy(
            db_session, item, group, rate_type="unit", unit_rate_cents=450, start_date=MONDAY + timedelta(days=1),
        )
        after_future_policy = [PricePolicyService.resolve(db_session, item, account.id, MONDAY).id for _ in range(3)]

        assert first == [current.id] * 3
        assert after_future_policy == [current.id] * 3


class TestPolicyAdministration:
    """Validation and locking of policy versions."""

    def test_started_and_priced_policy_is_locked(self, db_session, supplies):
        facility, item, account, group = supplies
        policy = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, start_date=date(2020, 1, 1))
        detail = order_item(db_session, facility, item, account, quantity=2)
        OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))

        assert PricePolicyService.is_locked(db_session, policy)
        with pytest.raises(PolicyLockedError):
            PricePolicyService.update_policy(db_session, policy.id, unit_rate_cents=700)
        with pytest.raises(PolicyLockedError):
            PricePolicyService.expire_policy(db_session, policy.id, facility_now().date() - timedelta(days=1))

        expired = PricePolicyService.expire_policy(db_session, policy.id, facility_now().date() + timedelta(days=30))
        assert expired.expire_date == facility_now().date() + timedelta(days=30)
        assert detail.net_cost_cents == 1000

    def test_future_policy_stays_editable(self, db_session, supplies):
        facility, item, account, group = supplies
        policy = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        detail = order_item(db_session, facility, item, account)
        OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))

        updated = PricePolicyService.update_policy(db_session, policy.id, unit_rate_cents=600)

        assert updated.unit_rate_cents == 600
        # Frozen cost is not recomputed
        assert detail.net_cost_cents == 500

    def test_identity_fields_cannot_change(self, db_session, supplies):
        _, item, _, group = supplies
        policy = create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)

        with pytest.raises(InvalidPolicyError):
            PricePolicyService.update_policy(db_session, policy.id, product_id=99)

    @pytest.mark.parametrize("fields", [
        {"subsidy_basis_points": 5000, "subsidy_amount_cents": 100},
        {"subsidy_basis_points": 12000},
        {"unit_rate_cents": -1},
        {"cap_mode": "ignore"},
        {"note_to_self": "x"},
    ])
    def test_malformed_definitions(self, db_session, supplies, fields):
        _, item, _, group = supplies

        with pytest.raises(InvalidPolicyError):
            create_policy(db_session, item, group, rate_type="unit", **fields)

    def test_bracket_amounts_must_not_decrease(self, db_session, supplies):
        facility, _, _, group = supplies
        instrument = create_product(db_session, facility)

        with pytest.raises(InvalidPolicyError):
            create_policy(db_session, instrument, group, rate_type="duration_bracket", rate_table={"brackets": [
                {"up_to_minutes": 60, "amount_cents": 5000},
                {"up_to_minutes": 120, "amount_cents": 4000},
            ]})


class TestUsageCaps:
    """Prior usage read from committed details."""

    def test_reject_mode_leaves_detail_unpriced(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, usage_cap=10, cap_mode="reject")
        first = order_item(db_session, facility, item, account, quantity=8)
        second = order_item(db_session, facility, item, account, quantity=5)
        OrderService.complete_order_detail(db_session, first.id, at=at(MONDAY, 12))

        with pytest.raises(CapExceededError) as exc_info:
            OrderService.complete_order_detail(db_session, second.id, at=at(MONDAY, 13))

        assert exc_info.value.excess == 3
        assert exc_info.value.prior_usage == 8
        assert second.state == "inprocess"
        assert second.net_cost_cents is None

        OrderService.complete_order_detail(db_session, second.id, actual_usage=Usage(quantity=2), at=at(MONDAY, 13))
        assert second.net_cost_cents == 1000

    def test_fallback_mode_bills_excess(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(
            db_session, item, group, rate_type="unit", unit_rate_cents=500,
            usage_cap=10, cap_mode="fallback", fallback_rate_cents=800,
        )
        first = order_item(db_session, facility, item, account, quantity=8)
        second = order_item(db_session, facility, item, account, quantity=5)
        OrderService.complete_order_detail(db_session, first.id, at=at(MONDAY, 12))
        OrderService.complete_order_detail(db_session, second.id, at=at(MONDAY, 13))

        assert second.net_cost_cents == 2 * 500 + 3 * 800
        assert second.billed_quantity == 5
        assert OrderService.get_usage_to_date(
            db_session, account.id, item.id, at(date(2030, 1, 1), 0), at(date(2030, 2, 1), 0)
        ) == 13

    def test_cap_resets_each_period(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, usage_cap=10)
        january = order_item(db_session, facility, item, account, quantity=8)
        february = order_item(db_session, facility, item, account, quantity=8)
        OrderService.complete_order_detail(db_session, january.id, at=at(MONDAY, 12))
        OrderService.complete_order_detail(db_session, february.id, at=at(date(2030, 2, 4), 12))

        assert february.net_cost_cents == 4000

    @pytest.mark.parametrize("cap_mode, expected_net", [("reject", None), ("fallback", 6000 + 9000)])
    def test_monthly_hour_cap_on_instrument(self, db_session, cap_mode, expected_net):
        """10 hours a month: 9 hours used, then a 2-hour session."""
        _, product, account, _, policy = setup_instrument(db_session)
        PricePolicyService.update_policy(
            db_session, policy.id, usage_cap=600, cap_mode=cap_mode, fallback_rate_cents=9000,
        )
        use_instrument(db_session, product, account, MONDAY, 9, 17)
        use_instrument(db_session, product, account, MONDAY + timedelta(days=7), 9, 10)
        assert OrderService.get_usage_to_date(
            db_session, account.id, product.id, at(date(2030, 1, 1), 0), at(date(2030, 2, 1), 0)
        ) == 540

        third_monday = MONDAY + timedelta(days=14)
        if cap_mode == "reject":
            with pytest.raises(CapExceededError) as exc_info:
                use_instrument(db_session, product, account, third_monday, 10, 12)
            assert (exc_info.value.cap, exc_info.value.prior_usage, exc_info.value.excess) == (600, 540, 60)
            reservation = db_session.query(Reservation).filter(Reservation.reserve_start_at == at(third_monday, 10)).one()
            assert reservation.status == "completed"
            assert reservation.order_detail.state == "inprocess"
        else:
            detail = use_instrument(db_session, product, account, third_monday, 10, 12)
            assert detail.net_cost_cents == expected_net
            assert detail.billed_quantity == 120

    def test_cap_evaluation_locks_the_account_row(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500, usage_cap=10)
        detail = order_item(db_session, facility, item, account, quantity=2)

        with patch("services.order_service.lock_row", wraps=lock_row) as locked:
            OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))

        assert [call.args[1:] for call in locked.call_args_list] == [(Account, account.id), (OrderDetail, detail.id)]


class TestOrderDetailLifecycle:
    """Completion, problems and resolution."""

    def test_completion_without_policy(self, db_session, supplies):
        facility, item, account, _ = supplies
        detail = order_item(db_session, facility, item, account)

        with pytest.raises(NoPolicyFoundError):
            OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))
        assert detail.state == "inprocess"

    def test_unplaced_order_cannot_complete(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        order = OrderService.create_order(db_session, account.id, USER_ID, facility.id, [{"product_id": item.id}])

        with pytest.raises(InvalidTransitionError):
            OrderService.complete_order_detail(db_session, order.details[0].id, at=at(MONDAY, 12))

    def test_problem_and_manual_resolution(self, db_session, supplies, events):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        detail = order_item(db_session, facility, item, account, quantity=3)
        OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))

        OrderService.mark_problem(db_session, detail.id, "Wrong lot billed")
        with pytest.raises(InvalidTransitionError):
            OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 13))
        OrderService.resolve_problem(db_session, detail.id, actual_cost_cents=1200, subsidy_cents=200, at=at(MONDAY, 14))

        assert detail.state == "complete"
        assert detail.net_cost_cents == 1000
        assert detail.problem_resolved_at == at(MONDAY, 14)
        assert "order_detail.problem" in events.types()

    def test_resolution_can_reprice(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        detail = order_item(db_session, facility, item, account, quantity=3)
        OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))
        OrderService.mark_problem(db_session, detail.id, "Only two used")

        OrderService.resolve_problem(db_session, detail.id, reprice=True, actual_usage=Usage(quantity=2))

        assert detail.net_cost_cents == 1000
        assert detail.fulfilled_at == at(MONDAY, 12)

    def test_invalid_override(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        detail = order_item(db_session, facility, item, account)
        OrderService.complete_order_detail(db_session, detail.id, at=at(MONDAY, 12))
        OrderService.mark_problem(db_session, detail.id, "Check")

        with pytest.raises(CoreFacilityError) as exc_info:
            OrderService.resolve_problem(db_session, detail.id, actual_cost_cents=100, subsidy_cents=200)
        assert exc_info.value.to_detail()["subsidy_cents"] == 200
        assert detail.state == "problem"

    def test_resolve_requires_problem_state(self, db_session, supplies):
        facility, item, account, group = supplies
        create_policy(db_session, item, group, rate_type="unit", unit_rate_cents=500)
        detail = order_item(db_session, facility, item, account)

        with pytest.raises(InvalidTransitionError):
            OrderService.resolve_problem(db_session, detail.id, actual_cost_cents=100)

    def test_cancel_order_detail(self, db_session, supplies):
        facility, item, account, _ = supplies
        detail = order_item(db_session, facility, item, account)

        OrderService.cancel_order_detail(db_session, detail.id, at=at(MONDAY, 9))

        assert detail.state == "cancelled"
        assert detail.canceled_at == at(MONDAY, 9)
