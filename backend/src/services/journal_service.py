"""
Journal service: turns complete, priced order details into journal rows.

Each run claims the account's eligible details with a single conditional
UPDATE (`journal_id IS NULL`), so concurrent runs can never claim the same
detail; the partial unique index on journal_rows is the database backstop.
"""

import logging
from datetime import date, datetime, time
from typing import List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import BusyError, InvalidTransitionError, NotFoundError
from core.locks import get_lock_registry, journal_lock_key, lock_row
from models import Account, Journal, JournalRow, OrderDetail
from services.notification_service import JOURNAL_CREATED, NotificationService
from services.order_service import OrderService
from shared_types.product_kinds import RatingStrategy
from shared_types.states import OrderDetailState
from utils.datetime_utils import facility_now

logger = logging.getLogger(__name__)


def _cutoff(as_of: Union[date, datetime]) -> datetime:
    """Details fulfilled at or before this instant are eligible."""
    if isinstance(as_of, datetime):
        return as_of
    return datetime.combine(as_of, time.max)


class JournalService:
    """
    Service class for journaling and reversals.
    """

    @staticmethod
    def run_journal_batch(
        db: Session,
        account_id: int,
        as_of: Union[date, datetime],
        actor_id: Optional[int] = None,
    ) -> List[JournalRow]:
        """
        Journal every complete, unjournaled detail of an account fulfilled on or before as_of.

        Args:
            db: Database session
            account_id: Account to journal
            as_of: Date (inclusive) or instant up to which details are eligible
            actor_id: Who ran the batch (None for scheduled runs)

        Returns:
            The rows created, one per claimed detail (empty if nothing was eligible)

        Raises:
            NotFoundError: If the account does not exist
            BusyError: If the account's journal lock is held, or a concurrent run won the claim
        """
        cutoff = _cutoff(as_of)
        journal_date = cutoff.date()
        now = facility_now()

        with get_lock_registry().hold(journal_lock_key(account_id)):
            account = lock_row(db, Account, account_id)
            if not account:
                raise NotFoundError(f"Account {account_id} not found", account_id=account_id)

            run_number = db.query(Journal).filter(Journal.account_id == account_id).count() + 1
            journal = Journal(
                account_id=account_id,
                journal_date=journal_date,
                reference=f"J-{account_id}-{journal_date:%Y%m%d}-{run_number}",
                created_by_user_id=actor_id,
            )
            db.add(journal)
            db.flush()

            claim = update(OrderDetail).where(
                OrderDetail.account_id == account_id,
                OrderDetail.state == OrderDetailState.COMPLETE.value,
                OrderDetail.journal_id.is_(None),
                OrderDetail.net_cost_cents.is_not(None),
                OrderDetail.fulfilled_at <= cutoff,
            ).values(journal_id=journal.id, journaled_at=now).execution_options(synchronize_session=False)
            claimed_count = db.execute(claim).rowcount

            if not claimed_count:
                db.rollback()
                logger.info(f"Journal run for account {account_id} as of {journal_date}: nothing to journal")
                return []

            details = db.query(OrderDetail).filter(
                OrderDetail.journal_id == journal.id
            ).populate_existing().order_by(OrderDetail.id).all()

            rows: List[JournalRow] = []
            for detail in details:
                row = JournalRow(
                    journal_id=journal.id,
                    order_detail_id=detail.id,
                    account_id=account_id,
                    amount_cents=detail.net_cost_cents,
                    description=JournalService.describe(detail),
                    journal_date=journal_date,
                )
                db.add(row)
                rows.append(row)

            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.warning(f"Journal run for account {account_id} lost a claim race: {e}")
                raise BusyError(
                    f"A concurrent journal run claimed order details of account {account_id}; retry",
                    account_id=account_id,
                ) from e

        total = sum(row.amount_cents for row in rows)
        logger.info(
            f"Journal {journal.reference}: {len(rows)} row(s) for account {account_id}, total {total} cents"
        )
        NotificationService.publish(JOURNAL_CREATED, {
            "journal_id": journal.id,
            "reference": journal.reference,
            "account_id": account_id,
            "row_count": len(rows),
            "total_cents": total,
        })
        return rows

    @staticmethod
    def reverse_order_detail(
        db: Session,
        order_detail_id: int,
        reason: str,
        actor_id: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> JournalRow:
        """
        Reverse a journaled detail so its cost can be corrected.

        Voids the detail's active row, appends a negative reversal row (picked
        up by the next statement) and moves the detail to 'problem' with the
        reason. Resolving the problem returns it to 'complete', and the next
        journal run journals it again.

        Returns:
            The reversal row

        Raises:
            NotFoundError: If the detail does not exist
            InvalidTransitionError: If the detail has no active journal row
        """
        now = at or facility_now()
        detail = OrderService.get_order_detail(db, order_detail_id)

        with get_lock_registry().hold(journal_lock_key(detail.account_id)):
            detail = lock_row(db, OrderDetail, order_detail_id)
            active = db.query(JournalRow).filter(
                JournalRow.order_detail_id == order_detail_id,
                JournalRow.is_voided.is_(False),
                JournalRow.is_reversal.is_(False),
            ).first()
            if not active:
                db.rollback()
                raise InvalidTransitionError(
                    f"Order detail {order_detail_id} has no active journal row to reverse",
                    entity="order_detail",
                    entity_id=order_detail_id,
                )

            active.is_voided = True
            active.voided_at = now
            active.void_reason = reason
            active.voided_by_user_id = actor_id

            reversal = JournalRow(
                journal_id=None,
                order_detail_id=order_detail_id,
                account_id=active.account_id,
                amount_cents=-active.amount_cents,
                description=f"Reversal of journal row {active.id}: {reason}"[:255],
                journal_date=now.date(),
                is_reversal=True,
                reverses_row_id=active.id,
            )
            db.add(reversal)

            detail.journal_id = None
            detail.journaled_at = None
            OrderService.apply_problem(detail, reason)
            db.commit()

        logger.info(f"Reversed journal row {active.id} of order detail {order_detail_id}: {reason}")
        return reversal

    @staticmethod
    def accounts_pending_journal(db: Session, as_of: Union[date, datetime]) -> List[int]:
        """Accounts with complete, priced details not yet journaled."""
        rows = db.query(OrderDetail.account_id).filter(
            OrderDetail.state == OrderDetailState.COMPLETE.value,
            OrderDetail.journal_id.is_(None),
            OrderDetail.net_cost_cents.is_not(None),
            OrderDetail.fulfilled_at <= _cutoff(as_of),
        ).distinct().all()
        return sorted(row[0] for row in rows)

    @staticmethod
    def describe(detail: OrderDetail) -> str:
        product = detail.product
        if detail.is_cancellation_fee:
            usage = "cancellation/no-show fee"
        elif detail.reservation is not None:
            reservation = detail.reservation
            usage = f"{reservation.reserve_start_at:%Y-%m-%d %H:%M}, {detail.billed_quantity or 0} min"
        elif product.capabilities.rating == RatingStrategy.DURATION:
            usage = f"{detail.billed_quantity or 0} min"
        else:
            usage = f"qty {detail.billed_quantity or detail.quantity}"
        return f"{product.name} ({usage}) order {detail.order_id}/{detail.id}"[:255]
