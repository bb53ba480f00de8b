"""
Statement service: closes journal rows into numbered statements and records
settlement through the payment gateway.

Statement generation is safe to retry: rows are claimed with a conditional
UPDATE (`statement_id IS NULL`), and a run that finds nothing new returns the
account's latest statement for the same period.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.constants import STATEMENT_NUMBER_MAX_SERIAL
from core.exceptions import BusyError, CoreFacilityError, InvalidRangeError, NotFoundError
from core.locks import get_lock_registry, lock_row, statement_lock_key
from models import Account, JournalRow, Statement
from services.notification_service import STATEMENT_GENERATED, STATEMENT_SETTLED, NotificationService
from services.payment_gateway import PaymentGateway
from utils.datetime_utils import facility_now

logger = logging.getLogger(__name__)


def _numbering_lock_key(year: int) -> tuple:
    return ("statement_number", year)


class StatementService:
    """Service for statement operations."""

    @staticmethod
    def generate_statement_number(db: Session, year: Optional[int] = None) -> str:
        """
        Generate the next sequential statement number for a year.

        Format: {YYYY}-{NNNNN}. Callers must hold the year's numbering lock;
        the unique constraint on statement_number backs it up across processes.

        Raises:
            CoreFacilityError: If the year's sequence is exhausted
        """
        year = year or facility_now().year
        prefix = f"{year}-"
        latest = db.query(func.max(Statement.statement_number)).filter(
            Statement.statement_number.like(f"{prefix}%")
        ).scalar()
        serial = int(latest[len(prefix):]) + 1 if latest else 1
        if serial > STATEMENT_NUMBER_MAX_SERIAL:
            raise CoreFacilityError(
                f"Statement number sequence exhausted for {year}. "
                f"Maximum of {STATEMENT_NUMBER_MAX_SERIAL:,} statements per year reached.",
                year=year,
            )
        return f"{prefix}{serial:05d}"

    @staticmethod
    def generate_statement(
        db: Session,
        account_id: int,
        period_start: date,
        period_end: date,
        actor_id: Optional[int] = None,
    ) -> Optional[Statement]:
        """
        Close the account's unstatemented journal rows dated within the period.

        Args:
            db: Database session
            account_id: Account to bill
            period_start: First journal date included
            period_end: Last journal date included
            actor_id: Who generated it (None for scheduled runs)

        Returns:
            The new statement; if nothing new is billable, the latest existing
            statement for the same account and period, or None if there is none

        Raises:
            InvalidRangeError: If period_end is before period_start
            NotFoundError: If the account does not exist
            BusyError: If a lock is held or a concurrent run claimed the rows
        """
        if period_end < period_start:
            raise InvalidRangeError(
                "Statement period end is before its start",
                range_start=period_start.isoformat(),
                range_end=period_end.isoformat(),
            )

        with get_lock_registry().hold(statement_lock_key(account_id)):
            account = lock_row(db, Account, account_id)
            if not account:
                raise NotFoundError(f"Account {account_id} not found", account_id=account_id)

            rows = db.query(JournalRow).filter(
                JournalRow.account_id == account_id,
                JournalRow.statement_id.is_(None),
                JournalRow.journal_date >= period_start,
                JournalRow.journal_date <= period_end,
            ).order_by(JournalRow.id).all()

            if not rows:
                db.rollback()
                existing = StatementService.latest_for_period(db, account_id, period_start, period_end)
                logger.info(
                    f"No unstatemented rows for account {account_id} in {period_start} - {period_end}; "
                    f"returning {existing.statement_number if existing else 'no statement'}"
                )
                return existing

            year = facility_now().year
            with get_lock_registry().hold(_numbering_lock_key(year)):
                statement = Statement(
                    account_id=account_id,
                    statement_number=StatementService.generate_statement_number(db, year),
                    period_start=period_start,
                    period_end=period_end,
                    total_cents=sum(row.amount_cents for row in rows),
                    row_count=len(rows),
                    created_by_user_id=actor_id,
                    payment_status='unpaid',
                )
                db.add(statement)
                try:
                    db.flush()
                    row_ids = [row.id for row in rows]
                    claimed = db.execute(
                        update(JournalRow).where(
                            JournalRow.id.in_(row_ids),
                            JournalRow.statement_id.is_(None),
                        ).values(statement_id=statement.id).execution_options(synchronize_session=False)
                    ).rowcount
                    if claimed != len(row_ids):
                        db.rollback()
                        raise BusyError(
                            f"Journal rows of account {account_id} were claimed by a concurrent statement run; retry",
                            account_id=account_id,
                        )
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    logger.warning(f"Statement number collision for account {account_id}: {e}")
                    raise BusyError(
                        f"Statement numbering collided with a concurrent run for account {account_id}; retry",
                        account_id=account_id,
                    ) from e

        logger.info(
            f"Generated statement {statement.statement_number} for account {account_id}: "
            f"{statement.row_count} row(s), total {statement.total_cents} cents"
        )
        NotificationService.publish(STATEMENT_GENERATED, StatementService.event_payload(statement))
        return statement

    @staticmethod
    def latest_for_period(db: Session, account_id: int, period_start: date, period_end: date) -> Optional[Statement]:
        return db.query(Statement).filter(
            Statement.account_id == account_id,
            Statement.period_start == period_start,
            Statement.period_end == period_end,
        ).order_by(Statement.id.desc()).first()

    @staticmethod
    def accounts_pending_statement(db: Session, period_start: date, period_end: date) -> List[int]:
        """Accounts with unstatemented journal rows dated within the period."""
        rows = db.query(JournalRow.account_id).filter(
            JournalRow.statement_id.is_(None),
            JournalRow.journal_date >= period_start,
            JournalRow.journal_date <= period_end,
        ).distinct().all()
        return sorted(row[0] for row in rows)

    @staticmethod
    def settle_statement(
        db: Session,
        statement_id: int,
        gateway: PaymentGateway,
        at: Optional[datetime] = None,
    ) -> Statement:
        """
        Charge a statement's total through the payment gateway and record the outcome.

        Already-paid statements are returned unchanged. Statements with a
        non-positive total are marked paid without calling the gateway.
        Exceptions raised by the gateway propagate with nothing recorded.

        Raises:
            NotFoundError: If the statement does not exist
        """
        now = at or facility_now()
        statement = db.query(Statement).filter(Statement.id == statement_id).first()
        if not statement:
            raise NotFoundError(f"Statement {statement_id} not found", statement_id=statement_id)

        with get_lock_registry().hold(statement_lock_key(statement.account_id)):
            statement = lock_row(db, Statement, statement_id)
            if statement.payment_status == 'paid':
                db.rollback()
                return statement

            if statement.total_cents <= 0:
                statement.payment_status = 'paid'
                statement.paid_at = now
                statement.payment_message = "Nothing to charge"
            else:
                try:
                    result = gateway.charge(statement.total_cents, statement.account)
                except Exception:
                    db.rollback()
                    raise
                if result.success:
                    statement.payment_status = 'paid'
                    statement.paid_at = now
                    statement.payment_reference = result.reference
                else:
                    statement.payment_status = 'failed'
                statement.payment_message = result.message
            db.commit()

        logger.info(f"Statement {statement.statement_number} settlement: {statement.payment_status}")
        NotificationService.publish(STATEMENT_SETTLED, StatementService.event_payload(statement))
        return statement

    @staticmethod
    def event_payload(statement: Statement) -> dict:
        return {
            "statement_id": statement.id,
            "statement_number": statement.statement_number,
            "account_id": statement.account_id,
            "period_start": statement.period_start.isoformat(),
            "period_end": statement.period_end.isoformat(),
            "total_cents": statement.total_cents,
            "payment_status": statement.payment_status,
        }
