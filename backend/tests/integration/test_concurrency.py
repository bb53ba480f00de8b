"""
Concurrency tests: competing bookings and journal runs from separate threads,
each with its own session on a shared file-backed database.
"""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from core.exceptions import ConflictError
from models import JournalRow, OrderDetail, Reservation
from services.billing_task_queue import TASK_JOURNAL, BillingTaskQueue
from services.journal_service import JournalService
from services.reservation_service import ReservationService
from factories import MONDAY, NOW, at, setup_instrument

USER_ID = 501
THREADS = 6


def attempt_booking(session_factory, product_id, account_id, start, end):
    session = session_factory()
    try:
        reservation = ReservationService.request_reservation(
            session, product_id, account_id, USER_ID, start, end, at=NOW
        )
        return ("confirmed", reservation.id)
    except ConflictError:
        return ("conflict", None)
    finally:
        session.close()


def complete_hours(session, product, account, hours):
    for hour in hours:
        reservation = ReservationService.request_reservation(
            session, product.id, account.id, USER_ID, at(MONDAY, hour), at(MONDAY, hour + 1), at=NOW
        )
        ReservationService.start_reservation(session, reservation.id, at=at(MONDAY, hour))
        ReservationService.end_reservation(session, reservation.id, at=at(MONDAY, hour + 1))


class TestConcurrentBooking:
    """Identical requests racing for the same slot."""

    def test_single_winner_for_capacity_one(self, file_session_factory):
        setup = file_session_factory()
        _, product, account, _, _ = setup_instrument(setup)
        product_id, account_id = product.id, account.id
        setup.close()

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            outcomes = list(pool.map(
                lambda _: attempt_booking(
                    file_session_factory, product_id, account_id, at(MONDAY, 10), at(MONDAY, 11)
                ),
                range(THREADS),
            ))

        assert [status for status, _ in outcomes].count("confirmed") == 1
        assert [status for status, _ in outcomes].count("conflict") == THREADS - 1

        check = file_session_factory()
        try:
            assert check.query(Reservation).filter(Reservation.status == "confirmed").count() == 1
            assert check.query(OrderDetail).count() == 1
        finally:
            check.close()

    def test_capacity_is_never_exceeded(self, file_session_factory):
        setup = file_session_factory()
        _, product, account, _, _ = setup_instrument(setup, capacity=2)
        product_id, account_id = product.id, account.id
        setup.close()

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            outcomes = list(pool.map(
                lambda i: attempt_booking(
                    file_session_factory, product_id, account_id,
                    at(MONDAY, 10, 30 if i % 2 else 0), at(MONDAY, 11, 30 if i % 2 else 0),
                ),
                range(THREADS),
            ))

        assert [status for status, _ in outcomes].count("confirmed") == 2


class TestConcurrentJournal:
    """Journal runs for the same account from several threads."""

    def test_each_detail_journaled_once(self, file_session_factory):
        setup = file_session_factory()
        _, product, account, _, _ = setup_instrument(setup)
        complete_hours(setup, product, account, [9, 10, 11, 12])
        account_id = account.id
        setup.close()

        def run(_):
            session = file_session_factory()
            try:
                return len(JournalService.run_journal_batch(session, account_id, MONDAY))
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            counts = list(pool.map(run, range(THREADS)))

        assert sorted(counts) == [0] * (THREADS - 1) + [4]
        check = file_session_factory()
        try:
            rows = check.query(JournalRow).all()
            assert len(rows) == 4
            assert len({row.order_detail_id for row in rows}) == 4
            assert sum(row.amount_cents for row in rows) == 24000
        finally:
            check.close()

    def test_task_queue_runs_journal_tasks(self, file_session_factory):
        setup = file_session_factory()
        _, product, account, _, _ = setup_instrument(setup)
        complete_hours(setup, product, account, [9, 10])
        account_id = account.id
        setup.close()

        @contextmanager
        def session_context():
            session = file_session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        queue = BillingTaskQueue(workers=3, session_factory=session_context, sleep=lambda _: None)
        queue.start()
        try:
            futures = [queue.submit(TASK_JOURNAL, account_id=account_id, as_of=MONDAY) for _ in range(3)]
            results = [future.result(timeout=30) for future in futures]
        finally:
            queue.shutdown()

        assert sorted(results) == [0, 0, 2]
        assert queue.dead_letters == []
