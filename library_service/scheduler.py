"""
Deferred actions: return reminders and automatic restocks.

Timers live in memory only, keyed by borrow id (reminders) and book id
(restocks). At most one timer is pending per key: registering again cancels
the previous timer first. A firing drops its own map entry before doing any
work, so a failing callback never blocks later registrations for that key.

Pending timers are lost when the process exits.
"""
import logging
import threading
from decimal import Decimal

from sqlalchemy import select

from .clock import SystemClock
from .models import (
    Book,
    BookAction,
    BookActionType,
    MovementDirection,
    WalletMovementType,
)

logger = logging.getLogger(__name__)


class DeferredActionScheduler:
    def __init__(self, db, wallet, notifier, clock=None,
                 supply_email="supply@library.com", timer_factory=None):
        self.db = db
        self.wallet = wallet
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.supply_email = supply_email
        self._timer_factory = timer_factory or threading.Timer
        self._lock = threading.Lock()
        self._reminders = {}
        self._restocks = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def schedule_return_reminder(self, borrow_id, user_email, book_id, due_at):
        delay = (due_at - self.clock.now()).total_seconds()
        self._arm(
            self._reminders,
            borrow_id,
            delay,
            self.send_return_reminder,
            (borrow_id, user_email, book_id, due_at),
        )
        logger.info("Return reminder for borrow %s armed for %s", borrow_id, due_at.isoformat())

    def cancel_return_reminder(self, borrow_id) -> bool:
        cancelled = self._cancel(self._reminders, borrow_id)
        if cancelled:
            logger.info("Return reminder for borrow %s cancelled", borrow_id)
        return cancelled

    def schedule_restock(self, book_id, delay_seconds):
        self._arm(self._restocks, book_id, delay_seconds, self.run_restock, (book_id,))
        logger.info("Restock for book %s armed in %ss", book_id, delay_seconds)

    def cancel_restock(self, book_id) -> bool:
        return self._cancel(self._restocks, book_id)

    def pending_reminders(self):
        with self._lock:
            return sorted(self._reminders)

    def pending_restocks(self):
        with self._lock:
            return sorted(self._restocks)

    def shutdown(self):
        with self._lock:
            entries = list(self._reminders.values()) + list(self._restocks.values())
            self._reminders.clear()
            self._restocks.clear()
        for _, timer in entries:
            timer.cancel()
        if entries:
            logger.info("Scheduler stopped; dropped %d pending timers", len(entries))

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def send_return_reminder(self, borrow_id, user_email, book_id, due_at):
        with self.db.transaction() as session:
            session.add(
                BookAction(
                    type=BookActionType.REMINDER_SENT,
                    book_id=book_id,
                    quantity=1,
                    due_at=due_at,
                    meta={
                        "borrowId": borrow_id,
                        "userEmail": user_email,
                        "dueAt": due_at.isoformat(),
                    },
                    created_at=self.clock.now(),
                )
            )
        logger.info("Return reminder for borrow %s sent to %s", borrow_id, user_email)

        self.notifier.notify(
            user_email,
            "Library return reminder",
            f"Reminder: please return bookId={book_id} by {due_at.isoformat()}.",
        )

    def run_restock(self, book_id) -> int:
        """
        Bring a book back to its seeded stock, paying the stock price for
        each missing copy. The deficit is read now, not when the job was
        scheduled; nothing happens if stock is already at target.

        Returns the number of copies added.
        """
        with self.db.transaction() as session:
            book = session.execute(
                select(Book).where(Book.id == book_id).with_for_update()
            ).scalar_one_or_none()
            if book is None:
                logger.warning("Restock skipped: book %s no longer exists", book_id)
                return 0

            needed = book.copies_seeded - book.copies_available
            if needed <= 0:
                logger.info("Restock skipped: book %s already at %s/%s",
                            book_id, book.copies_available, book.copies_seeded)
                return 0

            unit_price = Decimal(book.stock_price)
            cost = unit_price * needed
            title = book.title

            book.copies_available += needed
            session.add(
                BookAction(
                    type=BookActionType.RESTOCKED,
                    book_id=book_id,
                    quantity=needed,
                    price_per_unit=unit_price,
                    total=cost,
                    meta={"auto": True},
                    created_at=self.clock.now(),
                )
            )
            self.wallet.record_movement(
                session,
                WalletMovementType.RESTOCK_COST,
                MovementDirection.DEBIT,
                cost,
                book_id=book_id,
                note=f"Auto restock {needed} copies",
            )

        logger.info("Restocked book %s with %d copies for %s", book_id, needed, cost)
        self.notifier.notify(
            self.supply_email,
            f"Restock completed for book {title}",
            f"Restock completed for bookId={book_id}. Added {needed} copies.",
        )
        return needed

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _arm(self, timers, key, delay, job, args):
        token = object()
        timer = self._timer_factory(
            max(0.0, delay), self._fire, args=(timers, key, token, job, args)
        )
        timer.daemon = True
        with self._lock:
            previous = timers.pop(key, None)
            if previous is not None:
                previous[1].cancel()
            timers[key] = (token, timer)
            timer.start()

    def _cancel(self, timers, key) -> bool:
        with self._lock:
            entry = timers.pop(key, None)
        if entry is None:
            return False
        entry[1].cancel()
        return True

    def _fire(self, timers, key, token, job, args):
        with self._lock:
            entry = timers.get(key)
            if entry is None or entry[0] is not token:
                # cancelled or superseded after the timer thread woke up
                return
            del timers[key]

        try:
            job(*args)
        except Exception:
            logger.exception("Deferred job %s for key %s failed", job.__name__, key)
