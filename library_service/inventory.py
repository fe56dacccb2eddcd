"""
Inventory engine: borrow, buy and return.

Each operation is one transaction. The actor's User row and the Book row are
locked (always in that order) before any rule is checked, so the stock,
active-borrow and purchase-limit checks see the same data the write does.
Timers and notifications are only touched after the commit and their failures
are logged, never raised to the caller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from .clock import SystemClock
from .errors import BadRequest, Conflict, NotFound
from .models import (
    Book,
    BookAction,
    BookActionType,
    Borrow,
    BorrowStatus,
    MovementDirection,
    User,
    WalletMovementType,
)

logger = logging.getLogger(__name__)

MAX_ACTIVE_BORROWS = 3
MAX_BUY_PER_BOOK = 2
MAX_BUY_TOTAL = 10
LOW_STOCK_LEVEL = 1


@dataclass(frozen=True)
class BorrowResult:
    borrow_id: int
    due_at: datetime
    copies_available: int


@dataclass(frozen=True)
class BuyResult:
    quantity: int
    total: Decimal
    copies_available: int


@dataclass(frozen=True)
class ReturnResult:
    returned_at: datetime
    copies_available: int


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _require_email(user_email) -> str:
    email = (user_email or "").strip().lower()
    if not email:
        raise BadRequest("User email is required")
    return email


class InventoryEngine:
    def __init__(self, db, wallet, scheduler, clock=None, loan_period=timedelta(days=3),
                 restock_delay=3600, supply_email="supply@library.com"):
        self.db = db
        self.wallet = wallet
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.loan_period = loan_period
        self.restock_delay = restock_delay
        self.supply_email = supply_email

    # ----------------- borrow -----------------

    def borrow(self, user_email, book_id) -> BorrowResult:
        email = _require_email(user_email)
        if not _is_positive_int(book_id):
            raise BadRequest("Valid bookId positive integer is required")

        with self.db.transaction() as session:
            user = self._lock_or_create_user(session, email)
            book = self._lock_book(session, book_id)

            if book.copies_available <= 0:
                raise Conflict("No copies available")

            same_book_active = session.execute(
                select(Borrow.id)
                .where(
                    Borrow.user_id == user.id,
                    Borrow.book_id == book.id,
                    Borrow.status == BorrowStatus.BORROWED,
                )
                .limit(1)
            ).scalar_one_or_none()
            if same_book_active is not None:
                raise Conflict("You already borrowed this book")

            active_count = session.execute(
                select(func.count(Borrow.id)).where(
                    Borrow.user_id == user.id,
                    Borrow.status == BorrowStatus.BORROWED,
                )
            ).scalar_one()
            if active_count >= MAX_ACTIVE_BORROWS:
                raise Conflict(f"Borrow limit reached max {MAX_ACTIVE_BORROWS} active")

            now = self.clock.now()
            due_at = now + self.loan_period
            fee = Decimal(book.borrow_price)

            book.copies_available -= 1
            borrow = Borrow(
                user_id=user.id,
                book_id=book.id,
                quantity=1,
                borrowed_at=now,
                due_at=due_at,
                status=BorrowStatus.BORROWED,
                price_at_borrow=fee,
            )
            session.add(borrow)
            session.add(
                BookAction(
                    type=BookActionType.BORROW,
                    book_id=book.id,
                    user_id=user.id,
                    quantity=1,
                    price_per_unit=fee,
                    total=fee,
                    due_at=due_at,
                    created_at=now,
                )
            )
            milestone_reached = self.wallet.credit_borrow_revenue(
                session, fee, book_id=book.id, user_id=user.id
            )
            session.flush()

            borrow_id = borrow.id
            copies_after = book.copies_available
            copies_seeded = book.copies_seeded

        logger.info("Borrow %s: %s took book %s, %d left", borrow_id, email, book_id, copies_after)

        try:
            self.scheduler.schedule_return_reminder(borrow_id, email, book_id, due_at)
        except Exception:
            logger.exception("Could not schedule return reminder for borrow %s", borrow_id)
        if milestone_reached:
            self.wallet.notify_milestone()
        if copies_after == LOW_STOCK_LEVEL:
            self._request_restock(book_id, copies_seeded)

        return BorrowResult(borrow_id=borrow_id, due_at=due_at, copies_available=copies_after)

    # ----------------- buy -----------------

    def buy(self, user_email, book_id, quantity=1) -> BuyResult:
        email = _require_email(user_email)
        if not _is_positive_int(book_id):
            raise BadRequest("Valid bookId is required")
        if quantity is None:
            quantity = 1
        if not _is_positive_int(quantity):
            raise BadRequest("quantity must be a positive integer")

        with self.db.transaction() as session:
            user = self._lock_or_create_user(session, email)
            book = self._lock_book(session, book_id)

            if book.copies_available < quantity:
                raise Conflict("Not enough copies available")

            bought_same = self._bought_quantity(session, user.id, book.id)
            bought_total = self._bought_quantity(session, user.id)
            if bought_same + quantity > MAX_BUY_PER_BOOK:
                raise Conflict(f"Limit: max {MAX_BUY_PER_BOOK} copies per same book")
            if bought_total + quantity > MAX_BUY_TOTAL:
                raise Conflict(f"Limit: max {MAX_BUY_TOTAL} copies across all books")

            unit_price = Decimal(book.sell_price)
            total_cost = unit_price * quantity

            book.copies_available -= quantity
            session.add(
                BookAction(
                    type=BookActionType.BUY,
                    book_id=book.id,
                    user_id=user.id,
                    quantity=quantity,
                    price_per_unit=unit_price,
                    total=total_cost,
                    created_at=self.clock.now(),
                )
            )
            self.wallet.record_movement(
                session,
                WalletMovementType.SELL_REVENUE,
                MovementDirection.CREDIT,
                total_cost,
                book_id=book.id,
                user_id=user.id,
                note=f"Sold {quantity} copies",
            )

            copies_after = book.copies_available
            copies_seeded = book.copies_seeded

        logger.info("Buy: %s bought %d of book %s, %d left", email, quantity, book_id, copies_after)

        if copies_after == LOW_STOCK_LEVEL:
            self._request_restock(book_id, copies_seeded)

        return BuyResult(quantity=quantity, total=total_cost, copies_available=copies_after)

    # ----------------- return -----------------

    def return_book(self, user_email, book_id) -> ReturnResult:
        email = _require_email(user_email)
        if not _is_positive_int(book_id):
            raise BadRequest("Valid bookId is required")

        with self.db.transaction() as session:
            user = session.execute(
                select(User).where(User.email == email).with_for_update()
            ).scalar_one_or_none()
            if user is None:
                raise NotFound("User not found")

            borrow = session.execute(
                select(Borrow)
                .where(
                    Borrow.user_id == user.id,
                    Borrow.book_id == book_id,
                    Borrow.status == BorrowStatus.BORROWED,
                )
                .with_for_update()
            ).scalars().first()
            if borrow is None:
                raise Conflict("No active borrow found for this book")

            book = self._lock_book(session, borrow.book_id)
            now = self.clock.now()

            borrow.status = BorrowStatus.RETURNED
            borrow.returned_at = now
            book.copies_available += 1
            session.add(
                BookAction(
                    type=BookActionType.RETURN,
                    book_id=book.id,
                    user_id=user.id,
                    quantity=1,
                    due_at=borrow.due_at,
                    meta={"borrowId": borrow.id},
                    created_at=now,
                )
            )

            borrow_id = borrow.id
            copies_after = book.copies_available

        logger.info("Return: %s returned book %s (borrow %s)", email, book_id, borrow_id)

        try:
            self.scheduler.cancel_return_reminder(borrow_id)
        except Exception:
            logger.exception("Could not cancel return reminder for borrow %s", borrow_id)

        return ReturnResult(returned_at=now, copies_available=copies_after)

    # ----------------- helpers -----------------

    def _lock_or_create_user(self, session, email) -> User:
        user = session.execute(
            select(User).where(User.email == email).with_for_update()
        ).scalar_one_or_none()
        if user is None:
            user = User(email=email, created_at=self.clock.now())
            session.add(user)
            session.flush()
            logger.info("Created user %s", email)
        return user

    def _lock_book(self, session, book_id) -> Book:
        book = session.execute(
            select(Book).where(Book.id == book_id).with_for_update()
        ).scalar_one_or_none()
        if book is None:
            raise NotFound("Book not found")
        return book

    def _bought_quantity(self, session, user_id, book_id=None) -> int:
        q = select(func.coalesce(func.sum(BookAction.quantity), 0)).where(
            BookAction.type == BookActionType.BUY,
            BookAction.user_id == user_id,
        )
        if book_id is not None:
            q = q.where(BookAction.book_id == book_id)
        return int(session.execute(q).scalar_one())

    def _request_restock(self, book_id, copies_seeded):
        try:
            with self.db.transaction() as session:
                session.add(
                    BookAction(
                        type=BookActionType.RESTOCK_REQUESTED,
                        book_id=book_id,
                        quantity=1,
                        meta={
                            "requestedAt": self.clock.now().isoformat(),
                            "reason": f"Low stock reached {LOW_STOCK_LEVEL}",
                        },
                        created_at=self.clock.now(),
                    )
                )
            logger.info(
                "[%s] Please restock bookId=%s to %s copies.",
                self.supply_email,
                book_id,
                copies_seeded,
            )
            self.scheduler.schedule_restock(book_id, self.restock_delay)
        except Exception:
            logger.exception("Could not request restock for book %s", book_id)
