"""
Wallet ledger.

The library has exactly one wallet. Every balance change is written as a
``WalletMovement`` in the same transaction that updates ``Wallet.balance``,
so the balance always equals the signed sum of the movements.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import case, func, select

from .clock import SystemClock
from .errors import BadRequest
from .models import (
    WALLET_ID,
    MovementDirection,
    Wallet,
    WalletMovement,
    WalletMovementType,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class WalletLedger:
    def __init__(self, db, notifier, clock=None, milestone=Decimal("2000"),
                 management_email="management@dummy-library.com"):
        self.db = db
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.milestone = to_money(milestone)
        self.management_email = management_email

    # ----------------- writes (caller owns the transaction) -----------------

    def lock_wallet(self, session) -> Wallet:
        wallet = session.execute(
            select(Wallet).where(Wallet.id == WALLET_ID).with_for_update()
        ).scalar_one_or_none()
        if wallet is None:
            wallet = Wallet(id=WALLET_ID, balance=Decimal("0.00"))
            session.add(wallet)
            session.flush()
        return wallet

    def record_movement(self, session, type, direction, amount,
                        book_id=None, user_id=None, note=None) -> Wallet:
        amount = to_money(amount)
        if amount < 0:
            raise ValueError("movement amount must not be negative")

        wallet = self.lock_wallet(session)
        if direction == MovementDirection.CREDIT:
            wallet.balance = to_money(wallet.balance) + amount
        else:
            wallet.balance = to_money(wallet.balance) - amount

        session.add(
            WalletMovement(
                type=type,
                direction=direction,
                amount=amount,
                book_id=book_id,
                user_id=user_id,
                note=note,
                created_at=self.clock.now(),
            )
        )
        logger.info(
            "Wallet %s %s %s (%s) -> balance %s",
            direction.value,
            type.value,
            amount,
            note,
            wallet.balance,
        )
        return wallet

    def credit_borrow_revenue(self, session, amount, book_id, user_id) -> bool:
        """
        Credit a borrow fee and run the milestone check.

        Returns True when this credit is the one that crossed the milestone;
        the caller sends the notification after its transaction commits.
        """
        wallet = self.record_movement(
            session,
            WalletMovementType.BORROW_REVENUE,
            MovementDirection.CREDIT,
            amount,
            book_id=book_id,
            user_id=user_id,
            note="Borrow fee",
        )
        if wallet.milestone_notified_at is None and wallet.balance > self.milestone:
            wallet.milestone_notified_at = self.clock.now()
            logger.info("Wallet balance %s crossed milestone %s", wallet.balance, self.milestone)
            return True
        return False

    def ensure_wallet(self, session, opening_balance=Decimal("0")) -> Wallet:
        """
        Create the singleton wallet if it does not exist yet. The opening
        balance is booked as an ADJUSTMENT so the ledger reconciles.
        """
        wallet = session.get(Wallet, WALLET_ID)
        if wallet is not None:
            return wallet

        opening = to_money(opening_balance)
        wallet = Wallet(id=WALLET_ID, balance=Decimal("0.00"))
        session.add(wallet)
        session.flush()
        if opening:
            direction = MovementDirection.CREDIT if opening > 0 else MovementDirection.DEBIT
            self.record_movement(
                session,
                WalletMovementType.ADJUSTMENT,
                direction,
                abs(opening),
                note="Opening balance",
            )
        return wallet

    # ----------------- operations with their own transaction -----------------

    def notify_milestone(self):
        self.notifier.notify(
            self.management_email,
            "Wallet balance milestone reached",
            f"The library wallet balance has exceeded {self.milestone}.",
        )

    def adjust(self, amount, note=None) -> dict:
        try:
            amount = to_money(amount)
        except (ArithmeticError, TypeError, ValueError):
            raise BadRequest("amount must be a number")
        if amount == 0:
            raise BadRequest("amount must not be zero")

        direction = MovementDirection.CREDIT if amount > 0 else MovementDirection.DEBIT
        with self.db.transaction() as session:
            wallet = self.record_movement(
                session,
                WalletMovementType.ADJUSTMENT,
                direction,
                abs(amount),
                note=note or "Manual adjustment",
            )
            balance = wallet.balance

        return {"direction": direction.value, "amount": abs(amount), "balance": balance}

    # ----------------- reads -----------------

    def summary(self):
        session = self.db.session()
        try:
            wallet = session.get(Wallet, WALLET_ID)
            if wallet is None:
                return None
            return {
                "balance": to_money(wallet.balance),
                "milestone_notified_at": wallet.milestone_notified_at,
            }
        finally:
            session.close()

    def reconcile(self):
        """
        Return ``(balance, signed sum of movements)``; they must be equal.
        """
        signed = case(
            (WalletMovement.direction == MovementDirection.CREDIT, WalletMovement.amount),
            else_=-WalletMovement.amount,
        )
        session = self.db.session()
        try:
            wallet = session.get(Wallet, WALLET_ID)
            total = session.execute(select(func.coalesce(func.sum(signed), 0))).scalar_one()
            balance = to_money(wallet.balance) if wallet else Decimal("0.00")
            return balance, to_money(total)
        finally:
            session.close()
