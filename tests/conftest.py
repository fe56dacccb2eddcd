"""
Pytest fixtures for the library service test suite.

Provides:
- a fresh SQLite database file per test
- a recording notifier (no network)
- a manual timer factory so deferred jobs fire only when a test says so
- a fixed clock
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from library_service.app import create_app
from library_service.clock import FixedClock
from library_service.db import Database
from library_service.inventory import InventoryEngine
from library_service.models import Book, BookAction, Wallet, WalletMovement, WALLET_ID
from library_service.notifier import BaseNotifier
from library_service.scheduler import DeferredActionScheduler
from library_service.wallet import WalletLedger


class RecordingNotifier(BaseNotifier):
    def __init__(self, fail=False):
        super().__init__(executor=None)
        self.sent = []
        self.fail = fail

    def send(self, message):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append(message)
        return {"id": f"msg-{len(self.sent)}"}

    def subjects(self):
        return [m.subject for m in self.sent]


class ManualTimer:
    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.cancelled:
            return False
        self.fired = True
        self.function(*self.args)
        return True


class ManualTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=()):
        timer = ManualTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    def last(self):
        return self.timers[-1]


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'library.db'}"


@pytest.fixture
def db(db_url):
    database = Database(db_url)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def wallet(db, notifier, clock):
    ledger = WalletLedger(db, notifier, clock=clock, milestone=Decimal("2000"))
    with db.transaction() as session:
        ledger.ensure_wallet(session, Decimal("100.00"))
    return ledger


@pytest.fixture
def scheduler(db, wallet, notifier, clock, timers):
    sched = DeferredActionScheduler(db, wallet, notifier, clock=clock, timer_factory=timers)
    yield sched
    sched.shutdown()


@pytest.fixture
def engine(db, wallet, scheduler, clock):
    return InventoryEngine(
        db,
        wallet,
        scheduler,
        clock=clock,
        loan_period=timedelta(days=3),
        restock_delay=3600,
    )


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(copies_available=5, copies_seeded=5, sell="30.00", stock="20.00",
              borrow="4.00", title=None):
        counter["n"] += 1
        n = counter["n"]
        with db.transaction() as session:
            book = Book(
                isbn=f"978-000000{n:04d}",
                title=title or f"Book {n}",
                sell_price=Decimal(sell),
                stock_price=Decimal(stock),
                borrow_price=Decimal(borrow),
                copies_seeded=copies_seeded,
                copies_available=copies_available,
            )
            session.add(book)
            session.flush()
            return book.id

    return _make


@pytest.fixture
def read(db):
    """Small query helpers for assertions."""

    class Reader:
        def book(self, book_id):
            with db.transaction() as session:
                return session.get(Book, book_id)

        def actions(self, book_id=None, type=None):
            with db.transaction() as session:
                q = select(BookAction).order_by(BookAction.id)
                if book_id is not None:
                    q = q.where(BookAction.book_id == book_id)
                if type is not None:
                    q = q.where(BookAction.type == type)
                return session.execute(q).scalars().all()

        def movements(self):
            with db.transaction() as session:
                return session.execute(
                    select(WalletMovement).order_by(WalletMovement.id)
                ).scalars().all()

        def wallet(self):
            with db.transaction() as session:
                return session.get(Wallet, WALLET_ID)

    return Reader()


@pytest.fixture
def app(db_url, notifier, clock, timers):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": db_url,
            "SEED_ON_START": False,
            "OPENING_BALANCE": "100.00",
        },
        notifier=notifier,
        clock=clock,
        timer_factory=timers,
    )
    yield app
    app.extensions["library"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)
