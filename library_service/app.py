import os
import logging
from datetime import datetime, timedelta, timezone

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .clock import SystemClock
from .config import Config
from .db import Database
from .errors import BadRequest, LibraryError, NotFound
from .inventory import InventoryEngine
from .models import BookActionType, WalletMovementType
from .notifier import build_notifier
from .scheduler import DeferredActionScheduler
from .seed import seed_on_start
from .wallet import WalletLedger
from . import reports

logger = logging.getLogger(__name__)

USER_EMAIL_HEADER = "X-User-Email"

api = Blueprint("api", __name__, url_prefix="/api")


class LibraryServices:
    """
    Everything that lives for the whole process: one database handle, one
    notifier, one scheduler. Built once by create_app.
    """

    def __init__(self, db, notifier, wallet, scheduler, inventory):
        self.db = db
        self.notifier = notifier
        self.wallet = wallet
        self.scheduler = scheduler
        self.inventory = inventory

    def shutdown(self):
        self.scheduler.shutdown()
        self.notifier.shutdown()
        self.db.dispose()


def create_app(overrides=None, notifier=None, clock=None, timer_factory=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    CORS(app)

    logging.basicConfig(level=app.config["LOG_LEVEL"])

    clock = clock or SystemClock()
    db = Database(app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config["SQLALCHEMY_ECHO"])
    # Create tables if not present
    db.create_all()

    notifier = notifier or build_notifier(app.config)
    wallet = WalletLedger(
        db,
        notifier,
        clock=clock,
        milestone=app.config["WALLET_MILESTONE"],
        management_email=app.config["MANAGEMENT_EMAIL"],
    )
    scheduler = DeferredActionScheduler(
        db,
        wallet,
        notifier,
        clock=clock,
        supply_email=app.config["SUPPLY_EMAIL"],
        timer_factory=timer_factory,
    )
    inventory = InventoryEngine(
        db,
        wallet,
        scheduler,
        clock=clock,
        loan_period=timedelta(days=app.config["LOAN_PERIOD_DAYS"]),
        restock_delay=app.config["RESTOCK_DELAY_SECONDS"],
        supply_email=app.config["SUPPLY_EMAIL"],
    )
    app.extensions["library"] = LibraryServices(db, notifier, wallet, scheduler, inventory)

    if app.config["SEED_ON_START"]:
        try:
            if seed_on_start(db, wallet, app.config["SEED_FILE"], app.config["OPENING_BALANCE"]):
                logger.info("Database seeding completed")
        except Exception:
            logger.exception("Database seeding failed")
    else:
        with db.transaction() as session:
            wallet.ensure_wallet(session, app.config["OPENING_BALANCE"])

    app.register_blueprint(api)
    app.register_error_handler(LibraryError, _library_error)
    app.register_error_handler(Exception, _unexpected_error)
    return app


def _services() -> LibraryServices:
    return current_app.extensions["library"]


# ---------------------------------------------------------
# Error handling
# ---------------------------------------------------------

def _library_error(e):
    return jsonify({"ok": False, "error": e.to_dict()}), e.status_code


def _unexpected_error(e):
    if isinstance(e, HTTPException):
        return jsonify(
            {"ok": False, "error": {"code": e.name.upper().replace(" ", "_"), "message": e.description}}
        ), e.code
    logger.exception("%s %s failed", request.method, request.path)
    return jsonify(
        {"ok": False, "error": {"code": "INTERNAL_ERROR", "message": "Something went wrong"}}
    ), 500


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def _ok(data, status=200):
    return jsonify({"ok": True, "data": data}), status


def _actor_email():
    email = (request.headers.get(USER_EMAIL_HEADER) or "").strip().lower()
    if not email:
        raise BadRequest("x-user-email header is required")
    return email


def _body():
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _parse_date(name):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise BadRequest(f"Invalid '{name}' date")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _paging():
    return reports.parse_paging(request.args.get("page"), request.args.get("pageSize"))


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health():
    return jsonify({"status": "ok", "service": "library_service"})


# ---------------------------------------------------------
# User actions
# ---------------------------------------------------------

@api.post("/user/borrow")
def borrow_book():
    email = _actor_email()
    result = _services().inventory.borrow(email, _body().get("bookId"))
    return _ok(
        {
            "borrowId": result.borrow_id,
            "dueAt": result.due_at.isoformat(),
            "copiesAvailable": result.copies_available,
        }
    )


@api.post("/user/return")
def return_book():
    email = _actor_email()
    result = _services().inventory.return_book(email, _body().get("bookId"))
    return _ok(
        {
            "returnedAt": result.returned_at.isoformat(),
            "copiesAvailable": result.copies_available,
        }
    )


@api.post("/user/buy")
def buy_book():
    email = _actor_email()
    data = _body()
    result = _services().inventory.buy(email, data.get("bookId"), data.get("quantity"))
    return _ok(
        {
            "quantity": result.quantity,
            "total": float(result.total),
            "copiesAvailable": result.copies_available,
        }
    )


# ---------------------------------------------------------
# Admin reporting
# ---------------------------------------------------------

@api.get("/admin/books/search")
def search_books():
    page, page_size = _paging()
    query = (request.args.get("q") or "").strip() or None
    session = _services().db.session()
    try:
        items, meta = reports.search_books(session, query, page, page_size)
        return jsonify({"ok": True, "data": items, "meta": meta})
    finally:
        session.close()


@api.get("/admin/books/<book_id>/actions")
def book_actions(book_id):
    try:
        book_id = int(book_id)
    except ValueError:
        raise BadRequest("Invalid bookId")
    if book_id <= 0:
        raise BadRequest("Invalid bookId")
    page, page_size = _paging()
    types = reports.parse_types(request.args.get("type"), BookActionType)
    user_email = (request.args.get("userEmail") or "").strip() or None

    session = _services().db.session()
    try:
        data = reports.book_actions(
            session,
            book_id,
            types=types,
            user_email=user_email,
            date_from=_parse_date("from"),
            date_to=_parse_date("to"),
            page=page,
            page_size=page_size,
        )
        return _ok(data)
    finally:
        session.close()


@api.get("/admin/wallet")
def get_wallet():
    summary = _services().wallet.summary()
    if summary is None:
        raise NotFound("Wallet not found")
    notified = summary["milestone_notified_at"]
    return _ok(
        {
            "balance": float(summary["balance"]),
            "milestoneNotifiedAt": notified.isoformat() if notified else None,
        }
    )


@api.get("/admin/wallet/movements")
def wallet_movements():
    page, page_size = _paging()
    types = reports.parse_types(request.args.get("type"), WalletMovementType)

    session = _services().db.session()
    try:
        data = reports.wallet_movements(
            session,
            types=types,
            date_from=_parse_date("from"),
            date_to=_parse_date("to"),
            page=page,
            page_size=page_size,
        )
        return _ok(data)
    finally:
        session.close()


@api.post("/admin/wallet/adjustments")
def adjust_wallet():
    data = _body()
    if data.get("amount") is None:
        raise BadRequest("amount is required")
    result = _services().wallet.adjust(data["amount"], data.get("note"))
    return _ok(
        {
            "direction": result["direction"],
            "amount": float(result["amount"]),
            "balance": float(result["balance"]),
        },
        201,
    )


@api.get("/admin/users/<email>/books")
def user_books(email):
    email = (email or "").strip().lower()
    if not email:
        raise BadRequest("Email is required in path")
    session = _services().db.session()
    try:
        return _ok(reports.user_books(session, email))
    finally:
        session.close()


@api.get("/admin/user/all")
def list_users():
    session = _services().db.session()
    try:
        return _ok(reports.list_users(session))
    finally:
        session.close()


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", "7000"))
    try:
        app.run(host="0.0.0.0", port=port, threaded=True)
    finally:
        app.extensions["library"].shutdown()
