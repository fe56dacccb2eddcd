# library_service/seed.py
import json
import logging
from decimal import Decimal

from sqlalchemy import delete, func, select

from .models import Book, BookTag, Tag, TagKind

logger = logging.getLogger(__name__)


def _norm(value):
    value = (value or "").strip()
    return value or None


def dedupe(values):
    """Trimmed, non-empty, first occurrence wins (case-insensitive)."""
    seen = set()
    unique = []
    for value in values or []:
        value = _norm(value)
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        unique.append(value)
    return unique


def load_seed_file(path):
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def _upsert_tag(session, name, kind):
    tag = session.execute(
        select(Tag).where(Tag.name == name, Tag.kind == kind)
    ).scalar_one_or_none()
    if tag is None:
        tag = Tag(name=name, kind=kind)
        session.add(tag)
        session.flush()
    return tag


def upsert_book(session, seed):
    """
    Insert or update one catalog entry by ISBN and replace its tags.
    Existing stock is left alone; only the seeded target changes.
    """
    prices = seed["prices"]
    fields = {
        "title": (seed.get("title") or "").strip(),
        "year": seed.get("year"),
        "pages": seed.get("pages"),
        "publisher": _norm(seed.get("publisher")),
        "sell_price": Decimal(str(prices["sell"])),
        "stock_price": Decimal(str(prices["stock"])),
        "borrow_price": Decimal(str(prices["borrow"])),
        "copies_seeded": seed["copies"],
    }

    book = session.execute(
        select(Book).where(Book.isbn == seed["isbn"])
    ).scalar_one_or_none()
    if book:
        for key, value in fields.items():
            setattr(book, key, value)
    else:
        book = Book(isbn=seed["isbn"], copies_available=seed["copies"], **fields)
        session.add(book)
    session.flush()

    session.execute(delete(BookTag).where(BookTag.book_id == book.id))

    for order, author in enumerate(dedupe(seed.get("authors")), start=1):
        tag = _upsert_tag(session, author, TagKind.AUTHOR)
        session.add(BookTag(book_id=book.id, tag_id=tag.id, tag_order=order))
    for genre in dedupe(seed.get("genres")):
        tag = _upsert_tag(session, genre, TagKind.GENRE)
        session.add(BookTag(book_id=book.id, tag_id=tag.id))

    session.flush()
    session.expire(book, ["book_tags"])
    return book


def seed_on_start(db, wallet, seed_file, opening_balance="0"):
    """
    Make sure the wallet exists, then load the catalog if the book table is
    empty. Returns True when books were loaded.
    """
    with db.transaction() as session:
        wallet.ensure_wallet(session, opening_balance)
        existing = session.execute(select(func.count(Book.id))).scalar_one()

    if existing > 0:
        return False

    data = load_seed_file(seed_file)
    with db.transaction() as session:
        for entry in data:
            upsert_book(session, entry)

    logger.info("Seeded %d books from %s", len(data), seed_file)
    return True


def main():
    from .app import create_app

    app = create_app({"SEED_ON_START": False})
    services = app.extensions["library"]
    seeded = seed_on_start(
        services.db,
        services.wallet,
        app.config["SEED_FILE"],
        app.config["OPENING_BALANCE"],
    )
    print("Seeded catalog." if seeded else "Catalog already present, nothing to seed.")
    services.shutdown()


if __name__ == "__main__":
    main()
