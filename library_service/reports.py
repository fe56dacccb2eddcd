"""
Read-only admin queries over the catalog, the audit log and the wallet.
"""
import math

from sqlalchemy import and_, func, or_, select

from .models import (
    Book,
    BookAction,
    BookActionType,
    BookTag,
    Borrow,
    Tag,
    TagKind,
    User,
    WalletMovement,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _to_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_paging(page, page_size):
    page = max(1, _to_int(page, 1))
    page_size = min(MAX_PAGE_SIZE, max(1, _to_int(page_size, DEFAULT_PAGE_SIZE)))
    return page, page_size


def parse_types(raw, enum_cls):
    """
    "BUY, RETURN,bogus" -> [BUY, RETURN]. Unknown names are ignored.
    """
    if not raw:
        return []
    names = [s.strip() for s in raw.split(",") if s.strip()]
    return [enum_cls(n) for n in names if n in enum_cls.__members__]


def _paginate(session, q, page, page_size):
    total = session.execute(
        select(func.count()).select_from(q.order_by(None).subquery())
    ).scalar_one()
    rows = session.execute(q.offset((page - 1) * page_size).limit(page_size)).scalars().all()
    return rows, {
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": max(1, math.ceil(total / page_size)),
    }


def _iso(value):
    return value.isoformat() if value else None


def _num(value):
    return float(value) if value is not None else None


def book_to_dict(b):
    authors = [bt.tag.name for bt in b.book_tags if bt.tag.kind == TagKind.AUTHOR]
    genres = [bt.tag.name for bt in b.book_tags if bt.tag.kind == TagKind.GENRE]
    return {
        "id": b.id,
        "isbn": b.isbn,
        "title": b.title,
        "year": b.year,
        "pages": b.pages,
        "publisher": b.publisher,
        "prices": {
            "sell": _num(b.sell_price),
            "stock": _num(b.stock_price),
            "borrow": _num(b.borrow_price),
        },
        "copiesSeeded": b.copies_seeded,
        "copiesAvailable": b.copies_available,
        "authors": authors,
        "genres": genres,
    }


def search_books(session, query=None, page=1, page_size=DEFAULT_PAGE_SIZE):
    """
    Title, author or genre substring match (case-insensitive), ordered by title.
    """
    q = select(Book)
    if query:
        like = f"%{query}%"
        tag_match = BookTag.tag.has(
            and_(Tag.kind.in_([TagKind.AUTHOR, TagKind.GENRE]), Tag.name.ilike(like))
        )
        q = q.where(or_(Book.title.ilike(like), Book.book_tags.any(tag_match)))
    q = q.order_by(Book.title.asc(), Book.id.asc())

    rows, meta = _paginate(session, q, page, page_size)
    meta["q"] = query or None
    return [book_to_dict(b) for b in rows], meta


def book_actions(session, book_id, types=None, user_email=None, date_from=None,
                 date_to=None, page=1, page_size=DEFAULT_PAGE_SIZE):
    q = select(BookAction).where(BookAction.book_id == book_id)
    if types:
        q = q.where(BookAction.type.in_(types))
    if user_email:
        q = q.where(BookAction.user.has(User.email.ilike(f"%{user_email}%")))
    if date_from:
        q = q.where(BookAction.created_at >= date_from)
    if date_to:
        q = q.where(BookAction.created_at <= date_to)
    q = q.order_by(BookAction.created_at.desc(), BookAction.id.desc())

    rows, meta = _paginate(session, q, page, page_size)
    items = [
        {
            "id": a.id,
            "bookId": a.book_id,
            "type": a.type.value,
            "quantity": a.quantity,
            "pricePerUnit": _num(a.price_per_unit),
            "total": _num(a.total),
            "dueAt": _iso(a.due_at),
            "meta": a.meta,
            "createdAt": _iso(a.created_at),
            "userEmail": a.user.email if a.user else None,
        }
        for a in rows
    ]
    return dict(items=items, **meta)


def wallet_movements(session, types=None, date_from=None, date_to=None,
                     page=1, page_size=DEFAULT_PAGE_SIZE):
    q = select(WalletMovement)
    if types:
        q = q.where(WalletMovement.type.in_(types))
    if date_from:
        q = q.where(WalletMovement.created_at >= date_from)
    if date_to:
        q = q.where(WalletMovement.created_at <= date_to)
    q = q.order_by(WalletMovement.created_at.desc(), WalletMovement.id.desc())

    rows, meta = _paginate(session, q, page, page_size)
    items = [
        {
            "id": m.id,
            "type": m.type.value,
            "direction": m.direction.value,
            "amount": _num(m.amount),
            "note": m.note,
            "createdAt": _iso(m.created_at),
            "book": {"id": m.book.id, "title": m.book.title} if m.book else None,
            "userEmail": m.user.email if m.user else None,
        }
        for m in rows
    ]
    return dict(items=items, **meta)


def user_books(session, email):
    """
    Borrow history (oldest first) and purchases grouped by book.
    """
    user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        return {"borrowed": [], "bought": []}

    borrows = session.execute(
        select(Borrow).where(Borrow.user_id == user.id).order_by(Borrow.borrowed_at.asc(), Borrow.id.asc())
    ).scalars().all()

    grouped = session.execute(
        select(
            BookAction.book_id,
            func.sum(BookAction.quantity),
            func.sum(BookAction.total),
            func.max(BookAction.created_at),
        )
        .where(BookAction.user_id == user.id, BookAction.type == BookActionType.BUY)
        .group_by(BookAction.book_id)
        .order_by(BookAction.book_id)
    ).all()

    book_ids = [row[0] for row in grouped]
    books = {}
    if book_ids:
        books = {
            b.id: b
            for b in session.execute(select(Book).where(Book.id.in_(book_ids))).scalars()
        }

    bought = []
    for book_id, quantity, total, last_at in grouped:
        b = books.get(book_id)
        bought.append(
            {
                "book": {"id": b.id, "title": b.title} if b else None,
                "quantity": int(quantity or 0),
                "total": float(total or 0),
                "lastPurchasedAt": _iso(last_at),
            }
        )

    borrowed = [
        {
            "book": {"id": r.book.id, "title": r.book.title},
            "status": r.status.value,
            "borrowedAt": _iso(r.borrowed_at),
            "dueAt": _iso(r.due_at),
            "returnedAt": _iso(r.returned_at),
        }
        for r in borrows
    ]
    return {"borrowed": borrowed, "bought": bought}


def list_users(session):
    users = session.execute(select(User).order_by(User.id)).scalars().all()
    return [
        {"id": u.id, "email": u.email, "createdAt": _iso(u.created_at)}
        for u in users
    ]

