import enum
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    Numeric,
    String,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
)

Base = declarative_base()

WALLET_ID = 1


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BorrowStatus(str, enum.Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"


class BookActionType(str, enum.Enum):
    BORROW = "BORROW"
    RETURN = "RETURN"
    BUY = "BUY"
    RESTOCK_REQUESTED = "RESTOCK_REQUESTED"
    RESTOCKED = "RESTOCKED"
    REMINDER_SENT = "REMINDER_SENT"


class WalletMovementType(str, enum.Enum):
    SELL_REVENUE = "SELL_REVENUE"
    BORROW_REVENUE = "BORROW_REVENUE"
    STOCK_PURCHASE = "STOCK_PURCHASE"
    RESTOCK_COST = "RESTOCK_COST"
    ADJUSTMENT = "ADJUSTMENT"


class MovementDirection(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TagKind(str, enum.Enum):
    AUTHOR = "AUTHOR"
    GENRE = "GENRE"


class Book(Base):
    __tablename__ = "book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    year = Column(Integer)
    pages = Column(Integer)
    publisher = Column(String(255))
    sell_price = Column(Numeric(10, 2), nullable=False)
    stock_price = Column(Numeric(10, 2), nullable=False)
    borrow_price = Column(Numeric(10, 2), nullable=False)
    # target stock; restock fills copies_available back up to this
    copies_seeded = Column(Integer, nullable=False, default=1)
    copies_available = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    book_tags = relationship(
        "BookTag", back_populates="book", order_by="BookTag.tag_order"
    )


class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Borrow(Base):
    __tablename__ = "borrow"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)
    status = Column(
        Enum(BorrowStatus, name="borrow_status"),
        nullable=False,
        default=BorrowStatus.BORROWED,
    )
    price_at_borrow = Column(Numeric(10, 2), nullable=False)

    user = relationship("User")
    book = relationship("Book")


class BookAction(Base):
    """
    Append-only audit log of everything that happened to a book.
    """
    __tablename__ = "book_action"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(Enum(BookActionType, name="book_action_type"), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("user.id"))
    quantity = Column(Integer, nullable=False, default=1)
    price_per_unit = Column(Numeric(10, 2))
    total = Column(Numeric(12, 2))
    due_at = Column(DateTime)
    meta = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    user = relationship("User")
    book = relationship("Book")


class Wallet(Base):
    __tablename__ = "wallet"

    id = Column(Integer, primary_key=True, default=WALLET_ID)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    milestone_notified_at = Column(DateTime)


class WalletMovement(Base):
    """
    Append-only wallet ledger. Amounts are positive; direction carries the sign.
    """
    __tablename__ = "wallet_movement"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(Enum(WalletMovementType, name="wallet_movement_type"), nullable=False)
    direction = Column(Enum(MovementDirection, name="movement_direction"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    book_id = Column(Integer, ForeignKey("book.id"))
    user_id = Column(Integer, ForeignKey("user.id"))
    note = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    book = relationship("Book")
    user = relationship("User")


class Tag(Base):
    __tablename__ = "tag"
    __table_args__ = (UniqueConstraint("name", "kind", name="uq_tag_name_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    kind = Column(Enum(TagKind, name="tag_kind"), nullable=False)


class BookTag(Base):
    __tablename__ = "book_tag"
    __table_args__ = (UniqueConstraint("book_id", "tag_id", name="uq_book_tag"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("book.id"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tag.id"), nullable=False)
    # authors are ordered; genres leave this empty
    tag_order = Column(Integer)

    book = relationship("Book", back_populates="book_tags")
    tag = relationship("Tag")
