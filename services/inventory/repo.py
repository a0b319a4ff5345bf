"""SQLAlchemy repository for products, per-size stock and reservations.

This module is the authoritative inventory store. Stock lives in one
counter per (product, size). A reservation decrements every requested
counter or none of them, and is keyed by the caller's reservation id (the
order id) so that retries and releases are safe:

- ``reserve`` with a known id reports the first outcome instead of
  decrementing again.
- ``release`` restores a held reservation exactly once; releasing an id
  that was never reserved writes a released tombstone so a late ``reserve``
  with that id is refused.
- ``commit`` makes a held reservation permanent.

Each decrement is a conditional ``UPDATE ... WHERE stock >= :qty`` so two
concurrent reservations cannot both take the last unit. Lines are applied
in (product_id, size) order so concurrent multi-line reservations lock
rows in the same order.

Database connection parameters are configured via the ``DATABASE_URL``
env var, or the ``DB_*`` vars when it is not set.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, selectinload

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

HELD = "held"
RELEASED = "released"
COMMITTED = "committed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Product(Base):
    """A catalog product with its authoritative unit price (minor units)."""

    __tablename__ = "products"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    sizes: Mapped[list["ProductSize"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="ProductSize.size"
    )


class ProductSize(Base):
    """Stock counter for one size of one product; never negative."""

    __tablename__ = "product_sizes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product: Mapped[Product] = relationship(back_populates="sizes")

    __table_args__ = (
        UniqueConstraint("product_id", "size", name="ux_product_size"),
        CheckConstraint("stock >= 0", name="ck_stock_non_negative"),
    )


class Reservation(Base):
    """Keyed record of what a reservation took, and whether it still holds it."""

    __tablename__ = "reservations"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=HELD)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


def init_db(bind=None) -> None:
    """Create the tables if they do not exist."""
    Base.metadata.create_all(bind or engine)


@contextmanager
def get_session(bind=None):
    """Yield a SQLAlchemy session; closed when the context exits."""
    with Session(bind or engine) as s:
        yield s


def merge_items(items) -> list[tuple[str, int, int]]:
    """Sum quantities per (product_id, size) and sort by that key."""
    totals: dict[tuple[str, int], int] = {}
    for product_id, size, quantity in items:
        key = (product_id, int(size))
        totals[key] = totals.get(key, 0) + int(quantity)
    return [(pid, size, qty) for (pid, size), qty in sorted(totals.items())]


class InventoryRepo:
    """Repository class for inventory operations.

    Args:
        bind: Engine to use; defaults to the module engine built from env.
    """

    def __init__(self, bind=None):
        self.bind = bind or engine

    # ---- Catalog ----
    def get_products(self, product_ids) -> list[dict]:
        """Return known products with their size/stock table; unknown ids are skipped."""
        ids = list(product_ids)
        if not ids:
            return []
        with get_session(self.bind) as s:
            rows = s.scalars(
                select(Product).where(Product.id.in_(ids)).options(selectinload(Product.sizes))
            ).all()
            return [self._product_dict(p) for p in rows]

    def get_product(self, product_id: str) -> dict | None:
        found = self.get_products([product_id])
        return found[0] if found else None

    def upsert_product(self, product_id: str, name: str, price_cents: int, sizes: dict) -> None:
        """Create or replace a product and set the stock of the given sizes."""
        with get_session(self.bind) as s:
            product = s.get(Product, product_id, options=[selectinload(Product.sizes)])
            if product is None:
                product = Product(id=product_id, name=name, price_cents=price_cents)
                s.add(product)
            product.name = name
            product.price_cents = price_cents
            by_size = {ps.size: ps for ps in product.sizes}
            for size, stock in sizes.items():
                row = by_size.get(int(size))
                if row is None:
                    product.sizes.append(ProductSize(size=int(size), stock=int(stock)))
                else:
                    row.stock = int(stock)
            s.commit()

    def stock(self, product_id: str, size: int) -> int | None:
        with get_session(self.bind) as s:
            return s.scalar(
                select(ProductSize.stock).where(ProductSize.product_id == product_id, ProductSize.size == int(size))
            )

    def reservation_status(self, reservation_id: str) -> str | None:
        with get_session(self.bind) as s:
            rec = s.get(Reservation, str(reservation_id))
            return rec.status if rec else None

    # ---- Reservations ----
    def reserve(self, reservation_id: str, items) -> tuple[bool, list[dict]]:
        """Atomically decrement stock for every line, or for none.

        Args:
            reservation_id: Caller's key for this reservation.
            items: Iterable of ``(product_id, size, quantity)``.

        Returns:
            tuple[bool, list[dict]]: ``(reserved, shortages)``. On failure
            ``shortages`` lists every line that cannot be satisfied right now.
        """
        rid = str(reservation_id)
        merged = merge_items(items)

        with get_session(self.bind) as s:
            existing = s.get(Reservation, rid)
            if existing is not None:
                return existing.status != RELEASED, []

            try:
                # claim the key first; a concurrent duplicate fails on the PK
                s.add(Reservation(id=rid, status=HELD, items=[list(line) for line in merged]))
                s.flush()
                for product_id, size, qty in merged:
                    res = s.execute(
                        update(ProductSize)
                        .where(
                            ProductSize.product_id == product_id,
                            ProductSize.size == size,
                            ProductSize.stock >= qty,
                        )
                        .values(stock=ProductSize.stock - qty)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        s.rollback()
                        return False, self._shortages(s, merged)
                s.commit()
                return True, []
            except IntegrityError:
                s.rollback()
                existing = s.get(Reservation, rid)
                return (existing is not None and existing.status != RELEASED), []

    def release(self, reservation_id: str) -> bool:
        """Give a held reservation's stock back; True only for the call that did it."""
        rid = str(reservation_id)
        with get_session(self.bind) as s:
            rec = s.get(Reservation, rid)
            if rec is None:
                try:
                    s.add(Reservation(id=rid, status=RELEASED, items=[]))
                    s.commit()
                    return False
                except IntegrityError:
                    s.rollback()

            res = s.execute(
                update(Reservation)
                .where(Reservation.id == rid, Reservation.status == HELD)
                .values(status=RELEASED, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                s.rollback()
                return False

            items = s.scalar(select(Reservation.items).where(Reservation.id == rid))
            for product_id, size, qty in items:
                s.execute(
                    update(ProductSize)
                    .where(ProductSize.product_id == product_id, ProductSize.size == size)
                    .values(stock=ProductSize.stock + qty)
                    .execution_options(synchronize_session=False)
                )
            s.commit()
            return True

    def commit(self, reservation_id: str) -> bool:
        with get_session(self.bind) as s:
            res = s.execute(
                update(Reservation)
                .where(Reservation.id == str(reservation_id), Reservation.status == HELD)
                .values(status=COMMITTED, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            s.commit()
            return res.rowcount == 1

    # ---- Helpers ----
    def _shortages(self, s: Session, merged) -> list[dict]:
        product_ids = {pid for pid, _, _ in merged}
        known = set(s.scalars(select(Product.id).where(Product.id.in_(product_ids))).all())
        rows = s.execute(
            select(ProductSize.product_id, ProductSize.size, ProductSize.stock).where(
                ProductSize.product_id.in_(product_ids)
            )
        ).all()
        stock = {(pid, size): qty for pid, size, qty in rows}

        out = []
        for product_id, size, qty in merged:
            if product_id not in known:
                reason, available = "UNKNOWN_PRODUCT", 0
            elif (product_id, size) not in stock:
                reason, available = "UNKNOWN_SIZE", 0
            elif stock[(product_id, size)] < qty:
                reason, available = "INSUFFICIENT_STOCK", stock[(product_id, size)]
            else:
                continue
            out.append(
                {"product_id": product_id, "size": size, "requested": qty, "available": available, "reason": reason}
            )
        return out

    @staticmethod
    def _product_dict(p: Product) -> dict:
        return {
            "id": p.id,
            "name": p.name,
            "price_cents": p.price_cents,
            "sizes": [{"size": ps.size, "stock": ps.stock} for ps in p.sizes],
        }
