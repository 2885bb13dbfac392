"""Order records and the stores that hold them.

Every state change goes through ``compare_and_swap`` so that two requests
racing on the same order can never both win a transition.
"""
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .database import Base, make_engine, make_session_factory
from .models import OrderRecord
from .utils import now_utc


class OrderState(str, Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    EXPIRED = "EXPIRED"


@dataclass
class Order:
    order_id: str
    product_id: str
    required_amount: int
    rate_usd: float
    deposit_address: str
    deposit_secret: str | None = field(default=None, repr=False)
    state: OrderState = OrderState.CREATED
    created_at: datetime = field(default_factory=now_utc)
    paid_amount: int | None = None
    paid_tx: str | None = None
    paid_at: datetime | None = None
    expires_at: datetime | None = None
    forwarded: bool = False
    forward_tx: str | None = None
    forward_attempts: int = 0
    notification_email: str | None = None


ORDER_FIELDS = {f.name for f in fields(Order)}


def new_order_id() -> str:
    return uuid.uuid4().hex[:12]


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - ORDER_FIELDS
    if unknown:
        raise ValueError(f"Unknown order fields: {sorted(unknown)}")
    if "order_id" in changes:
        raise ValueError("order_id is immutable")


class OrderStore:
    """Keyed order storage with an atomic per-order state transition."""

    def get(self, order_id: str) -> Order | None:
        raise NotImplementedError

    def put(self, order: Order) -> bool:
        """Insert a new order. Returns False if the id is already taken."""
        raise NotImplementedError

    def compare_and_swap(
        self, order_id: str, expected: OrderState, changes: dict[str, Any]
    ) -> Order | None:
        """Apply ``changes`` only if the stored state is still ``expected``."""
        raise NotImplementedError

    def update(self, order_id: str, changes: dict[str, Any]) -> Order | None:
        """Bookkeeping updates that do not move the state."""
        raise NotImplementedError

    def delete(self, order_id: str, expected: OrderState | None = None) -> bool:
        """Remove an order, optionally only while it is still in ``expected``."""
        raise NotImplementedError

    def list(self) -> list[Order]:
        raise NotImplementedError


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    def put(self, order: Order) -> bool:
        with self._lock:
            if order.order_id in self._orders:
                return False
            self._orders[order.order_id] = replace(order)
            return True

    def compare_and_swap(
        self, order_id: str, expected: OrderState, changes: dict[str, Any]
    ) -> Order | None:
        _check_changes(changes)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.state != expected:
                return None
            updated = replace(order, **changes)
            self._orders[order_id] = updated
            return replace(updated)

    def update(self, order_id: str, changes: dict[str, Any]) -> Order | None:
        _check_changes(changes)
        if "state" in changes:
            raise ValueError("state changes must use compare_and_swap")
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            updated = replace(order, **changes)
            self._orders[order_id] = updated
            return replace(updated)

    def delete(self, order_id: str, expected: OrderState | None = None) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or (expected is not None and order.state != expected):
                return False
            del self._orders[order_id]
            return True

    def list(self) -> list[Order]:
        with self._lock:
            return [replace(o) for o in self._orders.values()]


def _aware(moment: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: (v.value if isinstance(v, OrderState) else v) for k, v in changes.items()}


def _to_order(row: OrderRecord) -> Order:
    return Order(
        order_id=row.order_id,
        product_id=row.product_id,
        required_amount=row.required_amount,
        rate_usd=row.rate_usd,
        deposit_address=row.deposit_address,
        deposit_secret=row.deposit_secret,
        state=OrderState(row.state),
        created_at=_aware(row.created_at),
        paid_amount=row.paid_amount,
        paid_tx=row.paid_tx,
        paid_at=_aware(row.paid_at),
        expires_at=_aware(row.expires_at),
        forwarded=bool(row.forwarded),
        forward_tx=row.forward_tx,
        forward_attempts=row.forward_attempts or 0,
        notification_email=row.notification_email,
    )


class SqlOrderStore(OrderStore):
    def __init__(self, url: str) -> None:
        self.engine = make_engine(url)
        self.SessionLocal = make_session_factory(self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get(self, order_id: str) -> Order | None:
        db = self.SessionLocal()
        try:
            row = db.get(OrderRecord, order_id)
            return _to_order(row) if row else None
        finally:
            db.close()

    def put(self, order: Order) -> bool:
        db = self.SessionLocal()
        try:
            values = _to_columns({f: getattr(order, f) for f in ORDER_FIELDS})
            db.add(OrderRecord(**values))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        finally:
            db.close()

    def _apply(self, order_id: str, expected: OrderState | None, changes: dict[str, Any]) -> Order | None:
        db = self.SessionLocal()
        try:
            stmt = update(OrderRecord).where(OrderRecord.order_id == order_id)
            if expected is not None:
                stmt = stmt.where(OrderRecord.state == expected.value)
            result = db.execute(stmt.values(**_to_columns(changes)))
            db.commit()
            if result.rowcount != 1:
                return None
            row = db.get(OrderRecord, order_id)
            return _to_order(row) if row else None
        finally:
            db.close()

    def compare_and_swap(
        self, order_id: str, expected: OrderState, changes: dict[str, Any]
    ) -> Order | None:
        _check_changes(changes)
        return self._apply(order_id, expected, changes)

    def update(self, order_id: str, changes: dict[str, Any]) -> Order | None:
        _check_changes(changes)
        if "state" in changes:
            raise ValueError("state changes must use compare_and_swap")
        return self._apply(order_id, None, changes)

    def delete(self, order_id: str, expected: OrderState | None = None) -> bool:
        db = self.SessionLocal()
        try:
            stmt = delete(OrderRecord).where(OrderRecord.order_id == order_id)
            if expected is not None:
                stmt = stmt.where(OrderRecord.state == expected.value)
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def list(self) -> list[Order]:
        db = self.SessionLocal()
        try:
            rows = db.execute(select(OrderRecord).order_by(OrderRecord.created_at)).scalars().all()
            return [_to_order(r) for r in rows]
        finally:
            db.close()


def get_order_store(database_url: str) -> OrderStore:
    if database_url:
        return SqlOrderStore(database_url)
    return InMemoryOrderStore()
