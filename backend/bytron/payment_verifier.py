import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .order_store import Order, OrderState, OrderStore
from .utils import now_utc

logger = logging.getLogger("verifier")

# Tronscan contract type of a plain TRX transfer; TRC10 transfers are type 2
TRANSFER_CONTRACT = 1


@dataclass(frozen=True)
class Payment:
    tx_ref: str
    amount: int


def _amount(tx: dict) -> int | None:
    try:
        return int(tx.get("amount"))
    except (TypeError, ValueError):
        return None


def _is_trx(tx: dict) -> bool:
    """Native TRX only. Token transfers carry ``amount`` in token units."""
    if tx.get("contractType") != TRANSFER_CONTRACT:
        return False
    token = tx.get("tokenInfo")
    if not token:
        return True
    if not isinstance(token, dict):
        return False
    return token.get("tokenId") == "_" or str(token.get("tokenAbbr", "")).lower() == "trx"


def find_payment(transactions: list[dict], address: str, required_amount: int) -> Payment | None:
    """First settled TRX transfer to ``address`` worth at least ``required_amount`` SUN.

    Overpayment is accepted, underpayment never is.
    """
    for tx in transactions:
        if tx.get("toAddress") != address:
            continue
        if tx.get("contractRet") != "SUCCESS":
            continue
        if not _is_trx(tx):
            continue
        amount = _amount(tx)
        if amount is None or amount < required_amount:
            continue
        return Payment(tx_ref=str(tx.get("hash") or ""), amount=amount)
    return None


@dataclass(frozen=True)
class PaymentStatus:
    paid: bool
    expires_at: datetime | None = None
    amount: int | None = None
    tx_ref: str | None = None


class PaymentVerifier:
    """Polls the ledger for an order's deposit and records the payment once.

    Nothing is written until a qualifying transaction shows up, so the check
    can be retried freely. The CREATED -> PAID swap has a single winner and
    only the winner runs ``on_paid``.
    """

    def __init__(self, store: OrderStore, ledger, window: timedelta, clock=now_utc, on_paid=None):
        self.store = store
        self.ledger = ledger
        self.window = window
        self.clock = clock
        self.on_paid = on_paid
        self._in_flight: dict[str, int] = {}

    def busy(self, order_id: str) -> bool:
        """True while some check for ``order_id`` is waiting on the ledger."""
        return self._in_flight.get(order_id, 0) > 0

    @staticmethod
    def _recorded(order: Order) -> PaymentStatus:
        return PaymentStatus(paid=True, expires_at=order.expires_at, amount=order.paid_amount, tx_ref=order.paid_tx)

    async def check_payment(self, order_id: str) -> PaymentStatus:
        self._in_flight[order_id] = self._in_flight.get(order_id, 0) + 1
        try:
            return await self._check(order_id)
        finally:
            left = self._in_flight.pop(order_id) - 1
            if left:
                self._in_flight[order_id] = left

    async def _check(self, order_id: str) -> PaymentStatus:
        order = self.store.get(order_id)
        if order is None:
            return PaymentStatus(paid=False)
        if order.state != OrderState.CREATED:
            return self._recorded(order)

        txs = await self.ledger.recent_transactions(order.deposit_address)
        payment = find_payment(txs, order.deposit_address, order.required_amount)
        if payment is None:
            return PaymentStatus(paid=False)

        paid_at = self.clock()
        won = self.store.compare_and_swap(
            order_id,
            OrderState.CREATED,
            {
                "state": OrderState.PAID,
                "paid_amount": payment.amount,
                "paid_tx": payment.tx_ref,
                "paid_at": paid_at,
                "expires_at": paid_at + self.window,
            },
        )
        if won is None:
            current = self.store.get(order_id)
            if current is None or current.state == OrderState.CREATED:
                return PaymentStatus(paid=False)
            return self._recorded(current)

        logger.info("[ORDER] Order %s paid %s SUN in tx %s", order_id, payment.amount, payment.tx_ref)
        if self.on_paid is not None:
            await self.on_paid(won)
        return self._recorded(won)
