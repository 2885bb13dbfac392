import logging
from dataclasses import dataclass

from tronpy import AsyncTron
from tronpy.keys import PrivateKey
from tronpy.providers import AsyncHTTPProvider

from .errors import ForwardFailure, MintFailure
from .order_store import Order

logger = logging.getLogger("wallet")


@dataclass(frozen=True)
class DepositKey:
    address: str
    secret: str

    def __repr__(self) -> str:
        return f"DepositKey(address={self.address!r})"


class AddressMinter:
    """Fresh single-use TRON keypair per order."""

    def mint(self) -> DepositKey:
        try:
            key = PrivateKey.random()
            address = key.public_key.to_base58check_address()
        except Exception as exc:
            raise MintFailure("Could not generate deposit address") from exc
        return DepositKey(address=address, secret=key.hex())


@dataclass(frozen=True)
class ForwardResult:
    txid: str | None = None
    skipped: str | None = None

    @property
    def done(self) -> bool:
        return self.txid is not None


class FundForwarder:
    """Sweeps a paid deposit address to the owner wallet."""

    def __init__(
        self,
        owner_address: str,
        fee_buffer_sun: int = 1_000_000,
        api_url: str = "https://api.trongrid.io",
        api_key: str = "",
    ):
        self.owner_address = owner_address
        self.fee_buffer_sun = fee_buffer_sun
        self.api_url = api_url
        self.api_key = api_key

    def sweep_amount(self, order: Order) -> int:
        return int(order.paid_amount or 0) - self.fee_buffer_sun

    async def _broadcast(self, secret: str, from_address: str, amount: int) -> str:
        provider = AsyncHTTPProvider(self.api_url, api_key=self.api_key or None)
        async with AsyncTron(provider) as client:
            txb = client.trx.transfer(from_address, self.owner_address, amount)
            txn = await txb.build()
            ret = await txn.sign(PrivateKey(bytes.fromhex(secret))).broadcast()
            return ret.txid

    async def forward(self, order: Order) -> ForwardResult:
        if not self.owner_address:
            logger.warning("[FORWARD] OWNER_ADDRESS is not set, leaving funds on %s", order.deposit_address)
            return ForwardResult(skipped="no_owner")

        amount = self.sweep_amount(order)
        if amount <= 0:
            logger.info("[FORWARD] Order %s balance does not cover the fee buffer, skipping", order.order_id)
            return ForwardResult(skipped="insufficient")

        if not order.deposit_secret:
            raise ForwardFailure(f"Order {order.order_id} has no deposit secret")

        try:
            txid = await self._broadcast(order.deposit_secret, order.deposit_address, amount)
        except Exception as exc:
            raise ForwardFailure(f"Sweep of order {order.order_id} failed: {exc}") from exc

        logger.info("[FORWARD] Order %s swept %s SUN to owner, tx %s", order.order_id, amount, txid)
        return ForwardResult(txid=txid)
