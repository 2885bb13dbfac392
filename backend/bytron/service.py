import asyncio
import logging
from datetime import timedelta
from pathlib import Path

from .catalog import Catalog
from .config import Settings
from .errors import ForwardFailure, LinkExpired, MintFailure, NotPaid, PaymentCheckFailed
from .ledger import TronscanLedger
from .mailer import Mailer, receipt_text
from .order_store import Order, OrderState, OrderStore, get_order_store, new_order_id
from .payment_verifier import PaymentStatus, PaymentVerifier
from .price_oracle import PriceOracle, Quote
from .utils import now_utc
from .wallet import AddressMinter, FundForwarder

logger = logging.getLogger("orders")

MAX_ID_ATTEMPTS = 5


class OrderService:
    """Order lifecycle: quote, create, confirm payment, gate downloads."""

    def __init__(
        self,
        settings: Settings,
        store: OrderStore,
        oracle: PriceOracle,
        ledger,
        minter: AddressMinter,
        forwarder: FundForwarder,
        mailer: Mailer,
        catalog: Catalog | None = None,
        clock=now_utc,
    ):
        self.settings = settings
        self.store = store
        self.oracle = oracle
        self.minter = minter
        self.forwarder = forwarder
        self.mailer = mailer
        self.catalog = catalog or Catalog()
        self.clock = clock
        self.verifier = PaymentVerifier(
            store,
            ledger,
            window=timedelta(minutes=settings.DOWNLOAD_WINDOW_MINUTES),
            clock=clock,
            on_paid=self._forward,
        )
        self._forwarding: set[str] = set()

    # ---------- pricing ----------

    async def price(self, product_id: str) -> dict:
        product = self.catalog.get(product_id)
        quote = await self.oracle.quote(product.price_usd)
        return {
            "product": product.product_id,
            "price": product.price_usd,
            "rate": quote.rate_usd,
            "trx": quote.required_trx,
        }

    # ---------- orders ----------

    async def create_order(self, product_id: str) -> tuple[Order, Quote]:
        product = self.catalog.get(product_id)
        quote = await self.oracle.quote(product.price_usd)
        key = self.minter.mint()

        for _ in range(MAX_ID_ATTEMPTS):
            order = Order(
                order_id=new_order_id(),
                product_id=product.product_id,
                required_amount=quote.required_sun,
                rate_usd=quote.rate_usd,
                deposit_address=key.address,
                deposit_secret=key.secret,
                created_at=self.clock(),
            )
            if self.store.put(order):
                logger.info(
                    "[ORDER] Created %s for %s: %s SUN to %s",
                    order.order_id, product.product_id, order.required_amount, order.deposit_address,
                )
                return order, quote
        raise MintFailure("Could not allocate a unique order id")

    async def check_payment(self, order_id: str) -> PaymentStatus:
        return await self.verifier.check_payment(order_id)

    # ---------- forwarding ----------

    async def _forward(self, order: Order) -> None:
        if order.forwarded or order.order_id in self._forwarding:
            return
        self._forwarding.add(order.order_id)
        try:
            result = await self.forwarder.forward(order)
        except ForwardFailure:
            logger.exception("[FORWARD] Forwarding failed for order %s", order.order_id)
            self._count_failed_forward(order.order_id)
            return
        finally:
            self._forwarding.discard(order.order_id)

        if result.done:
            self.store.update(order.order_id, {"forwarded": True, "forward_tx": result.txid, "deposit_secret": None})
        elif result.skipped == "insufficient":
            self.store.update(order.order_id, {"deposit_secret": None})

    def _count_failed_forward(self, order_id: str) -> None:
        current = self.store.get(order_id)
        if current is None:
            return
        attempts = current.forward_attempts + 1
        self.store.update(order_id, {"forward_attempts": attempts})
        if attempts >= self.settings.FORWARD_MAX_ATTEMPTS:
            logger.error(
                "[FORWARD] Giving up on order %s after %s attempts, funds stay on %s for a manual sweep",
                order_id, attempts, current.deposit_address,
            )

    def _retry_allowed(self, order: Order) -> bool:
        if not self.forwarder.owner_address:
            return False
        return order.forward_attempts < self.settings.FORWARD_MAX_ATTEMPTS

    async def retry_forward(self, order_id: str) -> bool:
        order = self.store.get(order_id)
        if order is None or order.state == OrderState.CREATED or order.forwarded or not order.deposit_secret:
            return False
        await self._forward(order)
        current = self.store.get(order_id)
        return bool(current and current.forwarded)

    # ---------- downloads ----------

    def _paid_order(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None or order.state == OrderState.CREATED:
            raise NotPaid(order_id)
        if order.state == OrderState.EXPIRED:
            raise LinkExpired(order_id)
        if self.clock() > order.expires_at:
            self.store.compare_and_swap(order_id, OrderState.PAID, {"state": OrderState.EXPIRED})
            logger.info("[ORDER] Download window of %s has closed", order_id)
            raise LinkExpired(order_id)
        return order

    def authorize_download(self, order_id: str) -> tuple[Order, Path]:
        order = self._paid_order(order_id)
        product = self.catalog.get(order.product_id)
        return order, self.catalog.artifact_path(product, self.settings.FILES_DIR)

    def download_link(self, order_id: str) -> str:
        return f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}/download/{order_id}"

    async def send_receipt(self, order_id: str, email: str) -> bool:
        order = self._paid_order(order_id)
        order = self.store.update(order_id, {"notification_email": email}) or order

        body = receipt_text(
            order.order_id,
            order.product_id,
            self.download_link(order.order_id),
            order.expires_at.isoformat(),
        )
        await self.mailer.send(email, "Your download is ready", body)
        return True

    # ---------- housekeeping ----------

    async def reap(self) -> dict:
        now = self.clock()
        abandon_after = timedelta(hours=self.settings.ORDER_ABANDON_HOURS)
        retention = timedelta(hours=self.settings.PAID_RETENTION_HOURS)
        stats = {"removed": 0, "paid": 0, "forwarded": 0}

        for order in self.store.list():
            if order.state == OrderState.CREATED:
                if now - order.created_at < abandon_after:
                    continue
                # one last look so a late payment still resolves
                try:
                    status = await self.check_payment(order.order_id)
                except PaymentCheckFailed:
                    continue
                if status.paid:
                    stats["paid"] += 1
                elif self.verifier.busy(order.order_id):
                    # a buyer poll is still waiting on the ledger
                    pass
                elif self.store.delete(order.order_id, expected=OrderState.CREATED):
                    stats["removed"] += 1
                    logger.info("[REAPER] Dropped unpaid order %s (%s)", order.order_id, order.deposit_address)
                continue

            if not order.forwarded and order.deposit_secret:
                # kept while it holds the deposit key, even once retries stop
                if self._retry_allowed(order) and await self.retry_forward(order.order_id):
                    stats["forwarded"] += 1
                continue

            if order.expires_at and now - order.expires_at > retention:
                self.store.delete(order.order_id)
                stats["removed"] += 1
                logger.info("[REAPER] Dropped expired order %s", order.order_id)

        return stats

    async def run_reaper(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                stats = await self.reap()
            except Exception:
                logger.exception("[REAPER] Sweep failed")
                continue
            if any(stats.values()):
                logger.info("[REAPER] %s", stats)


def build_service(settings: Settings) -> OrderService:
    return OrderService(
        settings=settings,
        store=get_order_store(settings.DATABASE_URL),
        oracle=PriceOracle(
            [settings.PRICE_PRIMARY_URL, settings.PRICE_SECONDARY_URL],
            cache_seconds=settings.PRICE_CACHE_SECONDS,
            fallback_rate=settings.PRICE_FALLBACK_USD,
        ),
        ledger=TronscanLedger(
            settings.TRONSCAN_API_URL,
            api_key=settings.TRONSCAN_API_KEY,
            limit=settings.TRONSCAN_TX_LIMIT,
        ),
        minter=AddressMinter(),
        forwarder=FundForwarder(
            settings.OWNER_ADDRESS,
            fee_buffer_sun=settings.FORWARD_FEE_BUFFER_SUN,
            api_url=settings.TRONGRID_API_URL,
            api_key=settings.TRONGRID_API_KEY,
        ),
        mailer=Mailer(
            settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASS,
            sender=settings.SMTP_FROM,
        ),
    )
