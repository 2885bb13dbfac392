import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bytron.config import Settings
from bytron.errors import PaymentCheckFailed
from bytron.order_store import InMemoryOrderStore
from bytron.price_oracle import PriceOracle
from bytron.service import OrderService
from bytron.wallet import AddressMinter, FundForwarder

OWNER = "TLsV52sRDL79HXGGm9yzwKibb6BeruhUzy"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeLedger:
    def __init__(self):
        self.txs = {}
        self.calls = 0
        self.fail = False
        # when set, the next query waits on it before reading the ledger
        self.gate = None

    def pay(self, address, amount, tx_hash="abc123", status="SUCCESS", token=None):
        tx = {"hash": tx_hash, "toAddress": address, "amount": amount, "contractRet": status}
        if token is None:
            tx.update(contractType=1, tokenInfo={"tokenId": "_", "tokenAbbr": "trx"})
        else:
            tx.update(contractType=2, tokenInfo={"tokenId": "1002000", "tokenAbbr": token})
        self.txs.setdefault(address, []).append(tx)

    async def recent_transactions(self, address):
        self.calls += 1
        gate, self.gate = self.gate, None
        if gate is not None:
            await gate.wait()
        else:
            # give concurrent checks a chance to interleave
            await asyncio.sleep(0)
        if self.fail:
            raise PaymentCheckFailed("ledger down")
        return list(self.txs.get(address, []))


class RecordingForwarder(FundForwarder):
    def __init__(self, owner_address=OWNER, fee_buffer_sun=1_000_000, fail=False):
        super().__init__(owner_address, fee_buffer_sun=fee_buffer_sun)
        self.sent = []
        self.fail = fail
        self.attempts = 0

    async def _broadcast(self, secret, from_address, amount):
        self.attempts += 1
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("broadcast rejected")
        self.sent.append((from_address, amount))
        return f"sweep-{len(self.sent)}"


class FakeMailer:
    def __init__(self, ok=True):
        self.sent = []
        self.ok = ok

    async def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return self.ok


class RateFeed:
    """CoinGecko-shaped upstream with a mutable rate."""

    def __init__(self, rate=0.10):
        self.rate = rate
        self.calls = 0
        self.down = False

    def handler(self, request):
        self.calls += 1
        if self.down:
            return httpx.Response(503)
        return httpx.Response(200, json={"tron": {"usd": self.rate}})

    def oracle(self, fallback=0.12, cache_seconds=300, monotonic=None):
        kwargs = {"monotonic": monotonic} if monotonic else {}
        return PriceOracle(
            ["https://prices.test/coingecko"],
            cache_seconds=cache_seconds,
            fallback_rate=fallback,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


@pytest.fixture
def settings(tmp_path):
    files = tmp_path / "files"
    files.mkdir()
    (files / "luckyjet.zip").write_bytes(b"PK\x03\x04luckyjet")
    return Settings(FILES_DIR=str(files), DOWNLOAD_WINDOW_MINUTES=30, PUBLIC_BASE_URL="https://shop.test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def feed():
    return RateFeed()


@pytest.fixture
def forwarder():
    return RecordingForwarder()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def service(settings, store, feed, ledger, forwarder, mailer, clock):
    return OrderService(
        settings=settings,
        store=store,
        oracle=feed.oracle(),
        ledger=ledger,
        minter=AddressMinter(),
        forwarder=forwarder,
        mailer=mailer,
        clock=clock,
    )
