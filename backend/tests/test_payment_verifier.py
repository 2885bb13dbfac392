import httpx
import pytest

from bytron.errors import PaymentCheckFailed
from bytron.ledger import TronscanLedger
from bytron.payment_verifier import find_payment

ADDR = "TDepositAddr"
REQUIRED = 1_000_000_000


def tx(amount, to=ADDR, status="SUCCESS", tx_hash="h1", token="trx"):
    contract = 1 if token == "trx" else 2
    token_id = "_" if token == "trx" else "1002000"
    return {
        "hash": tx_hash,
        "toAddress": to,
        "amount": amount,
        "contractRet": status,
        "contractType": contract,
        "tokenInfo": {"tokenId": token_id, "tokenAbbr": token},
    }


def test_one_sun_short_never_satisfies():
    assert find_payment([tx(REQUIRED - 1)], ADDR, REQUIRED) is None


@pytest.mark.parametrize("amount", [REQUIRED, REQUIRED + 1000])
def test_exact_and_overpayment_satisfy(amount):
    payment = find_payment([tx(amount)], ADDR, REQUIRED)

    assert payment.amount == amount
    assert payment.tx_ref == "h1"


def test_ignores_other_destinations_and_failed_transfers():
    txs = [
        tx(REQUIRED, to="TSomeoneElse", tx_hash="a"),
        tx(REQUIRED, status="REVERT", tx_hash="b"),
        tx("not-a-number", tx_hash="c"),
        tx(str(REQUIRED), tx_hash="d"),
        tx(REQUIRED, tx_hash="e"),
    ]

    payment = find_payment(txs, ADDR, REQUIRED)

    assert payment.tx_ref == "d"
    assert payment.amount == REQUIRED


def test_nothing_found():
    assert find_payment([], ADDR, REQUIRED) is None


def test_token_transfers_are_not_trx():
    txs = [
        tx(REQUIRED, token="JUNK", tx_hash="t10"),
        {"hash": "bare", "toAddress": ADDR, "amount": REQUIRED, "contractRet": "SUCCESS"},
        dict(tx(REQUIRED, tx_hash="mixed"), contractType=2),
    ]

    assert find_payment(txs, ADDR, REQUIRED) is None
    assert find_payment(txs + [tx(REQUIRED, tx_hash="real")], ADDR, REQUIRED).tx_ref == "real"


async def test_ledger_query_shape():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["key"] = request.headers.get("TRON-PRO-API-KEY")
        return httpx.Response(200, json={"total": 1, "data": [tx(REQUIRED), "junk"]})

    ledger = TronscanLedger("https://tronscan.test/api/transaction", api_key="k", limit=50,
                            transport=httpx.MockTransport(handler))
    txs = await ledger.recent_transactions(ADDR)

    assert txs == [tx(REQUIRED)]
    assert seen["params"] == {"address": ADDR, "limit": "50", "sort": "-timestamp"}
    assert seen["key"] == "k"


async def test_ledger_missing_data_is_empty():
    ledger = TronscanLedger("https://tronscan.test/api/transaction",
                            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"total": 0})))
    assert await ledger.recent_transactions(ADDR) == []


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(429, json={"message": "rate limited"}),
        httpx.Response(200, content=b"<html>"),
        httpx.Response(200, json={"data": "nope"}),
    ],
)
async def test_ledger_errors_are_transient_failures(response):
    ledger = TronscanLedger("https://tronscan.test/api/transaction",
                            transport=httpx.MockTransport(lambda r: response))

    with pytest.raises(PaymentCheckFailed):
        await ledger.recent_transactions(ADDR)


async def test_ledger_connection_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    ledger = TronscanLedger("https://tronscan.test/api/transaction", transport=httpx.MockTransport(handler))

    with pytest.raises(PaymentCheckFailed):
        await ledger.recent_transactions(ADDR)
