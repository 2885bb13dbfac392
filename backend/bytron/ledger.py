import logging

import httpx

from .errors import PaymentCheckFailed

logger = logging.getLogger("ledger")


class TronscanLedger:
    """Recent transactions touching an address, as reported by Tronscan."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        limit: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.limit = limit
        self._transport = transport

    async def recent_transactions(self, address: str) -> list[dict]:
        params = {"address": address, "limit": self.limit, "sort": "-timestamp"}
        headers = {"TRON-PRO-API-KEY": self.api_key} if self.api_key else {}

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.get(self.api_url, params=params, headers=headers, timeout=15)
                r.raise_for_status()
                payload = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[LEDGER] Transaction query failed for %s: %s", address, exc)
            raise PaymentCheckFailed("Ledger query failed") from exc

        if not isinstance(payload, dict):
            raise PaymentCheckFailed("Unexpected ledger payload")
        txs = payload.get("data") or []
        if not isinstance(txs, list):
            raise PaymentCheckFailed("Unexpected ledger payload")
        return [t for t in txs if isinstance(t, dict)]
