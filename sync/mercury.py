from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from settings.config import settings
from sync.base import FetchResult, MalformedRecord, SyncCredentials, bearer, day, get_json, page_delay, parse_timestamp, to_decimal
from transactions.models import EXPENSE, INCOME, CandidateTransaction


PAGE_SIZE = 500


class MercuryAdapter:
    """Per-account transaction listing; a short page marks the end. Amount sign gives direction."""

    name = "mercury"

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or settings.MERCURY_API_URL).rstrip("/")

    async def fetch(self, client: httpx.AsyncClient, credentials: SyncCredentials, since: datetime, until: datetime) -> FetchResult:
        headers = bearer(credentials.access_token)
        listing = await get_json(client, self.name, f"{self.base_url}/accounts", headers)
        account_ids = [str(a.get("id")) for a in listing.get("accounts") or [] if a.get("id")]
        if credentials.accounts:
            account_ids = [a for a in account_ids if a in set(credentials.accounts)]

        out = FetchResult()
        for account_id in account_ids:
            offset = 0
            while True:
                page = await get_json(
                    client,
                    self.name,
                    f"{self.base_url}/account/{account_id}/transactions",
                    headers,
                    params={"start": day(since), "end": day(until), "limit": PAGE_SIZE, "offset": offset},
                )
                rows = page.get("transactions") or []
                for tx in rows:
                    out.add(self.name, tx, lambda record: self.transform(record, account_id))
                offset += len(rows)
                if len(rows) < PAGE_SIZE:
                    break
                await page_delay()
        return out

    def transform(self, tx: Dict[str, Any], account_id: str) -> CandidateTransaction:
        if not tx.get("id"):
            raise MalformedRecord("transaction without id")
        signed = to_decimal(tx.get("amount") or 0)
        stamp = parse_timestamp(tx.get("postedAt") or tx.get("createdAt"))
        if stamp is None:
            raise MalformedRecord("transaction without postedAt or createdAt")

        description = tx.get("bankDescription") or tx.get("externalMemo") or ""
        if tx.get("note"):
            description = f"{description} - {tx['note']}" if description else tx["note"]
        if not description:
            description = tx.get("kind") or "Transaction"

        return CandidateTransaction(
            date=stamp.date(),
            transaction_datetime=stamp,
            description=description,
            amount=abs(signed),
            transaction_type=INCOME if signed > 0 else EXPENSE,
            currency="USD",
            source=self.name,
            merchant=tx.get("counterpartyName") or tx.get("counterpartyNickname"),
            reference=tx.get("externalMemo"),
            confidence=100,
            provider_transaction_id=str(tx.get("id")),
            provider_timestamp=stamp,
            raw_data={
                "account_id": account_id,
                "kind": tx.get("kind"),
                "status": tx.get("status"),
                "postedAt": tx.get("postedAt"),
                "createdAt": tx.get("createdAt"),
                "counterpartyId": tx.get("counterpartyId"),
            },
        )
