from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any, Dict, Optional

import httpx

from services.errors import ProviderError
from settings.config import settings
from sync.base import FetchResult, MalformedRecord, SyncCredentials, bearer, day, get_json, page_delay, to_decimal
from transactions.models import EXPENSE, INCOME, CandidateTransaction


class EnableBankingAdapter:
    """
    European accounts via Enable Banking. Account uids come from the connection
    flow; pages chain through continuation_key.
    """

    name = "enable_banking"

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or settings.ENABLE_BANKING_API_URL).rstrip("/")

    async def fetch(self, client: httpx.AsyncClient, credentials: SyncCredentials, since: datetime, until: datetime) -> FetchResult:
        if not credentials.accounts:
            raise ProviderError(self.name, "no account uids supplied")
        headers = bearer(credentials.access_token)
        out = FetchResult()
        for account_uid in credentials.accounts:
            continuation: Optional[str] = None
            while True:
                params: Dict[str, Any] = {"date_from": day(since), "date_to": day(until)}
                if credentials.session_id:
                    params["session_id"] = credentials.session_id
                if continuation:
                    params["continuation_key"] = continuation
                page = await get_json(client, self.name, f"{self.base_url}/accounts/{account_uid}/transactions", headers, params=params)
                for tx in page.get("transactions") or []:
                    out.add(self.name, tx, lambda record: self.transform(record, account_uid), id_key="transaction_id")
                continuation = page.get("continuation_key")
                if not continuation:
                    break
                await page_delay()
        return out

    def transform(self, tx: Dict[str, Any], account_uid: str) -> CandidateTransaction:
        money = tx.get("transaction_amount") or {}
        signed = to_decimal(money.get("amount", tx.get("amount", 0)))
        indicator = tx.get("credit_debit_indicator")
        if indicator == "CRDT":
            direction = INCOME
        elif indicator == "DBIT":
            direction = EXPENSE
        else:
            direction = EXPENSE if signed < 0 else INCOME

        booked = tx.get("booking_date") or tx.get("value_date") or tx.get("transaction_date")
        if not booked:
            raise MalformedRecord("no booking, value or transaction date")
        txn_date = datetime.strptime(booked, "%Y-%m-%d").date()
        # Only a calendar date is provided; noon UTC keeps the incremental cursor on the right day
        stamp = datetime.combine(txn_date, time(12, 0), tzinfo=timezone.utc)

        creditor = (tx.get("creditor") or {}).get("name") or tx.get("creditor_name")
        debtor = (tx.get("debtor") or {}).get("name") or tx.get("debtor_name")
        counterparty = creditor if direction == EXPENSE else debtor
        remittance = tx.get("remittance_information")
        if isinstance(remittance, list):
            remittance = " ".join(str(r) for r in remittance if r)
        description = remittance or tx.get("description") or counterparty or "Unknown transaction"

        provider_id = tx.get("transaction_id") or tx.get("entry_reference")
        return CandidateTransaction(
            date=txn_date,
            description=description,
            amount=abs(signed),
            transaction_type=direction,
            currency=(money.get("currency") or tx.get("currency") or "EUR").upper(),
            source=self.name,
            merchant=counterparty,
            reference=tx.get("entry_reference"),
            confidence=100,
            provider_transaction_id=str(provider_id) if provider_id else None,
            provider_timestamp=stamp,
            raw_data={
                "account_uid": account_uid,
                "booking_date": tx.get("booking_date"),
                "value_date": tx.get("value_date"),
                "status": tx.get("status"),
                "creditor": creditor,
                "debtor": debtor,
            },
        )
