from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from settings.config import settings
from sync.base import FetchResult, MalformedRecord, SyncCredentials, bearer, get_json, page_delay, parse_timestamp, to_decimal
from transactions.models import EXPENSE, INCOME, CandidateTransaction


PAGE_SIZE = 100


class MercadoPagoAdapter:
    """Payments search, newest first; direction comes from whether we are the collector."""

    name = "mercadopago"

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = (base_url or settings.MERCADOPAGO_API_URL).rstrip("/")

    async def fetch(self, client: httpx.AsyncClient, credentials: SyncCredentials, since: datetime, until: datetime) -> FetchResult:
        headers = bearer(credentials.access_token)
        me = await get_json(client, self.name, f"{self.base_url}/users/me", headers)
        my_id = str(me.get("id"))

        payments: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await get_json(
                client,
                self.name,
                f"{self.base_url}/v1/payments/search",
                headers,
                params={
                    "sort": "date_created",
                    "criteria": "desc",
                    "range": "date_created",
                    "begin_date": since.isoformat(),
                    "end_date": until.isoformat(),
                    "offset": offset,
                    "limit": PAGE_SIZE,
                },
            )
            results = page.get("results") or []
            payments.extend(results)
            offset += len(results)
            total = int((page.get("paging") or {}).get("total") or 0)
            if not results or offset >= total:
                break
            await page_delay()

        out = FetchResult()
        for payment in payments:
            out.add(self.name, payment, lambda record: self.transform(record, my_id))
        return out

    def transform(self, payment: Dict[str, Any], my_id: str) -> CandidateTransaction:
        if not payment.get("id"):
            raise MalformedRecord("payment without id")
        inbound = str(payment.get("collector_id")) == my_id
        amount = abs(to_decimal(payment.get("transaction_amount") or 0))
        if inbound:
            net = (payment.get("transaction_details") or {}).get("net_received_amount")
            if net:
                amount = abs(to_decimal(net))

        description = payment.get("description") or ""
        items = ((payment.get("additional_info") or {}).get("items")) or []
        titles = ", ".join(str(i.get("title")) for i in items if i.get("title"))
        if titles:
            description = f"{description} - {titles}" if description else titles
        if not description:
            description = "Pago recibido" if inbound else "Pago enviado"

        merchant = None
        if inbound:
            payer = payment.get("payer") or {}
            merchant = payer.get("email") or payer.get("first_name")

        created = parse_timestamp(payment.get("date_created"))
        if created is None:
            raise MalformedRecord("payment without date_created")
        return CandidateTransaction(
            date=created.date(),
            transaction_datetime=created,
            description=description,
            amount=amount.quantize(Decimal("0.01")),
            transaction_type=INCOME if inbound else EXPENSE,
            currency=(payment.get("currency_id") or "ARS").upper(),
            source=self.name,
            merchant=merchant,
            reference=str(payment.get("external_reference")) if payment.get("external_reference") else None,
            confidence=100,
            provider_transaction_id=str(payment.get("id")),
            provider_timestamp=created,
            raw_data={
                "id": payment.get("id"),
                "date_created": payment.get("date_created"),
                "date_approved": payment.get("date_approved"),
                "status": payment.get("status"),
                "status_detail": payment.get("status_detail"),
                "operation_type": payment.get("operation_type"),
                "payment_method_id": payment.get("payment_method_id"),
                "collector_id": payment.get("collector_id"),
                "transaction_amount": payment.get("transaction_amount"),
            },
        )
