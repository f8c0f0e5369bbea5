import httpx
import pytest
import pytest_asyncio

from db.postgres import get_async_session
from extraction.pattern_extractor import PatternExtractor
from main import get_app
from schemas.ingestion import IngestionResponse
from settings.deps import get_ingestion_service, get_quota_service, get_transaction_repo
from sync.sync_service import SyncService
from upload_service.ingestion_service import IngestionOrchestrator, IngestionService

from conftest import StubLlmExtractor


USER = "11111111-1111-1111-1111-111111111111"
CSV = b'Fecha,Descripcion,Monto\n01/03/2024,Kiosco,"-1.200,00"\n02/03/2024,Sueldo,"350.000,00"\n'


@pytest_asyncio.fixture
async def client(quota_service, normalizer, gate, txn_repo, monkeypatch):
    app = get_app()

    async def _ingestion():
        orchestrator = IngestionOrchestrator(PatternExtractor(), StubLlmExtractor(available=False), quota_service, threshold=60)
        return IngestionService(orchestrator, normalizer, gate)

    async def _quota():
        return quota_service

    async def _repo():
        return txn_repo

    async def _session():
        yield None

    app.dependency_overrides[get_ingestion_service] = _ingestion
    app.dependency_overrides[get_quota_service] = _quota
    app.dependency_overrides[get_transaction_repo] = _repo
    app.dependency_overrides[get_async_session] = _session

    def _sync_service(session, reference_currency=None):
        return SyncService(txn_repo, normalizer, gate, client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401))))

    monkeypatch.setattr("sync.sync_routes.sync_service_for", _sync_service)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["confidence_threshold"] == 60


@pytest.mark.asyncio
async def test_upload_document(client):
    resp = await client.post(
        "/ingestion/documents",
        headers={"X-User-ID": USER},
        files={"file": ("marzo.csv", CSV, "text/csv")},
        data={"currency": "ars"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["file"]["processing_method"] == "template"
    assert body["extraction"]["summary"]["total_transactions"] == 2
    assert body["extraction"]["summary"]["total_expenses"] == 1200.0
    assert body["metadata"]["inserted_count"] == 2


@pytest.mark.asyncio
async def test_upload_unsupported_type_is_enveloped(client):
    resp = await client.post("/ingestion/documents", headers={"X-User-ID": USER}, files={"file": ("scan.png", b"\x89PNG", "image/png")})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["kind"] == "unsupported_format"


@pytest.mark.asyncio
async def test_missing_user_header(client):
    resp = await client.get("/ai/quota")
    assert resp.status_code == 401
    resp = await client.get("/ai/quota", headers={"X-User-ID": "not-a-uuid"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_quota_endpoints(client):
    resp = await client.get("/ai/quota", headers={"X-User-ID": USER})
    assert resp.status_code == 200
    assert resp.json()["remaining"] == 20
    assert resp.json()["reset_date"] == "2024-04-01"

    history = await client.get("/ai/quota/history", params={"months": 3}, headers={"X-User-ID": USER})
    assert history.status_code == 200
    assert history.json()[0]["month"] == "2024-03"


@pytest.mark.asyncio
async def test_review_confirmation(client, txn_repo):
    await client.post("/ingestion/documents", headers={"X-User-ID": USER}, files={"file": ("marzo.csv", CSV, "text/csv")})
    ids = [str(r.id) for r in txn_repo.rows]
    for row in txn_repo.rows:
        row.needs_review = True

    resp = await client.post("/transactions/review", headers={"X-User-ID": USER}, json={"transaction_ids": ids})
    assert resp.json() == {"status": "ok", "updated": 2}
    assert not any(r.needs_review for r in txn_repo.rows)

    bad = await client.post("/transactions/review", headers={"X-User-ID": USER}, json={"transaction_ids": ["nope"]})
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_sync_route(client):
    unknown = await client.post("/sync/paypal", headers={"X-User-ID": USER}, json={"access_token": "t"})
    assert unknown.status_code == 404

    resp = await client.post("/sync/mercadopago", headers={"X-User-ID": USER}, json={"access_token": "t"})
    assert resp.status_code == 200
    assert resp.json()["error"]["kind"] == "provider_auth_error"


@pytest.mark.asyncio
async def test_sync_route_forwards_session_and_accounts(client, monkeypatch):
    seen = []

    class _Recorder:
        async def sync(self, user_id, provider, credentials, since=None):
            seen.append((provider, credentials, since))
            return IngestionResponse(success=True)

    monkeypatch.setattr("sync.sync_routes.sync_service_for", lambda session, reference_currency=None: _Recorder())
    resp = await client.post(
        "/sync/enable_banking",
        headers={"X-User-ID": USER},
        json={"access_token": "t", "accounts": ["uid-1"], "session_id": "sess-9", "since": "2024-03-01T00:00:00Z"},
    )

    assert resp.status_code == 200
    provider, credentials, since = seen[0]
    assert provider == "enable_banking"
    assert (credentials.accounts, credentials.session_id) == (["uid-1"], "sess-9")
    assert since == "2024-03-01T00:00:00Z"
