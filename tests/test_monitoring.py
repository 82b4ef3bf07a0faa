import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from jig_indexer.config import settings
from jig_indexer.database import LedgerPersistenceError
from jig_indexer.ledger import Ledger, LedgerStore
from jig_indexer.main import IndexerService
from jig_indexer.models import NFTRecord, Transfer, TransferKind
from jig_indexer.monitoring import MonitoringServer

from conftest import FakeChainProvider, dust, make_tx, op_return, run_asm, txid_for

A = "1AliceAddressxxxxxxxxxxxxxxxxxxxx"
MINT = txid_for("api-mint")


@pytest.fixture
def ledger():
    ledger = Ledger.empty()
    for n in range(1, 4):
        ledger.add_nft(NFTRecord(
            id=str(n), number=n, name=f"Rexxie #{n}", mint_txid=f"m{n}",
            owner=A if n < 3 else None,
            transfers=[Transfer(txid=f"m{n}", kind=TransferKind.MINT, to_address=A)],
        ))
    return ledger


@pytest.fixture
async def api(ledger, store):
    chain = FakeChainProvider([make_tx(MINT, outputs=[
        op_return(0, run_asm({
            "ref": [settings.class_origin],
            "exec": [{"op": "CALL", "data": [{"$jig": 0}, "mint", [A, {"name": "Fresh"}]]}],
        })),
        dust(1, A),
    ])])
    service = IndexerService(ledger, LedgerStore(store, name="test"), chain)
    server = MonitoringServer(service)
    client = TestClient(TestServer(server.app))
    await client.start_server()
    yield client, server
    await client.close()


async def test_health_and_status(api):
    client, _ = api

    health = await (await client.get("/health")).json()
    status = await (await client.get("/status")).json()

    assert health["status"] == "healthy"
    assert health["nfts"] == 3
    assert status["owned_nfts"] == 2
    assert status["unique_owners"] == 1
    assert status["indexing"] is False


async def test_nft_listing_is_paginated(api):
    client, _ = api

    response = await client.get("/nfts", params={"page": 2, "limit": 2})
    body = await response.json()

    assert [n["id"] for n in body["nfts"]] == ["3"]
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert (await client.get("/nfts", params={"page": "x"})).status == 400


async def test_nft_owner_and_history(api):
    client, _ = api

    nft = await (await client.get("/nft/1")).json()
    owner = await (await client.get(f"/owner/{A}")).json()
    history = await (await client.get("/history/2")).json()

    assert nft["owner"] == A
    assert owner["count"] == 2
    assert history["transfers"][0]["type"] == "mint"
    assert (await client.get("/nft/99")).status == 404
    assert (await client.get("/history/99")).status == 404


async def test_search(api):
    client, _ = api

    body = await (await client.get("/search", params={"q": "#3"})).json()
    empty = await (await client.get("/search")).json()

    assert [r["id"] for r in body["results"]] == ["3"]
    assert empty["count"] == 0


async def test_post_index_runs_discovery(api, ledger, store):
    client, server = api

    response = await client.post("/index", json={"txids": [MINT, "bogus"]})
    body = await response.json()
    await asyncio.gather(*server._tasks)

    assert body["added"] == 1
    assert ledger.nfts[MINT].name == "Fresh"
    assert MINT in store.ledgers["test"]["nfts"]


async def test_post_index_validates_body(api):
    client, _ = api

    assert (await client.post("/index", json={"txids": "abc"})).status == 400
    assert (await client.post("/index", data="not json")).status == 400


async def test_metrics_endpoint(api):
    client, _ = api

    response = await client.get("/metrics")

    assert response.status == 200
    assert "jig_indexer_owned_nfts" in await response.text()


async def test_metrics_scrape_does_not_stamp_the_ledger(api, ledger):
    client, _ = api
    ledger.collection.last_updated = "2024-01-01T00:00:00+00:00"

    body = await (await client.get("/metrics")).text()

    assert ledger.collection.last_updated == "2024-01-01T00:00:00+00:00"
    assert "jig_indexer_owned_nfts 2.0" in body


async def test_failed_save_shuts_the_service_down(api, store):
    client, server = api
    store.save_error = LedgerPersistenceError("disk full")

    response = await client.post("/index", json={"txids": [MINT]})
    await asyncio.gather(*server._tasks)

    assert response.status == 200
    assert server.service.shutdown_event.is_set()
    assert isinstance(server.service.fatal_error, LedgerPersistenceError)
    with pytest.raises(LedgerPersistenceError):
        await server.service.run_discovery()
