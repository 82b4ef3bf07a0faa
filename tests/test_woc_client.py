import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from jig_indexer.woc_client import ChainDataError, TransactionNotFound, WhatsOnChainClient

TXID = "ab" * 32
PREV = "cd" * 32
B = "1BobAddressxxxxxxxxxxxxxxxxxxxxxx"

TX_JSON = {
    "txid": TXID,
    "blockheight": 800000,
    "blocktime": 1700000000,
    "vin": [{"txid": PREV, "vout": 3}, {"coinbase": "00"}],
    "vout": [
        {"n": 0, "value": 0, "scriptPubKey": {"asm": "0 OP_RETURN 72756e 05", "type": "nulldata"}},
        {"n": 1, "value": 0.00000273, "scriptPubKey": {
            "asm": "OP_DUP OP_HASH160 00 OP_EQUALVERIFY OP_CHECKSIG",
            "addresses": [B],
            "type": "pubkeyhash",
        }},
    ],
}


@pytest.fixture
async def woc_server():
    state = {"rate_limited": 0, "tx_requests": 0}

    async def get_tx(request):
        state["tx_requests"] += 1
        txid = request.match_info["txid"]
        if txid == "missing":
            return web.json_response({"error": "unknown"}, status=404)
        if txid == "html":
            return web.Response(text="<html>maintenance</html>", content_type="text/html")
        if txid == "broken":
            return web.Response(text="upstream failure", status=500)
        if state["rate_limited"] > 0:
            state["rate_limited"] -= 1
            return web.Response(text="Too Many Requests", status=429)
        return web.json_response(TX_JSON)

    async def get_history(request):
        return web.json_response([
            {"tx_hash": PREV, "height": 799999},
            {"tx_hash": TXID, "height": 800000},
        ])

    async def get_info(request):
        return web.json_response({"chain": "main", "blocks": 800001})

    app = web.Application()
    app.router.add_get("/tx/hash/{txid}", get_tx)
    app.router.add_get("/address/{address}/history", get_history)
    app.router.add_get("/chain/info", get_info)

    server = TestServer(app)
    await server.start_server()
    yield server, state
    await server.close()


def client_for(server, sleep):
    return WhatsOnChainClient(
        base_url=str(server.make_url("/")),
        request_delay=0.25,
        rate_limit_delay=5.0,
        sleep=sleep,
    )


async def test_get_transaction_parses_record(woc_server, sleep):
    server, _ = woc_server
    async with client_for(server, sleep) as client:
        tx = await client.get_transaction(TXID)

    assert tx.txid == TXID
    assert tx.block_height == 800000
    assert [(i.prev_txid, i.prev_vout) for i in tx.inputs] == [(PREV, 3)]
    assert tx.outputs[0].is_data_carrier
    assert tx.outputs[1].value_sats == 273
    assert tx.outputs[1].address == B
    assert tx.outputs[1].is_dust(1000)
    assert sleep.delays == [0.25]


async def test_rate_limited_request_is_retried(woc_server, sleep):
    server, state = woc_server
    state["rate_limited"] = 2
    async with client_for(server, sleep) as client:
        tx = await client.get_transaction(TXID)

    assert tx.txid == TXID
    assert state["tx_requests"] == 3
    assert sleep.delays == [5.0, 5.0, 0.25]


async def test_unknown_transaction_raises_not_found(woc_server, sleep):
    server, _ = woc_server
    async with client_for(server, sleep) as client:
        with pytest.raises(TransactionNotFound):
            await client.get_transaction("missing")


async def test_server_error_raises_chain_data_error(woc_server, sleep):
    server, _ = woc_server
    async with client_for(server, sleep) as client:
        with pytest.raises(ChainDataError) as exc_info:
            await client.get_transaction("broken")

    assert exc_info.value.status == 500
    assert not isinstance(exc_info.value, TransactionNotFound)


async def test_non_json_answer_raises_chain_data_error(woc_server, sleep):
    server, _ = woc_server
    async with client_for(server, sleep) as client:
        with pytest.raises(ChainDataError) as exc_info:
            await client.get_transaction("html")

    assert exc_info.value.status == 200
    assert "Malformed response" in str(exc_info.value)
    assert sleep.delays == [0.25]


async def test_address_history_and_health(woc_server, sleep):
    server, _ = woc_server
    async with client_for(server, sleep) as client:
        history = await client.get_address_history(B)
        entries = await client.get_address_history_entries(B)
        healthy = await client.health_check()

    assert history == [PREV, TXID]
    assert entries[1]["height"] == 800000
    assert healthy


async def test_request_outside_context_fails(sleep):
    client = WhatsOnChainClient(base_url="http://localhost", request_delay=0, sleep=sleep)

    with pytest.raises(RuntimeError):
        await client.get_chain_info()
