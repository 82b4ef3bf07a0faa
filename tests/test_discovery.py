from collections import deque

import pytest

from jig_indexer.discovery import DiscoveryIndexer, Outcome
from jig_indexer.ledger import Ledger, LedgerStore
from jig_indexer.models import TransferKind
from jig_indexer.woc_client import TransientChainError

from conftest import CLASS_ORIGIN, FakeChainProvider, dust, make_tx, op_return, run_asm, txid_for

A = "1AliceAddressxxxxxxxxxxxxxxxxxxxx"
B = "1BobAddressxxxxxxxxxxxxxxxxxxxxxx"
C = "1CarolAddressxxxxxxxxxxxxxxxxxxxx"

MINT = txid_for("mint")
SEND = txid_for("send")
FUND = txid_for("fund")
OTHER = txid_for("other")


def call(method, args):
    return {"op": "CALL", "data": [{"$jig": 0}, method, args]}


def run_tx(txid, body, inputs=(), recipient=A):
    return make_tx(txid, inputs=inputs,
                   outputs=[op_return(0, run_asm(body)), dust(1, recipient)],
                   block_height=100)


def mint_tx(txid=MINT, calls=None):
    calls = calls or [call("mint", [A, {"name": "Rexxie #1", "image": "b://img", "glbModel": "b://glb"}])]
    return run_tx(txid, {"in": 0, "ref": [f"{CLASS_ORIGIN}_o1"], "cre": [A], "exec": calls})


def send_tx(txid=SEND, jig_input=MINT, to=B):
    return run_tx(txid, {"in": 1, "ref": [], "exec": [call("send", [to])]},
                  inputs=[(FUND, 0), (jig_input, 1)], recipient=to)


@pytest.fixture
def chain():
    return FakeChainProvider([mint_tx(), send_tx()])


def discovery_for(chain, store, ledger=None, **kwargs):
    ledger = ledger or Ledger.empty()
    kwargs.setdefault("max_deferrals", 3)
    indexer = DiscoveryIndexer(
        ledger, LedgerStore(store, name="test"), chain,
        class_origin=CLASS_ORIGIN, jig_input_index=1, save_every=50, **kwargs
    )
    return indexer, ledger


async def test_mint_then_send(chain, store):
    discovery, ledger = discovery_for(chain, store)
    discovery.enqueue([MINT, SEND])

    report = await discovery.run(budget=10)

    nft = ledger.nfts[MINT]
    assert nft.owner == B
    assert nft.name == "Rexxie #1"
    assert nft.glb_model == "b://glb"
    assert nft.creator == A
    assert [(t.kind, t.from_address, t.to_address) for t in nft.transfers] == [
        (TransferKind.MINT, None, A),
        (TransferKind.SEND, A, B),
    ]
    assert ledger.owners == {B: [MINT]}
    assert ledger.find_by_location(SEND, 1) == MINT
    assert report.outcomes == {"minted": 1, "sent": 1}
    assert store.ledgers["test"]["nfts"][MINT]["owner"] == B


async def test_send_before_its_input_is_deferred(chain, store):
    discovery, ledger = discovery_for(chain, store)

    outcome = await discovery.process(SEND)

    assert outcome is Outcome.DEFERRED
    assert ledger.queue == deque([MINT, SEND])
    assert SEND not in ledger.processed
    assert ledger.deferrals[SEND] == 1


async def test_deferred_send_resolves_after_input(chain, store):
    discovery, ledger = discovery_for(chain, store)
    discovery.enqueue([SEND])

    report = await discovery.run(budget=10)

    assert ledger.owner_of(MINT) == B
    assert report.outcomes == {"deferred": 1, "minted": 1, "sent": 1}
    assert SEND not in ledger.deferrals
    assert not ledger.queue


async def test_send_gives_up_after_max_deferrals(store):
    stuck = txid_for("stuck")
    chain = FakeChainProvider([send_tx(jig_input=stuck)])
    chain.fail(stuck, *[TransientChainError("timeout") for _ in range(10)])
    discovery, ledger = discovery_for(chain, store, max_deferrals=2)
    discovery.enqueue([SEND])

    report = await discovery.run(budget=6)

    nft = ledger.nfts[SEND]
    assert nft.owner == B
    assert [t.kind for t in nft.transfers] == [TransferKind.SEND_DISCOVERED]
    assert SEND in ledger.processed
    assert report.outcomes["deferred"] == 2
    assert report.outcomes["retry"] == 3
    assert report.budget_exhausted
    assert list(ledger.queue) == [stuck]


async def test_send_with_unrelated_input_creates_partial_record(store):
    chain = FakeChainProvider([make_tx(OTHER, outputs=[dust(0, A)]), send_tx(jig_input=OTHER)])
    discovery, ledger = discovery_for(chain, store)
    discovery.enqueue([OTHER, SEND])

    report = await discovery.run(budget=10)

    assert report.outcomes == {"no_payload": 1, "discovered": 1}
    assert ledger.nfts[SEND].mint_txid is None
    assert ledger.owners == {B: [SEND]}


async def test_foreign_class_is_skipped(store):
    foreign = run_tx(OTHER, {"ref": ["f" * 64], "exec": [call("mint", [A])]})
    discovery, ledger = discovery_for(FakeChainProvider([foreign]), store)

    assert await discovery.process(OTHER) is Outcome.SKIPPED
    assert OTHER in ledger.processed
    assert not ledger.nfts


async def test_several_mints_get_output_keys(store):
    tx = mint_tx(calls=[call("mint", [A, {"name": "One"}]), call("mint", [[B], {"name": "Two"}])])
    discovery, ledger = discovery_for(FakeChainProvider([tx]), store)

    assert await discovery.process(MINT) is Outcome.MINTED

    assert ledger.nfts[f"{MINT}_o1"].owner == A
    assert ledger.nfts[f"{MINT}_o2"].owner == B
    assert ledger.nfts[f"{MINT}_o2"].name == "Two"


async def test_send_moves_only_the_jig_at_the_spent_output(store):
    tx = mint_tx(calls=[call("mint", [A, {"name": "One"}]), call("mint", [A, {"name": "Two"}])])
    discovery, ledger = discovery_for(FakeChainProvider([tx, send_tx(to=C)]), store)
    discovery.enqueue([MINT, SEND])

    await discovery.run(budget=10)

    assert ledger.nfts[f"{MINT}_o1"].owner == C
    assert ledger.nfts[f"{MINT}_o2"].owner == A
    assert ledger.owners == {A: [f"{MINT}_o2"], C: [f"{MINT}_o1"]}
    assert ledger.find_by_location(MINT, 2) == f"{MINT}_o2"


async def test_second_mint_output_resolves_by_vout(store):
    tx = mint_tx(calls=[call("mint", [A, {"name": "One"}]), call("mint", [A, {"name": "Two"}])])
    second = run_tx(SEND, {"in": 1, "ref": [], "exec": [call("send", [C])]},
                    inputs=[(FUND, 0), (MINT, 2)], recipient=C)
    discovery, ledger = discovery_for(FakeChainProvider([tx, second]), store)
    discovery.enqueue([MINT, SEND])

    report = await discovery.run(budget=10)

    assert ledger.nfts[f"{MINT}_o1"].owner == A
    assert ledger.nfts[f"{MINT}_o2"].owner == C
    assert report.outcomes == {"minted": 1, "sent": 1}


async def test_update_metadata(chain, store):
    update = txid_for("update")
    chain.add(run_tx(update, {"ref": [CLASS_ORIGIN], "exec": [call("updateMetadata", [{"name": "Renamed"}])]},
                     inputs=[(FUND, 0), (MINT, 1)]))
    discovery, ledger = discovery_for(chain, store)
    discovery.enqueue([MINT, update])

    await discovery.run(budget=10)

    assert ledger.nfts[MINT].name == "Renamed"
    assert ledger.nfts[MINT].image == "b://img"
    assert ledger.find_by_location(update, 1) == MINT


async def test_missing_transaction_is_not_retried(store):
    discovery, ledger = discovery_for(FakeChainProvider(), store)

    assert await discovery.process(OTHER) is Outcome.FAILED
    assert OTHER in ledger.processed
    assert await discovery.process(OTHER) is Outcome.ALREADY_PROCESSED


async def test_enqueue_filters_txids(chain, store):
    discovery, ledger = discovery_for(chain, store)
    ledger.processed.add(MINT)

    added = discovery.enqueue([MINT, SEND, SEND, "not-a-txid", 42, SEND.upper()])

    assert added == 1
    assert list(ledger.queue) == [SEND]


async def test_enqueue_during_a_run_skips_the_transaction_in_flight(chain, store):
    discovery, ledger = discovery_for(chain, store)
    fetch = chain.get_transaction

    async def get_transaction(txid):
        # an API request arriving while the transaction is being fetched
        discovery.enqueue([MINT, SEND])
        return await fetch(txid)

    chain.get_transaction = get_transaction
    discovery.enqueue([MINT])

    report = await discovery.run(budget=10)

    assert report.outcomes == {"minted": 1, "sent": 1}
    assert not ledger.queue
    assert ledger.owner_of(MINT) == B


async def test_seed_queues_configured_txids(chain, store):
    discovery, ledger = discovery_for(chain, store)

    assert discovery.seed() == 2
    assert discovery.seed() == 0
    assert len(ledger.queue) == 2
