"""Shared fixtures: an in-memory chain, stores and a recording sleep."""

import hashlib
import json
from typing import Any, Dict, List, Optional

import pytest

from jig_indexer.models import Transaction, TxInput, TxOutput

DUST = 273
MINTER = "1MinterAddressxxxxxxxxxxxxxxxxxxx"
CLASS_ORIGIN = "c1a55" * 12 + "c1a5"


def txid_for(label: str) -> str:
    return hashlib.sha256(label.encode()).hexdigest()


def run_asm(body: Dict[str, Any], app: Optional[str] = "rexxie", tag: str = "72756e") -> str:
    parts = ["0", "OP_RETURN", tag, "05"]
    if app is not None:
        parts.append(app.encode().hex())
    parts.append(json.dumps(body).encode().hex())
    return " ".join(parts)


def op_return(index: int, asm: str = "0 OP_RETURN 68656c6c6f") -> TxOutput:
    return TxOutput(index=index, value_sats=0, is_data_carrier=True, script_asm=asm,
                    script_type="nulldata")


def dust(index: int, address: str, sats: int = DUST) -> TxOutput:
    return TxOutput(index=index, value_sats=sats, is_data_carrier=False, address=address,
                    script_type="pubkeyhash")


def change(index: int, address: str, sats: int = 250_000) -> TxOutput:
    return TxOutput(index=index, value_sats=sats, is_data_carrier=False, address=address,
                    script_type="pubkeyhash")


def escrow(index: int, sats: int = DUST) -> TxOutput:
    return TxOutput(index=index, value_sats=sats, is_data_carrier=False, address=None,
                    script_type="nonstandard")


def make_tx(txid: str, inputs=(), outputs=(), block_height: Optional[int] = None,
            block_time: Optional[int] = None) -> Transaction:
    return Transaction(
        txid=txid,
        inputs=[TxInput(prev_txid=t, prev_vout=v) for t, v in inputs],
        outputs=list(outputs),
        block_height=block_height,
        block_time=block_time,
    )


class FakeChainProvider:
    """Chain data provider backed by a dict of transactions.

    Address histories are derived from the transactions: a transaction is in
    an address's history if it pays the address or spends one of its outputs.
    """

    def __init__(self, txs: List[Transaction] = ()):
        self.txs: Dict[str, Transaction] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[BaseException]] = {}
        for tx in txs:
            self.add(tx)

    def add(self, tx: Transaction) -> Transaction:
        self.txs[tx.txid] = tx
        return tx

    def fail(self, key: str, *errors: BaseException):
        """Raise ``errors`` in turn on the next calls for txid or address ``key``."""
        self.failures.setdefault(key, []).extend(errors)

    def _maybe_fail(self, key: str):
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    async def get_transaction(self, txid: str) -> Transaction:
        self.calls.append(("tx", txid))
        self._maybe_fail(txid)
        from jig_indexer.woc_client import TransactionNotFound
        if txid not in self.txs:
            raise TransactionNotFound(f"Not found: {txid}", status=404)
        return self.txs[txid]

    async def get_address_history(self, address: str) -> List[str]:
        self.calls.append(("history", address))
        self._maybe_fail(address)
        history = []
        for tx in self.txs.values():
            pays = any(o.address == address for o in tx.outputs)
            spends = False
            for i in tx.inputs:
                prev = self.txs.get(i.prev_txid)
                out = prev.output(i.prev_vout) if prev else None
                if out is not None and out.address == address:
                    spends = True
            if pays or spends:
                history.append(tx.txid)
        return history

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


class MemoryStore:
    """Dict-backed stand-in for :class:`jig_indexer.database.Database`."""

    def __init__(self):
        self.ledgers: Dict[str, Dict[str, Any]] = {}
        self.spend_maps: Dict[str, Dict[str, Any]] = {}
        self.ledger_saves = 0
        self.save_error: Optional[BaseException] = None

    async def load_ledger(self, name):
        document = self.ledgers.get(name)
        return json.loads(json.dumps(document)) if document is not None else None

    async def save_ledger(self, name, document):
        self.ledger_saves += 1
        if self.save_error is not None:
            raise self.save_error
        self.ledgers[name] = json.loads(json.dumps(document))

    async def load_spend_map(self, address):
        return self.spend_maps.get(address)

    async def save_spend_map(self, address, document):
        if address in self.spend_maps:
            return False
        self.spend_maps[address] = json.loads(json.dumps(document))
        return True


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return MemoryStore()
