"""Discovery-driven indexing from a queue of Run transactions.

Transactions are taken from the front of the ledger's queue and decoded. Mints
of the tracked class create NFT records; sends move a known NFT to a new
owner. A send is matched to its NFT through the jig input: the NFT whose last
recorded output is the outpoint that input spends. When the input transaction
has not been seen yet, it is queued at the front and the send is re-queued at
the back, so dependencies resolve breadth-first with deferred retry. The
processed set and a per-run pop budget keep unresolved chains from running
away.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import structlog

from jig_indexer.config import settings
from jig_indexer.ledger import Ledger, LedgerStore
from jig_indexer.metrics import discovery_processed, transfers_recorded
from jig_indexer.models import NFTRecord, Transaction, Transfer, TransferKind, TxInput
from jig_indexer.payload import (
    ExecSummary, MethodCall, decode_run_payload, parse_exec, references_class, resolve_address
)
from jig_indexer.resilience import TransientError
from jig_indexer.woc_client import ChainDataError

logger = structlog.get_logger(__name__)

TXID_PATTERN = re.compile(r"^[a-f0-9]{64}$")

METADATA_FIELDS = ("name", "description", "image", "glb_model")


class Outcome(str, Enum):
    """Result of processing one queued transaction."""
    ALREADY_PROCESSED = "already_processed"
    NO_PAYLOAD = "no_payload"
    SKIPPED = "skipped"
    MINTED = "minted"
    SENT = "sent"
    DISCOVERED = "discovered"
    METADATA = "metadata"
    DEFERRED = "deferred"
    RETRY = "retry"
    FAILED = "failed"


@dataclass
class DiscoveryReport:
    """Totals of one discovery run."""
    popped: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    budget_exhausted: bool = False
    queued: int = 0
    nfts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "popped": self.popped,
            "outcomes": dict(self.outcomes),
            "budget_exhausted": self.budget_exhausted,
            "queued": self.queued,
            "nfts": self.nfts,
        }


def _jig_vout(output_index: int) -> int:
    """Transaction output holding Run output ``output_index`` (vout 0 is the payload)."""
    return output_index + 1


def _metadata_from(arg: Any) -> Dict[str, Any]:
    if not isinstance(arg, dict):
        return {}
    metadata = dict(arg)
    # Run apps use camelCase for the 3D model field
    if "glbModel" in metadata and "glb_model" not in metadata:
        metadata["glb_model"] = metadata["glbModel"]
    return metadata


class DiscoveryIndexer:
    """Processes the ledger's transaction queue."""

    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        provider,
        class_origin: str = None,
        jig_input_index: int = None,
        max_deferrals: int = None,
        save_every: int = None,
    ):
        self.ledger = ledger
        self.store = store
        self.provider = provider
        self.class_origin = class_origin or settings.class_origin
        self.jig_input_index = (
            settings.jig_input_index if jig_input_index is None else jig_input_index
        )
        self.max_deferrals = settings.max_deferrals if max_deferrals is None else max_deferrals
        self.save_every = save_every or settings.save_every
        self._in_flight: Optional[str] = None

    def enqueue(self, txids: Iterable[str]) -> int:
        """Add well-formed, unseen txids to the back of the queue.

        Safe to call while a run is in progress: the transaction being
        processed is not queued again.
        """
        added = 0
        for txid in txids:
            if not isinstance(txid, str) or not TXID_PATTERN.match(txid):
                logger.warning("Ignoring malformed txid", txid=txid)
                continue
            if txid in self.ledger.processed or txid in self.ledger.queue or txid == self._in_flight:
                continue
            self.ledger.queue.append(txid)
            added += 1
        return added

    def seed(self, txids: Optional[Iterable[str]] = None) -> int:
        return self.enqueue(settings.seed_txids if txids is None else txids)

    async def run(self, budget: Optional[int] = None) -> DiscoveryReport:
        """Pop at most ``budget`` transactions and flush the ledger."""
        budget = settings.discovery_budget if budget is None else budget
        counts: Counter = Counter()
        report = DiscoveryReport()
        logger.info(
            "Discovery starting",
            queued=len(self.ledger.queue),
            processed=len(self.ledger.processed)
        )

        while self.ledger.queue and report.popped < budget:
            txid = self.ledger.queue.popleft()
            report.popped += 1
            self._in_flight = txid
            try:
                outcome = await self.process(txid)
            finally:
                self._in_flight = None
            counts[outcome.value] += 1
            discovery_processed.labels(outcome=outcome.value).inc()
            if report.popped % self.save_every == 0:
                await self.store.flush(self.ledger)

        if self.ledger.queue and report.popped >= budget:
            report.budget_exhausted = True
            logger.warning("Discovery hit its budget", budget=budget, queued=len(self.ledger.queue))

        await self.store.flush(self.ledger)
        report.outcomes = dict(counts)
        report.queued = len(self.ledger.queue)
        report.nfts = len(self.ledger.nfts)
        logger.info("Discovery done", **report.to_dict())
        return report

    async def process(self, txid: str) -> Outcome:
        """Apply one transaction to the ledger."""
        if txid in self.ledger.processed:
            return Outcome.ALREADY_PROCESSED

        try:
            tx = await self.provider.get_transaction(txid)
        except TransientError as e:
            logger.warning("Transaction lookup failed, requeued", txid=txid, error=str(e))
            if txid not in self.ledger.queue:
                self.ledger.queue.append(txid)
            return Outcome.RETRY
        except ChainDataError as e:
            logger.error("Transaction lookup failed, skipping", txid=txid, error=str(e))
            self.ledger.mark_processed(txid)
            return Outcome.FAILED

        payload = decode_run_payload(tx)
        if payload is None:
            logger.debug("No Run payload", txid=txid)
            self.ledger.mark_processed(txid)
            return Outcome.NO_PAYLOAD

        summary = parse_exec(payload)
        uses_class = references_class(payload, self.class_origin)
        logger.info(
            "Processing Run transaction",
            txid=txid,
            operation=summary.operation,
            app=summary.app_name,
            uses_class=uses_class
        )

        if not uses_class and summary.operation != "send":
            self.ledger.mark_processed(txid)
            return Outcome.SKIPPED

        outcome = Outcome.SKIPPED
        if summary.operation == "mint":
            outcome = self._apply_mints(tx, summary)
        elif summary.operation == "send":
            outcome = self._apply_sends(tx, summary)
            if outcome is Outcome.DEFERRED:
                return outcome
        elif summary.operation == "updateMetadata":
            outcome = self._apply_metadata(tx, summary)

        self.ledger.mark_processed(txid)
        return outcome

    def _record_key(self, txid: str, index: int, count: int) -> str:
        return txid if count == 1 else f"{txid}_o{index + 1}"

    def _apply_mints(self, tx: Transaction, summary: ExecSummary) -> Outcome:
        mints = summary.calls_to("mint")
        creator = summary.creates[0] if summary.creates and isinstance(summary.creates[0], str) else None
        for index, call in enumerate(mints):
            key = self._record_key(tx.txid, index, len(mints))
            if key in self.ledger.nfts:
                continue
            owner = resolve_address(call.args[0]) if call.args else None
            metadata = _metadata_from(call.args[1] if len(call.args) > 1 else None)
            owner = owner or creator
            nft = NFTRecord(
                id=key,
                origin=tx.txid,
                mint_txid=tx.txid,
                name=metadata.get("name") or summary.app_name or "Unknown",
                description=metadata.get("description") or "",
                image=metadata.get("image"),
                glb_model=metadata.get("glb_model"),
                metadata=metadata,
                owner=owner,
                creator=creator,
                last_txid=tx.txid,
                last_vout=_jig_vout(summary.num_inputs + index),
                block_height=tx.block_height,
                block_time=tx.block_time,
                transfers=[Transfer(
                    txid=tx.txid,
                    kind=TransferKind.MINT,
                    to_address=owner,
                    block_height=tx.block_height,
                    block_time=tx.block_time,
                )],
            )
            self.ledger.add_nft(nft)
            transfers_recorded.inc()
            logger.info("Minted", nft=key, name=nft.name, owner=owner)
        return Outcome.MINTED

    def _jig_inputs(self, tx: Transaction, calls: List[MethodCall]) -> List[Optional[TxInput]]:
        """Outpoints spent by the jig inputs of each call."""
        inputs = []
        for offset in range(len(calls)):
            index = self.jig_input_index + offset
            inputs.append(tx.inputs[index] if index < len(tx.inputs) else None)
        return inputs

    def _resolve_origin(self, tx_input: Optional[TxInput]) -> Optional[str]:
        if tx_input is None:
            return None
        return self.ledger.find_by_location(tx_input.prev_txid, tx_input.prev_vout)

    def _defer(self, txid: str, dependencies: List[str]) -> bool:
        """Queue dependencies ahead of ``txid``; False once it was deferred enough."""
        deferred = self.ledger.deferrals.get(txid, 0)
        if deferred >= self.max_deferrals:
            logger.warning("Giving up on send dependencies", txid=txid, deferrals=deferred)
            return False
        self.ledger.deferrals[txid] = deferred + 1
        for dependency in reversed(dependencies):
            if dependency in self.ledger.queue:
                self.ledger.queue.remove(dependency)
            self.ledger.queue.appendleft(dependency)
            logger.info("Queueing input transaction", txid=dependency, for_txid=txid)
        if txid not in self.ledger.queue:
            self.ledger.queue.append(txid)
        return True

    def _apply_sends(self, tx: Transaction, summary: ExecSummary) -> Outcome:
        sends = summary.calls_to("send")
        if not sends:
            return Outcome.SKIPPED
        inputs = self._jig_inputs(tx, sends)
        origins = [self._resolve_origin(i) for i in inputs]

        pending = []
        for tx_input, origin in zip(inputs, origins):
            if origin is None and tx_input is not None and tx_input.prev_txid not in self.ledger.processed:
                if tx_input.prev_txid not in pending:
                    pending.append(tx_input.prev_txid)
        if pending and self._defer(tx.txid, pending):
            return Outcome.DEFERRED

        outcome = Outcome.SENT
        for index, (call, origin) in enumerate(zip(sends, origins)):
            send_to = resolve_address(call.args[0]) if call.args else None
            if origin is not None:
                nft = self.ledger.nfts[origin]
                self.ledger.append_transfer(origin, Transfer(
                    txid=tx.txid,
                    kind=TransferKind.SEND,
                    from_address=nft.owner,
                    to_address=send_to,
                    block_height=tx.block_height,
                    block_time=tx.block_time,
                ), vout=_jig_vout(index))
                logger.info("Send", nft=origin, name=nft.name, to=send_to)
            else:
                key = self._record_key(tx.txid, index, len(sends))
                if key in self.ledger.nfts:
                    continue
                self.ledger.add_nft(NFTRecord(
                    id=key,
                    origin=key,
                    name=summary.app_name or "Unknown",
                    owner=send_to,
                    last_txid=tx.txid,
                    last_vout=_jig_vout(index),
                    block_height=tx.block_height,
                    block_time=tx.block_time,
                    transfers=[Transfer(
                        txid=tx.txid,
                        kind=TransferKind.SEND_DISCOVERED,
                        to_address=send_to,
                        block_height=tx.block_height,
                        block_time=tx.block_time,
                    )],
                ))
                outcome = Outcome.DISCOVERED
                logger.info("New NFT from send", nft=key, to=send_to)
            transfers_recorded.inc()
        return outcome

    def _apply_metadata(self, tx: Transaction, summary: ExecSummary) -> Outcome:
        updates = summary.calls_to("updateMetadata")
        applied = False
        for index, (call, tx_input) in enumerate(zip(updates, self._jig_inputs(tx, updates))):
            origin = self._resolve_origin(tx_input)
            if origin is None:
                continue
            nft = self.ledger.nfts[origin]
            metadata = _metadata_from(call.args[0] if call.args else None)
            for name in METADATA_FIELDS:
                if metadata.get(name):
                    setattr(nft, name, metadata[name])
            nft.metadata = {**nft.metadata, **metadata}
            self.ledger.set_last_tx(origin, tx.txid, _jig_vout(index))
            applied = True
            logger.info("Updated metadata", nft=origin, name=nft.name)
        return Outcome.METADATA if applied else Outcome.SKIPPED
