"""Direct ownership indexing: trace every numbered NFT that lacks an owner."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import structlog

from jig_indexer.config import settings
from jig_indexer.ledger import Ledger, LedgerStore
from jig_indexer.metrics import transfers_recorded
from jig_indexer.spend_map import SpendMapCache
from jig_indexer.tracer import OwnershipTracer, TraceAborted, TraceResult

logger = structlog.get_logger(__name__)


class MissingSpendMapError(Exception):
    """The minting address has no spend map and building one is disabled."""
    pass


@dataclass
class IndexRunReport:
    """Totals of one indexing run."""
    selected: int = 0
    indexed: int = 0
    transferred: int = 0
    burned: int = 0
    failed: int = 0
    remaining: int = 0
    unique_owners: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def commit_trace(ledger: Ledger, nft_id: str, result: TraceResult) -> int:
    """Write a trace result into the ledger.

    Returns:
        Number of transfers new to this record
    """
    nft = ledger.nfts[nft_id]
    known = {(t.txid, t.kind) for t in nft.transfers}
    added = sum(1 for t in result.transfers if (t.txid, t.kind) not in known)

    nft.transfers = list(result.transfers)
    ledger.set_owner(nft_id, result.owner)
    ledger.set_last_tx(nft_id, result.last_txid, result.last_vout)
    nft.burned = result.burned
    nft.burn_txid = result.burn_txid
    nft.hops = result.hops
    if nft.origin is None:
        nft.origin = nft.mint_txid
    if nft.block_height is None:
        nft.block_height = result.mint_block_height
    if nft.block_time is None:
        nft.block_time = result.mint_block_time
    return added


class OwnershipIndexer:
    """Traces NFTs in number order and commits owners to the ledger."""

    def __init__(
        self,
        ledger: Ledger,
        store: LedgerStore,
        tracer: OwnershipTracer,
        spend_maps: SpendMapCache,
        minting_address: str = None,
        save_every: int = None,
        auto_build_spend_map: bool = None,
    ):
        self.ledger = ledger
        self.store = store
        self.tracer = tracer
        self.spend_maps = spend_maps
        self.minting_address = minting_address or settings.minting_address
        self.save_every = save_every or settings.save_every
        self.auto_build_spend_map = (
            settings.auto_build_spend_map if auto_build_spend_map is None else auto_build_spend_map
        )

    async def _require_minting_map(self):
        if await self.spend_maps.has_map(self.minting_address):
            return
        if not self.auto_build_spend_map:
            raise MissingSpendMapError(
                f"No spend map for minting address {self.minting_address}; "
                f"run build-spendmap first"
            )
        logger.info("Building minting address spend map", address=self.minting_address)
        await self.spend_maps.ensure_built(self.minting_address)

    async def run(
        self,
        start: Optional[int] = None,
        batch_size: Optional[int] = None,
        refresh: bool = False,
    ) -> IndexRunReport:
        """Trace up to ``batch_size`` NFTs numbered ``start`` or higher.

        With ``refresh`` NFTs that already have an owner are traced again
        (burned NFTs never are).
        """
        await self._require_minting_map()

        start = settings.start_from if start is None else start
        batch_size = settings.batch_size if batch_size is None else batch_size
        selected = self.ledger.unowned_numbers(start, include_owned=refresh)[:batch_size]
        report = IndexRunReport(selected=len(selected))
        logger.info("Indexing ownership", selected=len(selected), start=start, refresh=refresh)

        for nft_id in selected:
            nft = self.ledger.nfts[nft_id]
            try:
                result = await self.tracer.trace(nft.mint_txid, self.minting_address)
            except TraceAborted as e:
                report.failed += 1
                logger.error("Failed to trace NFT", nft=nft_id, error=str(e))
                continue

            added = commit_trace(self.ledger, nft_id, result)
            transfers_recorded.inc(added)
            report.indexed += 1
            if result.burned:
                report.burned += 1
            if result.owner != self.minting_address:
                report.transferred += 1
                logger.info(
                    "NFT traced",
                    nft=nft_id,
                    sends=len(result.transfers) - 1,
                    owner=result.owner,
                    status=result.status.value
                )

            if report.indexed % self.save_every == 0:
                await self.store.flush(self.ledger)
                logger.info(
                    "Ledger saved",
                    indexed=report.indexed,
                    unique_owners=self.ledger.unique_owners()
                )

        await self.store.flush(self.ledger)
        report.remaining = len(self.ledger.unowned_numbers(start))
        report.unique_owners = self.ledger.unique_owners()
        logger.info("Indexing run complete", **report.to_dict())
        return report
