"""Ownership tracing by following spends from an NFT's mint output.

A jig lives in a small output. Spending that output moves the jig into one
of the spending transaction's outputs, and the walk repeats from there until
it reaches an output nobody has spent yet. Spends are resolved from the
holder's spend map first and from the chain API when the map has no answer.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple

import structlog

from jig_indexer.config import settings
from jig_indexer.metrics import nfts_traced, trace_hops
from jig_indexer.models import Transaction, Transfer, TransferKind, TxOutput
from jig_indexer.resilience import TransientError
from jig_indexer.spend_map import SpendMapCache
from jig_indexer.woc_client import ChainDataError

logger = structlog.get_logger(__name__)


class TraceStatus(str, Enum):
    """Why a trace stopped."""
    UNSPENT = "unspent"
    BURNED = "burned"
    HOP_LIMIT = "hop_limit"
    CYCLE = "cycle"


class TraceAborted(Exception):
    """A remote lookup failed; the NFT keeps its previous ledger state."""
    pass


@dataclass
class TraceResult:
    """Outcome of tracing one NFT."""
    owner: Optional[str]
    transfers: List[Transfer]
    hops: int
    status: TraceStatus
    last_txid: str
    last_vout: int
    burn_txid: Optional[str] = None
    mint_block_height: Optional[int] = None
    mint_block_time: Optional[int] = None

    @property
    def burned(self) -> bool:
        return self.status is TraceStatus.BURNED


@dataclass
class _Cursor:
    txid: str
    vout: int
    holder: Optional[str]
    visited: Set[Tuple[str, int]] = field(default_factory=set)

    def move(self, txid: str, vout: int, holder: Optional[str]) -> bool:
        """Advance; False if the location was already visited."""
        self.txid, self.vout, self.holder = txid, vout, holder
        location = (txid, vout)
        if location in self.visited:
            return False
        self.visited.add(location)
        return True


class OwnershipTracer:
    """Follows an NFT from its mint output to its current holder.

    Successor selection for each spending transaction, in order:

    1. an order-lock (escrow) output: the NFT is listed, beneficial owner is
       unchanged, the walk continues from the escrow output;
    2. the first dust output: its address is the new holder;
    3. nothing qualifies: the NFT is burned and ownership freezes at the
       holder before the spend.
    """

    TX_CACHE_SIZE = 5000

    def __init__(
        self,
        provider,
        spend_maps: SpendMapCache,
        dust_threshold_sats: int = None,
        max_hops: int = None,
        nft_vout: int = None,
    ):
        self.provider = provider
        self.spend_maps = spend_maps
        self.dust_threshold_sats = (
            settings.dust_threshold_sats if dust_threshold_sats is None else dust_threshold_sats
        )
        self.max_hops = settings.max_hops if max_hops is None else max_hops
        self.nft_vout = settings.nft_vout if nft_vout is None else nft_vout
        self._tx_cache: "OrderedDict[str, Transaction]" = OrderedDict()

    async def trace(self, mint_txid: str, minter: Optional[str] = None,
                    vout: Optional[int] = None) -> TraceResult:
        """Trace the NFT minted in ``mint_txid``.

        Raises:
            TraceAborted: a chain lookup failed; nothing should be committed
        """
        try:
            return await self._trace(mint_txid, minter, self.nft_vout if vout is None else vout)
        except (TransientError, ChainDataError) as e:
            nfts_traced.labels(status="aborted").inc()
            logger.warning("Trace aborted", mint_txid=mint_txid, error=str(e))
            raise TraceAborted(f"Trace of {mint_txid} aborted: {e}") from e

    async def _trace(self, mint_txid: str, minter: Optional[str], vout: int) -> TraceResult:
        vout, minter, height, block_time = await self._mint_location(mint_txid, vout, minter)
        cursor = _Cursor(txid=mint_txid, vout=vout, holder=minter)
        cursor.visited.add((mint_txid, vout))
        transfers = [Transfer(
            txid=mint_txid,
            kind=TransferKind.MINT,
            to_address=minter,
            block_height=height,
            block_time=block_time,
        )]
        hops = 0
        status = TraceStatus.UNSPENT
        burn_txid = None

        while hops < self.max_hops:
            spender = await self.find_spend(cursor.txid, cursor.vout, cursor.holder)
            if spender is None:
                break

            hops += 1
            outputs, height, block_time = await self._spend_outputs(cursor.holder, spender)

            escrow = self._first(outputs, escrow=True)
            if escrow is not None:
                logger.debug("Escrow hop", txid=spender, vout=escrow.index, holder=cursor.holder)
                if not cursor.move(spender, escrow.index, cursor.holder):
                    status = TraceStatus.CYCLE
                    break
                continue

            dust = self._first(outputs, escrow=False)
            if dust is None:
                status = TraceStatus.BURNED
                burn_txid = spender
                logger.warning(
                    "No jig output in spending transaction, marking burned",
                    mint_txid=mint_txid,
                    spend_txid=spender,
                    owner=cursor.holder
                )
                break

            previous = cursor.holder
            if not cursor.move(spender, dust.index, dust.address):
                status = TraceStatus.CYCLE
                break
            if dust.address != previous:
                transfers.append(Transfer(
                    txid=spender,
                    kind=TransferKind.SEND,
                    from_address=previous,
                    to_address=dust.address,
                    block_height=height,
                    block_time=block_time,
                ))
        else:
            status = TraceStatus.HOP_LIMIT

        if status is TraceStatus.HOP_LIMIT:
            logger.warning("Hop ceiling reached", mint_txid=mint_txid, hops=hops, owner=cursor.holder)
        elif status is TraceStatus.CYCLE:
            logger.warning("Spend chain revisits an output", mint_txid=mint_txid,
                           txid=cursor.txid, vout=cursor.vout)

        nfts_traced.labels(status=status.value).inc()
        trace_hops.observe(hops)
        return TraceResult(
            owner=cursor.holder,
            transfers=transfers,
            hops=hops,
            status=status,
            last_txid=cursor.txid,
            last_vout=cursor.vout,
            burn_txid=burn_txid,
            mint_block_height=transfers[0].block_height,
            mint_block_time=transfers[0].block_time,
        )

    async def find_spend(self, txid: str, vout: int, holder: Optional[str]) -> Optional[str]:
        """Spending txid of ``txid:vout``, or None if it is unspent."""
        spender = await self.spend_maps.lookup_spend(holder, txid, vout)
        if spender is not None:
            return spender
        return await self.find_spend_on_chain(txid, vout, holder)

    async def find_spend_on_chain(self, txid: str, vout: int, holder: Optional[str]) -> Optional[str]:
        """Scan the holder's history for a transaction spending ``txid:vout``."""
        if not holder:
            tx = await self.get_transaction(txid)
            out = tx.output(vout)
            holder = out.address if out else None
            if not holder:
                return None

        for candidate in await self.provider.get_address_history(holder):
            if candidate == txid:
                continue
            tx = await self.get_transaction(candidate)
            if tx.spends(txid, vout):
                return candidate
        return None

    async def get_transaction(self, txid: str) -> Transaction:
        tx = self._tx_cache.get(txid)
        if tx is not None:
            self._tx_cache.move_to_end(txid)
            return tx
        tx = await self.provider.get_transaction(txid)
        self._tx_cache[txid] = tx
        if len(self._tx_cache) > self.TX_CACHE_SIZE:
            self._tx_cache.popitem(last=False)
        return tx

    async def _spend_outputs(self, holder: Optional[str], spender: str):
        spend_map = await self.spend_maps.get(holder)
        if spend_map is not None:
            outputs = spend_map.small_outputs(spender)
            if outputs:
                return outputs, spend_map.height_of(spender), None
        tx = await self.get_transaction(spender)
        return tx.outputs, tx.block_height, tx.block_time

    def _first(self, outputs: List[TxOutput], escrow: bool) -> Optional[TxOutput]:
        for out in sorted(outputs, key=lambda o: o.index):
            if escrow and out.is_escrow(self.dust_threshold_sats):
                return out
            if not escrow and out.is_dust(self.dust_threshold_sats):
                return out
        return None

    async def _mint_location(self, mint_txid: str, vout: int, minter: Optional[str]):
        """Check the configured mint output actually holds a jig."""
        recipient = await self.spend_maps.lookup_dust_recipient(minter, mint_txid, vout)
        if recipient is not None:
            spend_map = await self.spend_maps.get(minter)
            return vout, minter or recipient, spend_map.height_of(mint_txid), None

        tx = await self.get_transaction(mint_txid)
        out = tx.output(vout)
        if out is None or not out.is_dust(self.dust_threshold_sats):
            fallback = self._first(tx.outputs, escrow=False)
            if fallback is None:
                logger.warning("Mint transaction has no jig output", mint_txid=mint_txid, vout=vout)
                return vout, minter, tx.block_height, tx.block_time
            logger.warning(
                "Mint output is not a jig output, using first dust output",
                mint_txid=mint_txid,
                configured_vout=vout,
                vout=fallback.index
            )
            out = fallback
        return out.index, minter or out.address, tx.block_height, tx.block_time
