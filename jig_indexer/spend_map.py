"""Per-address spend maps.

A spend map answers "which transaction spent output ``txid:vout``?" for every
output that was spent by a transaction in one address's history, without a
remote call. It also remembers the small outputs those transactions created,
which is where jigs travel. Maps are built once from a full history scan and
never updated; anything they do not know is looked up live by the caller.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from jig_indexer.config import settings
from jig_indexer.metrics import spend_map_build_duration
from jig_indexer.models import TxOutput, outpoint_key, split_outpoint_key
from jig_indexer.resilience import RetryExhaustedException, Sleep

logger = structlog.get_logger(__name__)


class SpendMapBuildError(Exception):
    """A spend map could not be built completely."""
    pass


@dataclass
class SpendMap:
    """Snapshot of one address's spends and small outputs."""
    address: str
    spends: Dict[str, str] = field(default_factory=dict)
    dust_outputs: Dict[str, str] = field(default_factory=dict)
    escrow_outputs: List[str] = field(default_factory=list)
    tx_heights: Dict[str, Optional[int]] = field(default_factory=dict)
    tx_count: int = 0
    built_at: Optional[str] = None

    def __post_init__(self):
        self._outputs_by_tx: Dict[str, List[TxOutput]] = {}
        for key, address in self.dust_outputs.items():
            txid, vout = split_outpoint_key(key)
            self._outputs_by_tx.setdefault(txid, []).append(
                TxOutput(index=vout, value_sats=0, is_data_carrier=False, address=address)
            )
        for key in self.escrow_outputs:
            txid, vout = split_outpoint_key(key)
            self._outputs_by_tx.setdefault(txid, []).append(
                TxOutput(index=vout, value_sats=0, is_data_carrier=False, address=None)
            )
        for outputs in self._outputs_by_tx.values():
            outputs.sort(key=lambda o: o.index)

    def spending_txid(self, txid: str, vout: int) -> Optional[str]:
        spender = self.spends.get(outpoint_key(txid, vout))
        return spender if isinstance(spender, str) else None

    def dust_recipient(self, txid: str, vout: int) -> Optional[str]:
        return self.dust_outputs.get(outpoint_key(txid, vout))

    def small_outputs(self, txid: str) -> List[TxOutput]:
        """Dust and escrow outputs of ``txid`` in output order.

        Values are not kept in the map; every returned output is at or below
        the dust threshold the map was built with.
        """
        return list(self._outputs_by_tx.get(txid, []))

    def height_of(self, txid: str) -> Optional[int]:
        return self.tx_heights.get(txid)

    def to_document(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "spends": self.spends,
            "dust_outputs": self.dust_outputs,
            "escrow_outputs": self.escrow_outputs,
            "tx_heights": self.tx_heights,
            "tx_count": self.tx_count,
            "built_at": self.built_at,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "SpendMap":
        return cls(
            address=document["address"],
            spends=dict(document.get("spends") or {}),
            dust_outputs=dict(document.get("dust_outputs") or {}),
            escrow_outputs=list(document.get("escrow_outputs") or []),
            tx_heights=dict(document.get("tx_heights") or {}),
            tx_count=int(document.get("tx_count") or 0),
            built_at=document.get("built_at"),
        )


class SpendMapCache:
    """Builds, persists and serves spend maps.

    ``store`` needs ``load_spend_map(address)`` and
    ``save_spend_map(address, document)``; :class:`jig_indexer.database.Database`
    provides both.
    """

    def __init__(
        self,
        provider,
        store,
        dust_threshold_sats: int = None,
        rate_limit_cooldown: float = None,
        build_max_restarts: int = None,
        sleep: Optional[Sleep] = None,
    ):
        self.provider = provider
        self.store = store
        self.dust_threshold_sats = (
            settings.dust_threshold_sats if dust_threshold_sats is None else dust_threshold_sats
        )
        self.rate_limit_cooldown = (
            settings.rate_limit_cooldown if rate_limit_cooldown is None else rate_limit_cooldown
        )
        self.build_max_restarts = (
            settings.build_max_restarts if build_max_restarts is None else build_max_restarts
        )
        self.sleep = sleep or asyncio.sleep
        self._maps: Dict[str, SpendMap] = {}

    async def get(self, address: Optional[str]) -> Optional[SpendMap]:
        """Loaded spend map of an address, or None if it was never built."""
        if not address:
            return None
        if address in self._maps:
            return self._maps[address]
        document = await self.store.load_spend_map(address)
        if document is None:
            return None
        spend_map = SpendMap.from_document(document)
        self._maps[address] = spend_map
        return spend_map

    async def has_map(self, address: str) -> bool:
        return await self.get(address) is not None

    async def lookup_spend(self, address: Optional[str], txid: str, vout: int) -> Optional[str]:
        """Spending txid of ``txid:vout`` according to ``address``'s map."""
        spend_map = await self.get(address)
        return spend_map.spending_txid(txid, vout) if spend_map else None

    async def lookup_dust_recipient(self, address: Optional[str], txid: str, vout: int) -> Optional[str]:
        """Recipient of dust output ``txid:vout`` according to ``address``'s map."""
        spend_map = await self.get(address)
        return spend_map.dust_recipient(txid, vout) if spend_map else None

    async def successor_outputs(self, address: Optional[str], txid: str) -> List[TxOutput]:
        spend_map = await self.get(address)
        return spend_map.small_outputs(txid) if spend_map else []

    async def ensure_built(self, address: str) -> SpendMap:
        spend_map = await self.get(address)
        if spend_map is not None:
            return spend_map
        return await self.build(address)

    async def build(self, address: str) -> SpendMap:
        """Scan the full history of ``address`` and persist its spend map.

        An existing map is returned untouched.
        """
        existing = await self.get(address)
        if existing is not None:
            logger.info("Spend map already cached", address=address)
            return existing

        restarts = 0
        while True:
            try:
                spend_map = await self._scan(address)
                break
            except RetryExhaustedException as e:
                if restarts >= self.build_max_restarts:
                    raise SpendMapBuildError(
                        f"Rate limited building spend map for {address}"
                    ) from e
                restarts += 1
                logger.warning(
                    "Spend map build rate limited, cooling down",
                    address=address,
                    restart=restarts,
                    cooldown=self.rate_limit_cooldown
                )
                await self.sleep(self.rate_limit_cooldown)

        written = await self.store.save_spend_map(address, spend_map.to_document())
        if not written:
            # Another process finished first; its snapshot wins
            self._maps.pop(address, None)
            return await self.get(address)

        self._maps[address] = spend_map
        logger.info(
            "Spend map built",
            address=address,
            txs=spend_map.tx_count,
            spends=len(spend_map.spends),
            dust_outputs=len(spend_map.dust_outputs),
            escrow_outputs=len(spend_map.escrow_outputs)
        )
        return spend_map

    async def _scan(self, address: str) -> SpendMap:
        started = time.monotonic()
        history = await self._history(address)
        logger.info("Building spend map", address=address, txs=len(history))

        spend_map = SpendMap(address=address)
        for processed, (txid, height) in enumerate(history, start=1):
            tx = await self.provider.get_transaction(txid)
            for tx_input in tx.inputs:
                spend_map.spends[outpoint_key(tx_input.prev_txid, tx_input.prev_vout)] = txid
            for out in tx.outputs:
                if out.is_dust(self.dust_threshold_sats):
                    spend_map.dust_outputs[outpoint_key(txid, out.index)] = out.address
                elif out.is_escrow(self.dust_threshold_sats):
                    spend_map.escrow_outputs.append(outpoint_key(txid, out.index))
            spend_map.tx_heights[txid] = height if height is not None else tx.block_height

            if processed % 200 == 0:
                logger.info("Spend map progress", address=address, processed=processed, total=len(history))

        spend_map.tx_count = len(history)
        spend_map.built_at = datetime.now(timezone.utc).isoformat()
        spend_map_build_duration.observe(time.monotonic() - started)
        # Rebuild derived lookups from the filled fields
        return SpendMap.from_document(spend_map.to_document())

    async def _history(self, address: str):
        if hasattr(self.provider, "get_address_history_entries"):
            entries = await self.provider.get_address_history_entries(address)
            return [(e["tx_hash"], e.get("height")) for e in entries]
        return [(txid, None) for txid in await self.provider.get_address_history(address)]
