"""In-memory ledger aggregate and its persistence cadence.

The ledger holds collection metadata, every NFT record, the owners index
(address -> NFT ids), and the discovery work list. It is loaded whole, mutated
only by the orchestrators, and flushed whole.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import structlog

from jig_indexer.config import settings
from jig_indexer.metrics import owned_nfts, queue_length
from jig_indexer.models import CollectionInfo, NFTRecord, Transfer, outpoint_key

logger = structlog.get_logger(__name__)


class Ledger:
    """Ownership ledger for one collection."""

    def __init__(
        self,
        collection: CollectionInfo,
        nfts: Optional[Dict[str, NFTRecord]] = None,
        owners: Optional[Dict[str, List[str]]] = None,
        processed: Optional[Iterable[str]] = None,
        queue: Optional[Iterable[str]] = None,
        deferrals: Optional[Dict[str, int]] = None,
    ):
        self.collection = collection
        self.nfts: Dict[str, NFTRecord] = nfts or {}
        self.owners: Dict[str, List[str]] = owners or {}
        self.processed: Set[str] = set(processed or [])
        self.queue: Deque[str] = deque(queue or [])
        self.deferrals: Dict[str, int] = dict(deferrals or {})
        self._by_location: Dict[str, str] = {}
        self._reindex_locations()

    @classmethod
    def empty(cls) -> "Ledger":
        return cls(CollectionInfo(
            name=settings.collection_name,
            protocol=settings.collection_protocol,
            class_origin=settings.class_origin,
            description=settings.collection_description,
        ))

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Ledger":
        processed = document.get("processed") or []
        # Older documents stored processed txids as {txid: true}
        if isinstance(processed, dict):
            processed = [txid for txid, done in processed.items() if done]
        return cls(
            collection=CollectionInfo.from_dict(document.get("collection") or {}),
            nfts={
                key: NFTRecord.from_dict({"id": key, **value})
                for key, value in (document.get("nfts") or {}).items()
            },
            owners={k: list(v) for k, v in (document.get("owners") or {}).items()},
            processed=processed,
            queue=document.get("queue") or [],
            deferrals=document.get("deferrals") or {},
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "collection": self.collection.to_dict(),
            "nfts": {key: nft.to_dict() for key, nft in self.nfts.items()},
            "owners": {k: list(v) for k, v in self.owners.items()},
            "ownership_indexed": self.owned_count(),
            "processed": sorted(self.processed),
            "queue": list(self.queue),
            "deferrals": dict(self.deferrals),
        }

    def _reindex_locations(self):
        self._by_location = {}
        for key, nft in self.nfts.items():
            if nft.last_txid:
                self._by_location[_location_key(nft.last_txid, nft.last_vout)] = key

    # Mutations

    def add_nft(self, nft: NFTRecord):
        """Insert a new record and index its owner."""
        self.nfts[nft.id] = nft
        if nft.last_txid:
            self._by_location[_location_key(nft.last_txid, nft.last_vout)] = nft.id
        if nft.owner:
            self._index_owner(nft.owner, nft.id)

    def set_owner(self, nft_id: str, owner: Optional[str]):
        """Change an NFT's owner and keep the owners index in step."""
        nft = self.nfts[nft_id]
        if nft.owner == owner:
            if owner:
                self._index_owner(owner, nft_id)
            return
        if nft.owner:
            self._unindex_owner(nft.owner, nft_id)
        nft.owner = owner
        if owner:
            self._index_owner(owner, nft_id)

    def set_last_tx(self, nft_id: str, txid: Optional[str], vout: Optional[int] = None):
        nft = self.nfts[nft_id]
        if nft.last_txid:
            previous = _location_key(nft.last_txid, nft.last_vout)
            if self._by_location.get(previous) == nft_id:
                del self._by_location[previous]
        nft.last_txid = txid
        nft.last_vout = vout
        if txid:
            self._by_location[_location_key(txid, vout)] = nft_id

    def append_transfer(self, nft_id: str, transfer: Transfer, vout: Optional[int] = None):
        """Record a send and move ownership to its recipient at output ``vout``."""
        self.nfts[nft_id].transfers.append(transfer)
        self.set_owner(nft_id, transfer.to_address)
        self.set_last_tx(nft_id, transfer.txid, vout)

    def _index_owner(self, owner: str, nft_id: str):
        held = self.owners.setdefault(owner, [])
        if nft_id not in held:
            held.append(nft_id)

    def _unindex_owner(self, owner: str, nft_id: str):
        held = self.owners.get(owner)
        if not held:
            return
        if nft_id in held:
            held.remove(nft_id)
        if not held:
            del self.owners[owner]

    def mark_processed(self, txid: str):
        self.processed.add(txid)
        self.deferrals.pop(txid, None)

    def touch(self):
        """Refresh collection counts and stamp the update time."""
        self.collection.total_indexed = len(self.nfts)
        self.collection.ownership_indexed = self.owned_count()
        self.collection.last_updated = datetime.now(timezone.utc).isoformat()
        self.refresh_gauges()

    def refresh_gauges(self):
        owned_nfts.set(self.owned_count())
        queue_length.set(len(self.queue))

    # Queries

    def get(self, nft_id: str) -> Optional[NFTRecord]:
        return self.nfts.get(nft_id)

    def find_by_location(self, txid: str, vout: Optional[int] = None) -> Optional[str]:
        """Id of the NFT last recorded at output ``txid:vout``.

        Records without a known output index match on ``txid`` alone.
        """
        if vout is not None:
            key = self._by_location.get(outpoint_key(txid, vout))
            if key is not None:
                return key
        return self._by_location.get(txid)

    def owner_of(self, nft_id: str) -> Optional[str]:
        nft = self.nfts.get(nft_id)
        return nft.owner if nft else None

    def history_of(self, nft_id: str) -> Optional[List[Transfer]]:
        nft = self.nfts.get(nft_id)
        return list(nft.transfers) if nft else None

    def held_by(self, address: str) -> List[NFTRecord]:
        return [self.nfts[i] for i in self.owners.get(address, []) if i in self.nfts]

    def owned_count(self) -> int:
        return sum(1 for nft in self.nfts.values() if nft.owner)

    def unique_owners(self) -> int:
        return len({nft.owner for nft in self.nfts.values() if nft.owner})

    def unowned_numbers(self, start: int = 1, include_owned: bool = False) -> List[str]:
        """Ids of numbered, traceable NFTs from ``start`` up, in number order."""
        selected = []
        for key, nft in self.nfts.items():
            number = nft.number if nft.number is not None else _as_number(key)
            if number is None or number < start or not nft.mint_txid or nft.burned:
                continue
            if nft.owner and not include_owned:
                continue
            selected.append((number, key))
        return [key for _, key in sorted(selected)]

    def search(self, query: str) -> List[NFTRecord]:
        q = query.lower()
        return [
            nft for nft in self.nfts.values()
            if q in (nft.name or "").lower() or q in (nft.description or "").lower()
        ]

    def page(self, page: int, limit: int) -> List[NFTRecord]:
        start = (page - 1) * limit
        return list(self.nfts.values())[start:start + limit]

    def summary(self) -> Dict[str, Any]:
        return {
            **self.collection.to_dict(),
            "total_nfts": len(self.nfts),
            "owned_nfts": self.owned_count(),
            "total_owners": len([a for a, held in self.owners.items() if held]),
            "burned_nfts": sum(1 for nft in self.nfts.values() if nft.burned),
            "processed_txs": len(self.processed),
            "queued_txs": len(self.queue),
        }


def _location_key(txid: str, vout: Optional[int]) -> str:
    return txid if vout is None else outpoint_key(txid, vout)


def _as_number(key: str) -> Optional[int]:
    try:
        return int(key)
    except ValueError:
        return None


class LedgerStore:
    """Loads and flushes one ledger document through the database."""

    def __init__(self, database, name: str = None):
        self.database = database
        self.name = name or settings.ledger_name

    async def load(self) -> Ledger:
        document = await self.database.load_ledger(self.name)
        if document is None:
            logger.info("No stored ledger, starting empty", name=self.name)
            return Ledger.empty()
        ledger = Ledger.from_document(document)
        logger.info(
            "Loaded ledger",
            name=self.name,
            nfts=len(ledger.nfts),
            processed=len(ledger.processed)
        )
        return ledger

    async def flush(self, ledger: Ledger):
        """Overwrite the stored document; failures propagate."""
        ledger.touch()
        await self.database.save_ledger(self.name, ledger.to_document())
        logger.debug("Ledger flushed", name=self.name, owned=ledger.collection.ownership_indexed)
