"""Chain records and ledger records used by the indexer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


SATS_PER_COIN = 100_000_000


def outpoint_key(txid: str, vout: int) -> str:
    """Key for a transaction output, ``txid:vout``."""
    return f"{txid}:{vout}"


def split_outpoint_key(key: str):
    """Inverse of :func:`outpoint_key`."""
    txid, _, vout = key.rpartition(":")
    return txid, int(vout)


@dataclass(frozen=True)
class TxInput:
    """Reference to the output an input spends."""
    prev_txid: str
    prev_vout: int


@dataclass(frozen=True)
class TxOutput:
    """A transaction output as reported by the chain API."""
    index: int
    value_sats: int
    is_data_carrier: bool
    address: Optional[str] = None
    script_asm: str = ""
    script_type: Optional[str] = None

    def is_dust(self, threshold_sats: int) -> bool:
        """Low-value output paying an address; jigs live in these."""
        return (
            not self.is_data_carrier
            and self.address is not None
            and self.value_sats <= threshold_sats
        )

    def is_escrow(self, threshold_sats: int) -> bool:
        """Low-value output locked by a non-standard script (an order lock)."""
        return (
            not self.is_data_carrier
            and self.address is None
            and self.value_sats <= threshold_sats
        )


@dataclass(frozen=True)
class Transaction:
    """Full transaction record."""
    txid: str
    inputs: List[TxInput]
    outputs: List[TxOutput]
    block_height: Optional[int] = None
    block_time: Optional[int] = None

    def output(self, index: int) -> Optional[TxOutput]:
        for out in self.outputs:
            if out.index == index:
                return out
        return None

    def spends(self, txid: str, vout: int) -> bool:
        return any(i.prev_txid == txid and i.prev_vout == vout for i in self.inputs)

    @classmethod
    def from_woc(cls, data: Dict[str, Any]) -> "Transaction":
        """Build from a WhatsOnChain ``/tx/hash`` response."""
        inputs = []
        for vin in data.get("vin") or []:
            # Coinbase inputs carry no previous outpoint
            if vin.get("txid") is None:
                continue
            inputs.append(TxInput(prev_txid=vin["txid"], prev_vout=int(vin.get("vout", 0))))

        outputs = []
        for n, vout in enumerate(data.get("vout") or []):
            script = vout.get("scriptPubKey") or {}
            asm = script.get("asm") or ""
            addresses = script.get("addresses") or []
            address = addresses[0] if addresses else script.get("address")
            script_type = script.get("type")
            outputs.append(TxOutput(
                index=int(vout.get("n", n)),
                value_sats=int(round(float(vout.get("value") or 0) * SATS_PER_COIN)),
                is_data_carrier="OP_RETURN" in asm or script_type == "nulldata",
                address=address,
                script_asm=asm,
                script_type=script_type,
            ))

        return cls(
            txid=data.get("txid") or data.get("hash"),
            inputs=inputs,
            outputs=outputs,
            block_height=data.get("blockheight"),
            block_time=data.get("blocktime"),
        )


class TransferKind(str, Enum):
    """How a transfer entered the ledger."""
    MINT = "mint"
    SEND = "send"
    SEND_DISCOVERED = "send-discovered"


@dataclass
class Transfer:
    """One custody change of an NFT."""
    txid: str
    kind: TransferKind
    to_address: Optional[str] = None
    from_address: Optional[str] = None
    block_height: Optional[int] = None
    block_time: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "type": self.kind.value,
            "from": self.from_address,
            "to": self.to_address,
            "block_height": self.block_height,
            "block_time": self.block_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transfer":
        return cls(
            txid=data["txid"],
            kind=TransferKind(data["type"]),
            to_address=data.get("to"),
            from_address=data.get("from"),
            block_height=data.get("block_height"),
            block_time=data.get("block_time"),
        )


@dataclass
class NFTRecord:
    """Ledger entry for a single NFT."""
    id: str
    mint_txid: Optional[str] = None
    number: Optional[int] = None
    name: Optional[str] = None
    description: str = ""
    image: Optional[str] = None
    glb_model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    origin: Optional[str] = None
    creator: Optional[str] = None
    owner: Optional[str] = None
    last_txid: Optional[str] = None
    last_vout: Optional[int] = None
    block_height: Optional[int] = None
    block_time: Optional[int] = None
    transfers: List[Transfer] = field(default_factory=list)
    burned: bool = False
    burn_txid: Optional[str] = None
    hops: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "glb_model": self.glb_model,
            "metadata": self.metadata,
            "origin": self.origin,
            "mint_txid": self.mint_txid,
            "creator": self.creator,
            "owner": self.owner,
            "last_txid": self.last_txid,
            "last_vout": self.last_vout,
            "block_height": self.block_height,
            "block_time": self.block_time,
            "transfers": [t.to_dict() for t in self.transfers],
            "burned": self.burned,
            "burn_txid": self.burn_txid,
            "hops": self.hops,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NFTRecord":
        return cls(
            id=str(data["id"]),
            number=data.get("number"),
            name=data.get("name"),
            description=data.get("description") or "",
            image=data.get("image"),
            glb_model=data.get("glb_model"),
            metadata=dict(data.get("metadata") or {}),
            origin=data.get("origin"),
            mint_txid=data.get("mint_txid"),
            creator=data.get("creator"),
            owner=data.get("owner"),
            last_txid=data.get("last_txid"),
            last_vout=data.get("last_vout"),
            block_height=data.get("block_height"),
            block_time=data.get("block_time"),
            transfers=[Transfer.from_dict(t) for t in data.get("transfers") or []],
            burned=bool(data.get("burned", False)),
            burn_txid=data.get("burn_txid"),
            hops=int(data.get("hops") or 0),
        )

    def summary(self) -> Dict[str, Any]:
        """Short form used by list and search views."""
        return {
            "id": self.id,
            "name": self.name,
            "number": self.number,
            "owner": self.owner,
            "image": self.image,
            "mint_txid": self.mint_txid,
            "last_txid": self.last_txid,
            "block_height": self.block_height,
            "burned": self.burned,
        }


@dataclass
class CollectionInfo:
    """Collection metadata carried by the ledger document."""
    name: str
    protocol: str
    class_origin: str
    description: str = ""
    total_indexed: int = 0
    ownership_indexed: int = 0
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "protocol": self.protocol,
            "class_origin": self.class_origin,
            "description": self.description,
            "total_indexed": self.total_indexed,
            "ownership_indexed": self.ownership_indexed,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CollectionInfo":
        return cls(
            name=data.get("name", ""),
            protocol=data.get("protocol", ""),
            class_origin=data.get("class_origin", ""),
            description=data.get("description", ""),
            total_indexed=int(data.get("total_indexed") or 0),
            ownership_indexed=int(data.get("ownership_indexed") or 0),
            last_updated=data.get("last_updated"),
        )
