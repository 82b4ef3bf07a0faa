"""Run protocol payload decoding.

A Run transaction carries its program in an OP_RETURN output laid out as::

    OP_FALSE OP_RETURN <"run"> <version> <app name> <json payload>

Decoding is a short pipeline with a typed result at every stage:

    data-carrier output -> push segments -> tagged envelope -> payload

Transactions that do not carry a Run payload decode to ``None``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from jig_indexer.models import Transaction, TxOutput

# "run" as a hex push, and as the script number WhatsOnChain renders for
# pushes of four bytes or fewer.
RUN_TAGS = frozenset({"72756e", "7239026"})


@dataclass
class RunEnvelope:
    """Segments following a recognised protocol tag."""
    output_index: int
    version: Optional[str]
    segments: List[str]


@dataclass
class RunPayload:
    """Decoded Run program body."""
    body: Dict[str, Any]
    app_name: Optional[str] = None
    version: Optional[str] = None
    output_index: Optional[int] = None


@dataclass
class MethodCall:
    """A method invoked on a jig or class."""
    target: Any
    method: str
    args: List[Any] = field(default_factory=list)


@dataclass
class ExecSummary:
    """What a Run program does."""
    operation: Optional[str]
    app_name: Optional[str]
    refs: List[Any]
    num_inputs: int
    num_outputs: int
    creates: List[Any]
    deletes: List[Any]
    calls: List[MethodCall]

    def calls_to(self, method: str) -> List[MethodCall]:
        return [c for c in self.calls if c.method == method]


def data_carrier_outputs(tx: Transaction) -> Iterator[TxOutput]:
    for out in tx.outputs:
        if out.is_data_carrier:
            yield out


def split_segments(asm: str) -> List[str]:
    """Push data following OP_RETURN, with opcodes dropped."""
    parts = asm.split()
    if "OP_RETURN" not in parts:
        return []
    after = parts[parts.index("OP_RETURN") + 1:]
    return [p for p in after if not p.startswith("OP_")]


def read_envelope(output: TxOutput) -> Optional[RunEnvelope]:
    segments = split_segments(output.script_asm)
    if not segments or segments[0] not in RUN_TAGS:
        return None
    version = segments[1] if len(segments) > 1 else None
    return RunEnvelope(output_index=output.index, version=version, segments=segments[2:])


def decode_segment(segment: str) -> str:
    try:
        return bytes.fromhex(segment).decode("utf-8", errors="replace")
    except ValueError:
        return segment


def _parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    if not text.startswith("{"):
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def read_payload(envelope: RunEnvelope) -> Optional[RunPayload]:
    app_name = None
    for text in (decode_segment(s) for s in envelope.segments):
        body = _parse_json_object(text)
        if body is not None:
            return RunPayload(
                body=body,
                app_name=app_name,
                version=envelope.version,
                output_index=envelope.output_index,
            )
        if app_name is None and not text.startswith("{"):
            app_name = text
    return None


def decode_run_payload(tx: Transaction) -> Optional[RunPayload]:
    """Extract the Run payload of a transaction, if it has one."""
    for output in data_carrier_outputs(tx):
        envelope = read_envelope(output)
        if envelope is None:
            continue
        payload = read_payload(envelope)
        if payload is not None:
            return payload
    return None


def parse_exec(payload: RunPayload) -> ExecSummary:
    """Summarise the actions of a Run program."""
    body = payload.body
    outputs = body.get("out")
    summary = ExecSummary(
        operation=None,
        app_name=payload.app_name,
        refs=list(body.get("ref") or []),
        num_inputs=body["in"] if isinstance(body.get("in"), int) else 0,
        num_outputs=len(outputs) if isinstance(outputs, list) else 0,
        creates=list(body.get("cre") or []),
        deletes=list(body.get("del") or []),
        calls=[],
    )

    for action in body.get("exec") or []:
        if not isinstance(action, dict):
            continue
        op = action.get("op")
        data = action.get("data")
        if op == "CALL" and isinstance(data, list) and len(data) >= 2:
            args = data[2] if len(data) > 2 and isinstance(data[2], list) else []
            summary.calls.append(MethodCall(target=data[0], method=data[1], args=args))
            if summary.operation is None:
                summary.operation = data[1]
        elif op == "DEPLOY":
            summary.operation = "deploy"
        elif op == "NEW":
            summary.operation = "new"

    return summary


def references_class(payload: RunPayload, class_origin: str) -> bool:
    """Whether the program references the given class origin."""
    return any(
        isinstance(ref, str) and class_origin in ref
        for ref in payload.body.get("ref") or []
    )


class ArgKind(str, Enum):
    """Shapes an address argument takes in Run calls."""
    STRING = "string"
    LIST = "list"
    ESCROW = "escrow"
    ADDRESS_OBJECT = "address_object"
    UNKNOWN = "unknown"


def classify_argument(arg: Any) -> Tuple[ArgKind, Any]:
    """Tag an argument with its shape and the part that matters."""
    if isinstance(arg, str):
        return ArgKind.STRING, arg
    if isinstance(arg, list):
        return ArgKind.LIST, arg
    if isinstance(arg, dict):
        if isinstance(arg.get("$arb"), dict):
            return ArgKind.ESCROW, arg["$arb"]
        if "address" in arg:
            return ArgKind.ADDRESS_OBJECT, arg
    return ArgKind.UNKNOWN, arg


def resolve_address(arg: Any) -> Optional[str]:
    """Resolve a call argument to an address, or None."""
    # Nested lists are followed through their first element
    while True:
        kind, value = classify_argument(arg)
        if kind is ArgKind.LIST:
            if not value:
                return None
            arg = value[0]
            continue
        break

    if kind is ArgKind.STRING:
        return value
    if kind in (ArgKind.ESCROW, ArgKind.ADDRESS_OBJECT):
        address = value.get("address")
        return address if isinstance(address, str) and address else None
    return None
