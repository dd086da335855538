"""Operation record codec.

One operation per line of newline-delimited JSON:

    {"op": "Insert", "entry_id": "...", "clock": ["ws", 7],
     "timestamp": "...", "payload": {...}, "context": {"ws": 7}}

Records written by the store also carry transaction framing
(``txn``, ``txn_size``, ``txn_seq``); records exchanged through a transport
do not. Merge operations carry a ``merge`` object.
"""

import json
import logging
from typing import Any, Dict, Optional

from jsonschema import Draft7Validator

from kodo.types import (
    VALID_CATEGORY_VALUES,
    Entry,
    LogicalClock,
    MergeInfo,
    OpKind,
    Operation,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_CLOCK_SCHEMA = {
    "type": "array",
    "items": [{"type": "string", "minLength": 1}, {"type": "integer", "minimum": 1}],
    "minItems": 2,
    "maxItems": 2,
}

RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["op", "entry_id", "clock", "timestamp", "payload"],
    "properties": {
        "op": {"enum": [k.value for k in OpKind]},
        "entry_id": {"type": "string", "minLength": 1},
        "clock": _CLOCK_SCHEMA,
        "timestamp": {"type": "string"},
        "context": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "payload": {
            "type": "object",
            "required": ["id", "category", "title"],
            "properties": {
                "id": {"type": "string"},
                "category": {"enum": sorted(VALID_CATEGORY_VALUES)},
                "title": {"type": "string"},
                "body": {"type": ["string", "null"]},
                "confidence": {"enum": ["low", "medium", "high"]},
                "tags": {"type": "array", "items": {"type": "string"}},
                "related_ids": {"type": "array", "items": {"type": "string"}},
                "tombstoned": {"type": "boolean"},
            },
        },
        "merge": {
            "type": "object",
            "required": ["parents", "strategy"],
            "properties": {
                "parents": {"type": "array", "items": _CLOCK_SCHEMA},
                "strategy": {"type": "string"},
                "superseded": {"type": "array", "items": _CLOCK_SCHEMA},
            },
        },
        "txn": {"type": "string"},
        "txn_size": {"type": "integer", "minimum": 1},
        "txn_seq": {"type": "integer", "minimum": 0},
    },
}

_validator = Draft7Validator(RECORD_SCHEMA)


class RecordError(ValueError):
    """A record line failed to decode or validate."""


def operation_to_record(op: Operation) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "op": op.kind.value,
        "entry_id": op.entry_id,
        "clock": op.clock.to_list(),
        "timestamp": format_datetime(op.timestamp),
        "payload": op.payload.to_dict(),
        "context": dict(sorted(op.context.items())),
    }
    if op.merge is not None:
        record["merge"] = op.merge.to_dict()
    return record


def encode_operation(op: Operation, txn: Optional[Dict[str, Any]] = None) -> str:
    """Serialize an operation to a single JSON line (without newline)."""
    record = operation_to_record(op)
    if txn:
        record.update(txn)
    return json.dumps(record, separators=(",", ":"))


def _load_json(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise RecordError(f"invalid JSON: {e.msg} at column {e.colno}") from e


def decode_record(line: str) -> Dict[str, Any]:
    """Parse and validate one line, returning the raw record dict."""
    return validate_record(_load_json(line))


def validate_record(record: Any) -> Dict[str, Any]:
    errors = sorted(_validator.iter_errors(record), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.path) or "<record>"
        raise RecordError(f"schema violation at {location}: {first.message}")
    if record["payload"]["id"] != record["entry_id"]:
        raise RecordError(
            f"payload id {record['payload']['id']!r} does not match entry_id "
            f"{record['entry_id']!r}"
        )
    return record


def record_to_operation(record: Dict[str, Any]) -> Operation:
    clock = LogicalClock.from_list(record["clock"])
    payload = Entry.from_dict(record["payload"])
    context = {str(k): int(v) for k, v in (record.get("context") or {}).items()}
    if not context:
        context = {clock.workstation_id: clock.counter}
    payload.clock = clock
    payload.causal_context = dict(context)
    timestamp = parse_datetime(record["timestamp"])
    if timestamp is None:
        raise RecordError("empty timestamp")
    return Operation(
        kind=OpKind(record["op"]),
        entry_id=record["entry_id"],
        clock=clock,
        timestamp=timestamp,
        payload=payload,
        context=context,
        merge=MergeInfo.from_dict(record["merge"]) if record.get("merge") else None,
    )


def decode_operation(line: str) -> Operation:
    return operation_from_record(_load_json(line))


def operation_from_record(record: Any) -> Operation:
    """Validate a record dict (e.g. received over HTTP) and build the operation."""
    try:
        return record_to_operation(validate_record(record))
    except (KeyError, TypeError, ValueError) as e:
        if isinstance(e, RecordError):
            raise
        raise RecordError(str(e)) from e
