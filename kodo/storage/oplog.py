"""Append-only operation log file.

Records are grouped into transactions. A transaction is committed once all
of its ``txn_size`` lines are on disk, newline-terminated and fsynced. A
trailing transaction that is incomplete (crash mid-write) is not committed:
readers ignore it and the next writer truncates it. Anything malformed before
the last committed transaction is corruption.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from kodo.errors import CorruptionError, IoFailureError
from kodo.storage.codec import decode_record, encode_operation, record_to_operation
from kodo.types import LogicalClock, Operation

logger = logging.getLogger(__name__)


@dataclass
class LogRead:
    """Committed operations read from a byte offset onwards."""

    operations: List[Operation] = field(default_factory=list)
    start_offset: int = 0
    committed_offset: int = 0  # Byte offset just past the last committed transaction
    committed_lines: int = 0  # Absolute line count at committed_offset
    uncommitted_bytes: int = 0  # Trailing bytes belonging to no committed transaction
    corruption: Optional[CorruptionError] = None  # First bad record, set only when salvaging

    @property
    def has_uncommitted_tail(self) -> bool:
        return self.uncommitted_bytes > 0


class OpLog:
    """Newline-delimited JSON operation log with transaction framing."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def read(self, start_offset: int = 0, start_line: int = 0, salvage: bool = False) -> LogRead:
        """Read committed operations starting at a transaction boundary.

        With `salvage` a corrupt record ends the read instead of raising: the
        result holds the transactions committed before it and the error in
        `corruption`.
        """
        result = LogRead(
            start_offset=start_offset,
            committed_offset=start_offset,
            committed_lines=start_line,
        )
        try:
            with open(self.path, "rb") as f:
                f.seek(start_offset)
                data = f.read()
        except FileNotFoundError:
            return result
        except OSError as e:
            raise IoFailureError(self.path, e) from e

        offset = start_offset
        line_no = start_line
        pending: List[Operation] = []
        pending_txn: Optional[str] = None
        pending_size = 0
        pending_start: Tuple[int, int] = (offset, line_no)

        for raw in data.splitlines(keepends=True):
            if not raw.endswith(b"\n"):
                break  # torn final line, never committed
            line_no += 1
            offset += len(raw)
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                if not pending:
                    result.committed_offset = offset
                    result.committed_lines = line_no
                continue
            try:
                record = decode_record(text)
                op = record_to_operation(record)
            except (KeyError, TypeError, ValueError) as e:
                if not salvage:
                    raise CorruptionError(self.path, str(e), line=line_no) from e
                result.corruption = CorruptionError(self.path, str(e), line=line_no)
                break

            txn = record.get("txn")
            size = int(record.get("txn_size", 1))
            if pending and txn != pending_txn:
                error = CorruptionError(
                    self.path,
                    f"transaction {pending_txn} has {len(pending)} of {pending_size} records "
                    f"but is followed by another transaction",
                    line=line_no,
                )
                if not salvage:
                    raise error
                result.corruption = error
                break
            if not pending:
                pending_txn = txn
                pending_size = size
                pending_start = (offset - len(raw), line_no - 1)
            pending.append(op)
            if len(pending) == pending_size:
                result.operations.extend(pending)
                result.committed_offset = offset
                result.committed_lines = line_no
                pending = []
                pending_txn = None

        if pending:
            result.committed_offset, result.committed_lines = pending_start
        result.uncommitted_bytes = start_offset + len(data) - result.committed_offset
        return result

    def append(self, operations: Sequence[Operation]) -> int:
        """Write operations as one committed transaction; returns the new size."""
        if not operations:
            return self.size()
        txn_id = uuid.uuid4().hex
        lines = [
            encode_operation(
                op, txn={"txn": txn_id, "txn_size": len(operations), "txn_seq": seq}
            )
            for seq, op in enumerate(operations)
        ]
        payload = ("\n".join(lines) + "\n").encode("utf-8")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "ab") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
                return f.tell()
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def truncate(self, offset: int) -> None:
        """Drop an uncommitted tail. Only called while holding the writer lock."""
        try:
            with open(self.path, "r+b") as f:
                f.truncate(offset)
                f.flush()
                os.fsync(f.fileno())
        except FileNotFoundError:
            return
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def rewrite(self, operations: Sequence[Operation]) -> None:
        """Atomically replace the log with the given operations (compaction)."""
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "wb") as f:
                for op in operations:
                    f.write((encode_operation(op) + "\n").encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise IoFailureError(self.path, e) from e

    def split_off(self, offset: int, dest: Path) -> List[bytes]:
        """Move every line from `offset` onwards into a new file `dest`.

        The log is truncated at `offset` only after `dest` is on disk. Returns
        the moved lines.
        """
        try:
            with open(self.path, "r+b") as f:
                f.seek(offset)
                tail = f.read()
                with open(dest, "xb") as out:
                    out.write(tail)
                    out.flush()
                    os.fsync(out.fileno())
                f.truncate(offset)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise IoFailureError(self.path, e) from e
        return tail.splitlines()


def salvage_clock(line: bytes) -> Optional[LogicalClock]:
    """Best-effort clock of a damaged record line, or None."""
    try:
        record = json.loads(line.decode("utf-8", errors="replace"))
        return LogicalClock.from_list(record["clock"])
    except (KeyError, TypeError, ValueError):
        return None
