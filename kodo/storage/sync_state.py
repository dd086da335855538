"""Sync high-water marks, persisted in ``sync_state.json``.

``remote_offsets`` counts the records consumed from each remote workstation's
log; ``pushed_through`` is the highest local counter already pushed.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from kodo.errors import CorruptionError, IoFailureError

logger = logging.getLogger(__name__)

SYNC_STATE_FILENAME = "sync_state.json"


@dataclass
class SyncState:
    remote_offsets: Dict[str, int] = field(default_factory=dict)
    pushed_through: int = 0
    last_sync: Optional[str] = None

    @classmethod
    def load(cls, home: Path) -> "SyncState":
        path = Path(home) / SYNC_STATE_FILENAME
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls()
        except json.JSONDecodeError as e:
            raise CorruptionError(path, f"invalid JSON: {e.msg}", line=e.lineno) from e
        except OSError as e:
            raise IoFailureError(path, e) from e
        try:
            return cls(
                remote_offsets={str(k): int(v) for k, v in data.get("remote_offsets", {}).items()},
                pushed_through=int(data.get("pushed_through", 0)),
                last_sync=data.get("last_sync"),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise CorruptionError(path, f"malformed sync state ({e})") from e

    def save(self, home: Path) -> None:
        path = Path(home) / SYNC_STATE_FILENAME
        tmp = path.with_name(path.name + ".tmp")
        data = {
            "remote_offsets": dict(sorted(self.remote_offsets.items())),
            "pushed_through": self.pushed_through,
            "last_sync": self.last_sync,
        }
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            raise IoFailureError(path, e) from e
        logger.debug("Saved sync state: %s", data)
