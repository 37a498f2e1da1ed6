"""Store ledger entry model (append-only, hash-chained).

The store ledger records what happened to the content-addressed store:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous via SHA-256)
- One entry per store event (built, reused, failed, corrupt, evicted)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class StoreEvent(str, Enum):
    """What happened to a store entry."""

    BUILT = "built"
    REUSED = "reused"
    FAILED = "failed"
    CORRUPT = "corrupt"
    EVICTED = "evicted"


class StoreLedgerEntry(BaseModel):
    """A single entry in the append-only store ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content_address: str
    label: str  # "name==version"
    event: StoreEvent
    store_path: str = ""
    detail: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
