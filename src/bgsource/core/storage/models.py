"""Data models for the glucose persistence layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class StoredGlucoseReading:
    """A glucose reading as persisted, with storage metadata."""

    id: str
    dedup_key: str
    timestamp: int  # epoch ms
    value: float
    trend_arrow: str
    source_sensor: str
    source_tag: str  # e.g. 'Firestore'
    raw: float = 0.0
    noise: float | None = None
    source_id: str | None = None
    utc_offset_ms: int = 0
    raw_document: dict[str, Any] | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "value": self.value,
            "trend_arrow": self.trend_arrow,
            "source_sensor": self.source_sensor,
            "source_tag": self.source_tag,
            "source_id": self.source_id,
            "utc_offset_ms": self.utc_offset_ms,
        }


@dataclass
class DataSource:
    """Source enablement and sync tracking."""

    id: str
    source_type: str  # 'Firestore', ...
    display_name: str
    connected_at: str | None = None
    last_sync: str | None = None
    is_active: bool = True
