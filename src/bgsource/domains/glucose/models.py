"""Domain models for glucose ingestion.

``GlucoseReading`` is the single typed record produced by the document mapper
and consumed by the sink and the storage layer. ``TrendArrow`` and
``SourceSensor`` are total parsers: unrecognised tokens become ``UNKNOWN``
instead of failing the document.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

# Untyped key/value document exactly as delivered by the change feed.
RawChangeDocument = Mapping[str, Any]


class TrendArrow(str, Enum):
    """Short-term glucose trend reported alongside a reading."""

    UNKNOWN = "NONE"
    TRIPLE_UP = "TripleUp"
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"
    TRIPLE_DOWN = "TripleDown"

    @classmethod
    def from_string(cls, token: Any) -> TrendArrow:
        """Parse a feed ``direction`` value, falling back to ``UNKNOWN``."""
        return _lookup(_TREND_BY_TEXT, token, cls.UNKNOWN)


class SourceSensor(str, Enum):
    """Originating CGM device or uploader integration."""

    UNKNOWN = "Unknown"
    DEXCOM_NATIVE_UNKNOWN = "Dexcom Native Unknown"
    DEXCOM_G6_NATIVE = "G6 Native"
    DEXCOM_G5_NATIVE = "G5 Native"
    DEXCOM_G4_WIXEL = "Bluetooth Wixel"
    DEXCOM_G4_XBRIDGE = "xBridge Wixel"
    DEXCOM_G4_NATIVE = "G4 Share Receiver"
    DEXCOM_G4_NET = "Network G4"
    DEXCOM_G4_NET_XBRIDGE = "Network G4 and xBridge"
    DEXCOM_G4_NET_CLASSIC = "Network G4 and Classic xDrip"
    DEXCOM_G5_XDRIP = "DexcomG5"
    DEXCOM_G6_G5_NATIVE_XDRIP = "G6 Native / G5 Native"
    LIBRE_1_OTHER = "Other App"
    LIBRE_1_NET = "Network libre"
    LIBRE_1_BLUE = "BlueReader"
    LIBRE_1_PL = "Transmiter PL"
    LIBRE_1_BLUCON = "Blucon"
    LIBRE_1_TOMATO = "Tomato"
    LIBRE_1_RF = "Rfduino"
    LIBRE_1_LIMITTER = "LimiTTer"
    LIBRE_1_BUBBLE = "Bubble"
    LIBRE_1_ATOM = "Atom"
    LIBRE_2_NATIVE = "Libre2"
    GLIMP = "Glimp"
    POCTECH_NATIVE = "Poctech"
    GLUNOVO_NATIVE = "Glunovo"
    INTELLIGO_NATIVE = "Intelligo"
    MEDTRUM_A6 = "Medtrum A6"
    MM_600_SERIES = "MM600Series"
    EVERSENSE = "Eversense"
    AIDEX = "GlucoRx Aidex"
    RANDOM = "Random"

    @classmethod
    def from_string(cls, token: Any) -> SourceSensor:
        """Parse a feed ``device`` value, falling back to ``UNKNOWN``."""
        return _lookup(_SENSOR_BY_TEXT, token, cls.UNKNOWN)


_TREND_BY_TEXT = {member.value.casefold(): member for member in TrendArrow}
_SENSOR_BY_TEXT = {member.value.casefold(): member for member in SourceSensor}


def _lookup(table: dict[str, Any], token: Any, default: Any) -> Any:
    if not isinstance(token, str):
        return default
    return table.get(token.strip().casefold(), default)


@dataclass
class GlucoseReading:
    """One timestamped blood-glucose measurement.

    Attributes:
        timestamp:      Epoch milliseconds of the measurement (> 0).
        value:          Glucose concentration in mg/dL (> 0).
        raw:            Unfiltered sensor value, 0 when unknown.
        noise:          Optional signal quality indicator.
        trend_arrow:    Short-term trend.
        source_sensor:  Originating device / integration.
        source_id:      Remote document identifier, used for de-duplication.
        utc_offset_ms:  Offset of the uploader's local time from UTC.
        raw_document:   Originating feed document, kept for provenance only.
    """

    timestamp: int
    value: float
    raw: float = 0.0
    noise: float | None = None
    trend_arrow: TrendArrow = TrendArrow.UNKNOWN
    source_sensor: SourceSensor = SourceSensor.UNKNOWN
    source_id: str | None = None
    utc_offset_ms: int = 0
    raw_document: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.timestamp <= 0:
            raise ValueError(f"timestamp must be positive, got {self.timestamp}")
        if not math.isfinite(self.value) or self.value <= 0:
            raise ValueError(f"value must be positive, got {self.value}")

    @property
    def dedup_key(self) -> str:
        """Stable identity of the source event this reading came from.

        The remote identifier wins when present; otherwise the reading is
        identified by its timestamp and sensor.
        """
        if self.source_id:
            return f"id:{self.source_id}"
        return f"ts:{self.timestamp}:{self.source_sensor.value}"


@dataclass
class IngestionResult:
    """Outcome of one sink call (or a running total of several).

    Duplicates are an expected outcome and only increase ``skipped``.
    ``error`` holds the first storage or processing failure seen.
    """

    inserted: int = 0
    skipped: int = 0
    rejected: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __add__(self, other: IngestionResult) -> IngestionResult:
        return IngestionResult(
            inserted=self.inserted + other.inserted,
            skipped=self.skipped + other.skipped,
            rejected=self.rejected + other.rejected,
            error=self.error if self.error is not None else other.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }
