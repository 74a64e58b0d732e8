"""Map untyped change-feed documents onto ``GlucoseReading``.

Documents come from uploaders we do not control, so the mapper is strict only
about what a reading cannot exist without (``date`` and ``sgv``) and lenient
about everything else:

- ``date``       epoch milliseconds, required
- ``sgv``        glucose value in mg/dL, required
- ``direction``  trend token, unknown tokens become ``TrendArrow.UNKNOWN``
- ``device``     sensor token, unknown tokens become ``SourceSensor.UNKNOWN``
- ``identifier`` remote document id, used as the de-duplication key
- ``utcOffset``  minutes, defaults to 0
- ``unfiltered`` raw sensor value, defaults to 0
- ``noise``      quality indicator, defaults to None

Any other field is ignored.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from bgsource.domains.glucose.errors import (
    InvalidNumberError,
    MappingError,
    MissingFieldError,
)
from bgsource.domains.glucose.models import (
    GlucoseReading,
    RawChangeDocument,
    SourceSensor,
    TrendArrow,
)

_MS_PER_MINUTE = 60_000
# Storage keeps timestamps as signed 64-bit integers
_MAX_TIMESTAMP_MS = 2**63 - 1
# UTC offsets span -12:00 to +14:00
_MAX_OFFSET_MINUTES = 14 * 60


def map_document(doc: RawChangeDocument) -> GlucoseReading:
    """Translate one feed document into a glucose reading.

    Args:
        doc: The raw document body.

    Returns:
        The mapped reading.

    Raises:
        MissingFieldError: ``date`` or ``sgv`` is absent.
        InvalidNumberError: ``date`` or ``sgv`` is not a positive number, or
            ``date`` does not fit a 64-bit epoch-millisecond timestamp.
        MappingError: The document is not a mapping at all.
    """
    if not isinstance(doc, Mapping):
        raise MappingError(f"Expected a mapping, got {type(doc).__name__}")

    timestamp = _parse_number(_required(doc, "date"), "date")
    try:
        value = float(_parse_number(_required(doc, "sgv"), "sgv"))
    except OverflowError as exc:
        raise InvalidNumberError("sgv is out of range", field="sgv") from exc
    if timestamp <= 0:
        raise InvalidNumberError(f"date must be positive, got {timestamp}", field="date")
    if timestamp > _MAX_TIMESTAMP_MS:
        raise InvalidNumberError(f"date is out of range: {timestamp}", field="date")
    if value <= 0:
        raise InvalidNumberError(f"sgv must be positive, got {value}", field="sgv")

    offset_minutes = _optional_number(doc.get("utcOffset"))
    if offset_minutes is not None and abs(offset_minutes) > _MAX_OFFSET_MINUTES:
        offset_minutes = None

    return GlucoseReading(
        timestamp=int(timestamp),
        value=value,
        raw=_optional_number(doc.get("unfiltered")) or 0.0,
        noise=_optional_number(doc.get("noise")),
        trend_arrow=TrendArrow.from_string(doc.get("direction")),
        source_sensor=SourceSensor.from_string(doc.get("device")),
        source_id=_optional_text(doc.get("identifier")),
        utc_offset_ms=int((offset_minutes or 0) * _MS_PER_MINUTE),
        raw_document=dict(doc),
    )


def _required(doc: Mapping[str, Any], name: str) -> Any:
    value = doc.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingFieldError(f"Required field {name!r} is missing", field=name)
    return value


def _parse_number(value: Any, name: str) -> int | float:
    # bool is an int subclass; a flag is never a measurement
    if isinstance(value, bool):
        raise InvalidNumberError(f"{name} is not a number: {value!r}", field=name)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        try:
            return int(value)
        except ValueError:
            pass
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidNumberError(f"{name} is not a number: {value!r}", field=name) from exc
    if not math.isfinite(number):
        raise InvalidNumberError(f"{name} is not finite: {value!r}", field=name)
    return number


def _optional_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
