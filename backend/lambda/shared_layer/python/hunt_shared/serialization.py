"""hunt_shared.serialization — DynamoDB attribute values and UTC timestamps.

Lock rows store each instant twice: an integer epoch (``expires_epoch``, used
for comparisons and DynamoDB TTL) and an ISO-8601 ``Z`` string for humans.
DynamoDB numbers come back as ``Decimal``; whole numbers are returned as
``int`` so epochs and hint counters compare cleanly.
"""

from __future__ import annotations

import datetime as dt
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

__all__ = [
    "_deserialize",
    "_iso_from_epoch",
    "_now_z",
    "_serialize",
    "_to_item",
]

_SER = TypeSerializer()
_DESER = TypeDeserializer()
_ISO_Z = "%Y-%m-%dT%H:%M:%SZ"


def _serialize(value: Any) -> Any:
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _to_item(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Typed DynamoDB item from plain values; ``None`` attributes are left out."""
    return {name: _serialize(value) for name, value in values.items() if value is not None}


def _deserialize(item: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, raw in (item or {}).items():
        value = _DESER.deserialize(raw)
        if isinstance(value, Decimal):
            value = int(value) if value == value.to_integral_value() else float(value)
        out[name] = value
    return out


def _iso_from_epoch(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return dt.datetime.fromtimestamp(float(epoch), dt.timezone.utc).strftime(_ISO_Z)


def _now_z() -> str:
    return _iso_from_epoch(time.time()) or ""
