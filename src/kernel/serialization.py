from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def to_jsonable(value: Any) -> Any:
    """Coerce domain values into JSON-compatible primitives.

    Used for JSON columns (chat metadata, snapshots, diagnostics) and for the
    sweep's CLI output. Unknown types raise rather than being stringified.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    if isinstance(value, str):
        return value

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, (MappingProxyType, Mapping)):
        return {str(k): to_jsonable(v) for (k, v) in value.items()}

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return to_jsonable(model_dump(mode="json"))

    raise TypeError(f"Unsupported type for JSON serialization: {type(value)!r}")


def json_dumps_canonical(value: Any) -> str:
    """Stable JSON encoding for logs and CLI output."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )
