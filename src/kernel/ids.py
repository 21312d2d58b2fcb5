from __future__ import annotations

import re
from enum import Enum
from uuid import uuid4


_PREFIX_RE = re.compile(r"^[a-z][a-z0-9]{1,24}$")


class IdPrefix(str, Enum):
    CHAT = "chat"
    MESSAGE = "msg"
    TOOL_CALL = "tc"
    CHECKPOINT = "ckpt"
    RECOVERY_CONTEXT = "rctx"


def new_prefixed_id(prefix: IdPrefix | str) -> str:
    """Return `{prefix}_{uuidhex}`.

    Ids are random, never sortable: message order comes from `position`.
    """
    value = prefix.value if isinstance(prefix, IdPrefix) else prefix
    if not _PREFIX_RE.fullmatch(value):
        raise ValueError(f"Invalid id prefix {value!r}: expected 2-25 lowercase letters/digits")
    return f"{value}_{uuid4().hex}"


def is_prefixed_id(value: str, prefix: IdPrefix | str) -> bool:
    expected = prefix.value if isinstance(prefix, IdPrefix) else prefix
    return value.startswith(f"{expected}_")
