# File: mediaproof/utils/payload.py
# =============================================================================
# Ordered field lookups for third-party JSON payloads.
# =============================================================================
# Detector responses and payment webhooks put the same fact under different
# keys depending on API version. Instead of chains of `a or b or c` inline,
# callers declare an ordered tuple of key paths and take the first one that
# resolves to a non-None value.
#
#   first_present(data, (("reference",), ("transaction", "reference")))
# =============================================================================

from __future__ import annotations

import math
from typing import Any, Sequence, Tuple

Path = Tuple[str, ...]


def first_present(obj: Any, paths: Sequence[Path]) -> Any:
    """Return the value at the first path that resolves to a non-None value."""
    for path in paths:
        node = obj
        for key in path:
            if not isinstance(node, dict) or key not in node:
                node = None
                break
            node = node[key]
        if node is not None:
            return node
    return None


def as_int(value: Any, default: int = 0) -> int:
    """Lenient integer coercion: numbers and numeric strings, else default."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return int(number)
