from __future__ import annotations
from typing import Any

# Filter tree as built by `codec.Filter.build()`, for example
# {"op": "and", "operands": [{"op": "=", "lhs": "uid", "rhs": "jsmith"}]}
SearchFilter = dict[str, Any]

UNKNOWN_UID = "%"


def extract_uid(search_filter: SearchFilter) -> str:
    """
    First `uid` equality found depth first, left to right

    `and` and `or` are treated the same, everything else is opaque.
    Returns `UNKNOWN_UID` when nothing is found
    """
    match search_filter:
        case {"op": "=", "lhs": "uid", "rhs": uid}:
            return uid
        case {"op": "and" | "or", "operands": operands}:
            for operand in operands:
                uid = extract_uid(operand)
                if uid != UNKNOWN_UID:
                    return uid
    return UNKNOWN_UID
