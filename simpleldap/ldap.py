from __future__ import annotations
from typing import NamedTuple
import re

# attr=value,attr=value,...,attr=value
# no escaping, no spaces, no multi-valued RDNs
DN_RE = re.compile(r"(?:\w+=\w+,)*\w+=\w+")
USER_DN_RE = re.compile(r"uid=\w+,.*")


class RDN(NamedTuple):
    attr: str  # uid
    value: str  # jsmith


def is_well_formed(dn: str) -> bool:
    return DN_RE.fullmatch(dn) is not None


def parse_dn(dn: str) -> tuple[RDN, ...]:
    if not is_well_formed(dn):
        raise ValueError(f"Non-conformant DN: {dn!r}")
    rdns: list[RDN] = []
    for part in dn.split(","):
        attr, _, value = part.partition("=")
        rdns.append(RDN(attr=attr, value=value))
    return tuple(rdns)


def uid_of(dn: str) -> str:
    """
    Value of the single `uid` component of `dn`

    Raises `ValueError` when the DN is malformed, has no `uid`
    or has more than one
    """
    uids = [rdn.value for rdn in parse_dn(dn) if rdn.attr == "uid"]
    if not uids:
        raise ValueError(f"UID not found in: {dn}")
    if len(uids) > 1:
        raise ValueError(f"Multiple UIDs in: {dn}")
    return uids[0]


def is_user_dn(dn: str) -> bool:
    """`uid=jsmith,ou=people` names a user, `ou=people` does not"""
    return USER_DN_RE.fullmatch(dn) is not None


def is_direct_child(dn: str, base: str) -> bool:
    return re.fullmatch(rf"uid=\w+,{re.escape(base)}", dn) is not None
