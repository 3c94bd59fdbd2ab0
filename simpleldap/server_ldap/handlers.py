from __future__ import annotations
from typing import AsyncGenerator, NamedTuple
import hashlib
import hmac
import logging
from ..db import Store, StoreError, UserRecord
from ..ldap import is_well_formed, is_user_dn, is_direct_child
from .codec import (
    BindOp,
    BindResult,
    ExtendedResult,
    Response,
    Scope,
    SearchDone,
    SearchEntry,
    SearchOp,
    WhoamiOp,
)
from .exceptions import (
    InvalidCredential,
    LDAPError,
    MalformedDn,
    OperationsError,
    ResultCode,
)
from .filters import extract_uid, UNKNOWN_UID
from .session import Session

log = logging.getLogger(__name__)


def hash_password(password: bytes) -> str:
    """Value of the `passhash` column for `password`"""
    return hashlib.sha512(password).hexdigest()


def _check_dn(dn: str, kind: str) -> None:
    if not is_well_formed(dn):
        log.debug("Non-conformant %s string: %r", kind, dn)
        raise MalformedDn(f"{kind.capitalize()} string non-conformant")


async def _lookup(
    store: Store, pattern: str, exact_match: bool
) -> list[UserRecord]:
    try:
        return await store.lookup(pattern, exact_match)
    except StoreError as e:
        log.error("%s", e)
        raise OperationsError() from e


async def _authenticate(dn: str, password: bytes, store: Store) -> UserRecord:
    _check_dn(dn, "bind")
    passhex = hash_password(password).encode()
    for user in await _lookup(store, dn, exact_match=True):
        if hmac.compare_digest(user.password_hash.encode(), passhex):
            return user
    # same answer for unknown DN and wrong password
    log.debug("Bind failed: %s", dn)
    raise InvalidCredential()


async def do_bind(
    op: BindOp, session: Session, store: Store
) -> AsyncGenerator[Response, None]:
    log.debug("Performing bind: %s", op.dn)
    try:
        user = await _authenticate(op.dn, op.password, store)
    except LDAPError as e:
        yield BindResult(op.msgid, e.result_code, e.diagnostic)
        return
    session.bind_as(user.dn, user.may_search)
    log.info("Bind success: %s", user.dn)
    yield BindResult(op.msgid, ResultCode.success)


class SearchKey(NamedTuple):
    pattern: str
    exact_match: bool
    children_only: bool  # pattern may select more than direct children


def search_key(op: SearchOp) -> SearchKey:
    if is_user_dn(op.base):
        # base already names the user, filter is irrelevant
        return SearchKey(op.base, exact_match=True, children_only=False)
    uid = extract_uid(op.search_filter)
    if uid != UNKNOWN_UID:
        return SearchKey(
            f"uid={uid},{op.base}", exact_match=True, children_only=False
        )
    if op.scope == Scope.baseObject:
        return SearchKey(op.base, exact_match=True, children_only=True)
    # singleLevel is not told apart from wholeSubtree
    return SearchKey(f"uid=%,{op.base}", exact_match=False, children_only=True)


def user_attributes(user: UserRecord) -> dict[str, list[str]]:
    return {
        "objectClass": ["users"],
        "cn": [f"{user.given_name} {user.surname}"],
        "uid": [user.uid],
        "givenName": [user.given_name],
        "surname": [user.surname],
        "email": [user.email],
    }


async def _search(
    op: SearchOp, session: Session, store: Store
) -> list[UserRecord]:
    _check_dn(op.base, "search")
    key = search_key(op)
    log.debug("User search: %s", key)
    users = await _lookup(store, key.pattern, key.exact_match)
    if key.children_only:
        users = [user for user in users if is_direct_child(user.dn, op.base)]
    return [user for user in users if session.may_see(user.dn)]


async def do_search(
    op: SearchOp, session: Session, store: Store
) -> AsyncGenerator[Response, None]:
    """
    Entries visible to `session`, followed by `SearchDone`

    Requested attributes are ignored, every entry carries the same set
    """
    log.debug(
        "Perform search: base=%r scope=%s filter=%s attributes=%s",
        op.base,
        op.scope.name,
        op.search_filter,
        op.attributes,
    )
    try:
        users = await _search(op, session, store)
    except LDAPError as e:
        yield SearchDone(op.msgid, e.result_code, e.diagnostic)
        return
    for user in users:
        log.debug("User found: %s", user.dn)
        yield SearchEntry(op.msgid, user.dn, user_attributes(user))
    yield SearchDone(op.msgid, ResultCode.success)


async def do_whoami(
    op: WhoamiOp, session: Session, store: Store
) -> AsyncGenerator[Response, None]:
    yield ExtendedResult(
        op.msgid, ResultCode.success, value=f"dn: {session.dn}"
    )
