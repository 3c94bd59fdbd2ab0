from __future__ import annotations
from typing import NamedTuple
import logging
from sqlalchemy import bindparam, select, String, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from .ldap import uid_of

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class User(Base):
    """
    One directory identity. Rows are provisioned outside of simpleldap,
    here they are only read
    """

    __tablename__ = "users"

    userbase: Mapped[str] = mapped_column(primary_key=True)  # DN
    passhash: Mapped[str] = mapped_column(nullable=False)  # sha512 hex
    maysearch: Mapped[int] = mapped_column(nullable=False, default=0)
    givenname: Mapped[str] = mapped_column(nullable=False, default="")
    surname: Mapped[str] = mapped_column(nullable=False, default="")
    email: Mapped[str] = mapped_column(nullable=False, default="")

    def __repr__(self) -> str:
        return f"{super().__repr__()[:-1]} userbase={self.userbase!r}>"


class UserRecord(NamedTuple):
    uid: str
    dn: str
    password_hash: str
    may_search: bool
    given_name: str
    surname: str
    email: str


class StoreError(Exception):
    pass


class StoreUnavailable(StoreError):
    pass


class StoreQueryFailed(StoreError):
    pass


def _create_users_stmt(exact_match: bool):
    """
    `exact_match` compares DNs, otherwise `pattern` is an SQL LIKE pattern
    """
    pattern = bindparam("pattern", type_=String)
    if exact_match:
        criterion = User.userbase == pattern
    else:
        criterion = User.userbase.like(pattern)
    return (
        select(
            User.userbase,
            User.passhash,
            User.maysearch,
            User.givenname,
            User.surname,
            User.email,
        )
        .where(criterion)
        .order_by(User.userbase)
    )


users_by_dn_stmt = _create_users_stmt(exact_match=True)
users_like_dn_stmt = _create_users_stmt(exact_match=False)


def _to_record(row: Row) -> UserRecord | None:
    dn, passhash, maysearch, givenname, surname, email = row
    try:
        uid = uid_of(dn)
    except ValueError as e:
        log.warning("skipping user row: %s", e)
        return None
    return UserRecord(
        uid=uid,
        dn=dn,
        password_hash=passhash,
        may_search=bool(maysearch),
        given_name=givenname,
        surname=surname,
        email=email,
    )


class Store:
    """
    Read-only access to the `users` table

    The engine is expected to come from `Settings.create_engine`, so each
    lookup runs on its own short lived read-only connection
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def lookup(
        self, pattern: str, exact_match: bool
    ) -> list[UserRecord]:
        stmt = users_by_dn_stmt if exact_match else users_like_dn_stmt
        try:
            async with self._engine.connect() as conn:
                try:
                    result = await conn.execute(stmt, {"pattern": pattern})
                    rows = result.all()
                except SQLAlchemyError as e:
                    raise StoreQueryFailed(
                        f"Unable to query users with {pattern!r}: {e}"
                    ) from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Unable to open database: {e}") from e
        return [
            record
            for record in map(_to_record, rows)
            if record is not None
        ]
