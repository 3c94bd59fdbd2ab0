from __future__ import annotations
from typing import AsyncGenerator
import os
from tempfile import TemporaryDirectory
from unittest import IsolatedAsyncioTestCase
from .. import Settings
from ..db import Store
from ..test_db import USERS, create_test_database
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
    encode_response,
)
from .exceptions import ResultCode
from .handlers import do_bind, do_search, do_whoami, hash_password
from .session import Session


async def collect(
    responses: AsyncGenerator[Response, None],
) -> list[Response]:
    return [response async for response in responses]


def eq(lhs: str, rhs: str):
    return {"op": "=", "lhs": lhs, "rhs": rhs}


EVERYONE = {"op": "has", "attr": "objectClass"}


class HandlerTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = TemporaryDirectory()
        path = os.path.join(self.tmp.name, "users.sqlite")
        await create_test_database(path, USERS)
        self.async_engine = Settings(db_path=path).create_engine()
        self.store = Store(self.async_engine)
        self.session = Session()
        missing = os.path.join(self.tmp.name, "missing.sqlite")
        self.missing_engine = Settings(db_path=missing).create_engine()
        self.missing_store = Store(self.missing_engine)

    async def asyncTearDown(self):
        await self.async_engine.dispose()
        await self.missing_engine.dispose()
        self.tmp.cleanup()

    async def bind(self, dn: str, password: bytes, store: Store | None = None):
        return await collect(
            do_bind(
                BindOp(msgid=1, dn=dn, password=password),
                self.session,
                store or self.store,
            )
        )

    async def search(
        self,
        base: str,
        search_filter=EVERYONE,
        scope: Scope = Scope.wholeSubtree,
        store: Store | None = None,
    ):
        return await collect(
            do_search(
                SearchOp(
                    msgid=2,
                    base=base,
                    scope=scope,
                    search_filter=search_filter,
                    attributes=["cn", "mail"],
                ),
                self.session,
                store or self.store,
            )
        )


class BindTest(HandlerTestCase):
    async def test_success(self):
        responses = await self.bind("uid=alice,ou=people", b"alice_password")
        self.assertEqual(responses, [BindResult(1, ResultCode.success)])
        self.assertEqual(self.session.dn, "uid=alice,ou=people")
        self.assertFalse(self.session.may_search)

    async def test_privileged(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        self.assertEqual(self.session.dn, "uid=bob,ou=people")
        self.assertTrue(self.session.may_search)

    async def test_rebind_overwrites_flag(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        await self.bind("uid=alice,ou=people", b"alice_password")
        self.assertEqual(self.session.dn, "uid=alice,ou=people")
        self.assertFalse(self.session.may_search)

    async def test_wrong_password(self):
        responses = await self.bind("uid=alice,ou=people", b"bob_password")
        self.assertEqual(
            responses,
            [
                BindResult(
                    1, ResultCode.invalidCredentials, "invalid credentials"
                )
            ],
        )
        self.assertEqual(self.session.dn, "Anonymous")

    async def test_unknown_dn_is_indistinguishable(self):
        wrong_password = await self.bind("uid=alice,ou=people", b"wrong")
        unknown_dn = await self.bind("uid=nobody,ou=people", b"wrong")
        self.assertEqual(wrong_password, unknown_dn)

    async def test_failed_bind_keeps_session(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        await self.bind("uid=alice,ou=people", b"wrong")
        self.assertEqual(self.session.dn, "uid=bob,ou=people")
        self.assertTrue(self.session.may_search)

    async def test_malformed_dn(self):
        # rejected before the store is touched
        responses = await self.bind(
            "uid=alice, ou=people",
            b"alice_password",
            store=self.missing_store,
        )
        self.assertEqual(
            responses,
            [
                BindResult(
                    1,
                    ResultCode.invalidAttributeSyntax,
                    "Bind string non-conformant",
                )
            ],
        )

    async def test_store_unavailable(self):
        with self.assertLogs("simpleldap.server_ldap.handlers", "ERROR"):
            responses = await self.bind(
                "uid=alice,ou=people",
                b"alice_password",
                store=self.missing_store,
            )
        self.assertEqual(
            responses,
            [BindResult(1, ResultCode.operationsError, "Internal Server Error")],
        )
        self.assertEqual(self.session.dn, "Anonymous")

    def test_hash_password(self):
        self.assertEqual(
            hash_password(b"alice_password"), USERS[0]["passhash"]
        )


class SearchTest(HandlerTestCase):
    def assertDNs(self, responses: list[Response], dns: list[str]):
        *entries, done = responses
        self.assertEqual(done, SearchDone(2, ResultCode.success))
        for entry in entries:
            self.assertIsInstance(entry, SearchEntry)
        self.assertEqual([entry.dn for entry in entries], dns)

    async def test_anonymous_sees_nothing(self):
        self.assertDNs(await self.search("ou=people"), [])

    async def test_unprivileged_sees_only_itself(self):
        await self.bind("uid=alice,ou=people", b"alice_password")
        self.assertDNs(
            await self.search("ou=people", eq("uid", "bob")), []
        )
        self.assertDNs(
            await self.search("ou=people"), ["uid=alice,ou=people"]
        )
        self.assertDNs(
            await self.search("uid=carol,ou=people"), []
        )

    async def test_privileged_by_uid(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        responses = await self.search("ou=people", eq("uid", "bob"))
        self.assertEqual(
            responses,
            [
                SearchEntry(
                    2,
                    "uid=bob,ou=people",
                    {
                        "objectClass": ["users"],
                        "cn": ["Bob Builder"],
                        "uid": ["bob"],
                        "givenName": ["Bob"],
                        "surname": ["Builder"],
                        "email": ["bob@example.com"],
                    },
                ),
                SearchDone(2, ResultCode.success),
            ],
        )

    async def test_privileged_absent_uid(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        self.assertDNs(
            await self.search("ou=people", eq("uid", "nobody")), []
        )

    async def test_uid_in_nested_filter(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        search_filter = {
            "op": "and",
            "operands": [
                eq("objectClass", "users"),
                {
                    "op": "or",
                    "operands": [eq("uid", "carol"), eq("mail", "carol")],
                },
            ],
        }
        self.assertDNs(
            await self.search("ou=people", search_filter),
            ["uid=carol,ou=people"],
        )

    async def test_base_with_uid_ignores_filter(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        self.assertDNs(
            await self.search("uid=carol,ou=people", eq("uid", "bob")),
            ["uid=carol,ou=people"],
        )

    async def test_wildcard_returns_direct_children(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        expected = [
            "uid=alice,ou=people",
            "uid=bob,ou=people",
            "uid=carol,ou=people",
        ]
        self.assertDNs(await self.search("ou=people"), expected)
        self.assertDNs(
            await self.search("ou=people", scope=Scope.singleLevel), expected
        )

    async def test_wildcard_base_scope(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        self.assertDNs(
            await self.search("ou=people", scope=Scope.baseObject), []
        )

    async def test_wildcard_nested_base(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        self.assertDNs(
            await self.search("ou=staff,ou=people"),
            ["uid=dave,ou=staff,ou=people"],
        )

    async def test_unicode_attributes(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        (entry, _done) = await self.search("ou=people", eq("uid", "carol"))
        self.assertEqual(entry.attributes["cn"], ["Carol Кэрролл"])
        self.assertTrue(encode_response(entry))

    async def test_malformed_base(self):
        responses = await self.search("ou=people,")
        self.assertEqual(
            responses,
            [
                SearchDone(
                    2,
                    ResultCode.invalidAttributeSyntax,
                    "Search string non-conformant",
                )
            ],
        )

    async def test_store_unavailable(self):
        with self.assertLogs("simpleldap.server_ldap.handlers", "ERROR"):
            responses = await self.search(
                "ou=people", store=self.missing_store
            )
        self.assertEqual(
            responses,
            [SearchDone(2, ResultCode.operationsError, "Internal Server Error")],
        )

    async def test_idempotent(self):
        await self.bind("uid=bob,ou=people", b"bob_password")
        first = b"".join(
            map(encode_response, await self.search("ou=people"))
        )
        second = b"".join(
            map(encode_response, await self.search("ou=people"))
        )
        self.assertEqual(first, second)


class WhoamiTest(HandlerTestCase):
    async def whoami(self):
        return await collect(
            do_whoami(WhoamiOp(msgid=3), self.session, self.store)
        )

    async def test_anonymous(self):
        self.assertEqual(
            await self.whoami(),
            [ExtendedResult(3, ResultCode.success, value="dn: Anonymous")],
        )

    async def test_bound(self):
        await self.bind("uid=alice,ou=people", b"alice_password")
        self.assertEqual(
            await self.whoami(),
            [
                ExtendedResult(
                    3, ResultCode.success, value="dn: uid=alice,ou=people"
                )
            ],
        )
