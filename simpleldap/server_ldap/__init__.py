from __future__ import annotations
from typing import AsyncGenerator, Callable, cast
import asyncio
import logging
from functools import partial
from pyasn1.codec.ber import decoder
from pyasn1.error import PyAsn1Error
from .. import Settings
from ..db import Store
from .codec import (
    BindOp,
    LDAPMessage,
    Operation,
    Response,
    SearchOp,
    UnbindOp,
    WhoamiOp,
    decode_operation,
    disconnection_notice,
    encode_response,
    frame_length,
)
from .exceptions import InternalError
from .handlers import do_bind, do_search, do_whoami
from .session import Session

log = logging.getLogger(__name__)

Handler = Callable[
    [Operation, Session, Store], AsyncGenerator[Response, None]
]

HANDLERS: dict[type, Handler] = {
    BindOp: do_bind,
    SearchOp: do_search,
    WhoamiOp: do_whoami,
}


# --- Connection handler ---
class LDAPProtocol:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        store: Store,
    ):
        self.reader = reader
        self.writer = writer
        self.store = store
        self.session = Session()
        self.addr = writer.get_extra_info("peername")

    async def run(self):
        log.info("client connected %s", self.addr)
        try:
            async for op in self._parse_messages():
                if isinstance(op, UnbindOp):
                    # no need to notify on unbind (RFC 4511)
                    break
                await self._handle_operation(op)
        except InternalError as e:
            log.warning("dropping client %s: %s", self.addr, e)
            await self._send_disconnection_notice()
        except ConnectionError as e:
            log.info("client %s went away: %s", self.addr, e)
        finally:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except ConnectionError:
                pass
            log.info("client disconnected %s", self.addr)

    async def _parse_messages(self) -> AsyncGenerator[Operation, None]:
        buf = b""
        while chunk := await self.reader.read(4096):
            buf += chunk
            while buf:
                size = frame_length(buf)
                if size is None or len(buf) < size:
                    # need more data; continue reading
                    break
                frame, buf = buf[:size], buf[size:]
                try:
                    lm, _ = cast(
                        tuple[LDAPMessage, bytes],
                        decoder.decode(frame, asn1Spec=LDAPMessage()),
                    )
                except PyAsn1Error as e:
                    raise InternalError(f"Undecodable message: {e}") from e
                yield decode_operation(lm)

    async def _handle_operation(self, op: Operation) -> None:
        log.debug("processing %s from %s", type(op).__name__, self.addr)
        handler = HANDLERS[type(op)]
        async for response in handler(op, self.session, self.store):
            self.writer.write(encode_response(response))
        await self.writer.drain()

    async def _send_disconnection_notice(self) -> None:
        try:
            self.writer.write(disconnection_notice())
            await self.writer.drain()
        except ConnectionError as e:
            log.debug("disconnection notice not sent to %s: %s", self.addr, e)


async def handle_client(
    reader: asyncio.StreamReader, writer: asyncio.StreamWriter, store: Store
):
    p = LDAPProtocol(reader, writer, store)
    await p.run()


async def start_server(
    settings: Settings, store: Store
) -> asyncio.Server:
    return await asyncio.start_server(
        partial(handle_client, store=store), settings.host, settings.port
    )


async def _server_main(settings: Settings) -> None:
    async_engine = settings.create_engine()
    server = await start_server(settings, Store(async_engine))
    addr = server.sockets[0].getsockname()
    log.info(
        "simpleldap server listening on ldap://%s:%s serving %s",
        addr[0],
        addr[1],
        settings.db_path,
    )
    try:
        async with server:
            await server.serve_forever()
    finally:
        await async_engine.dispose()


def main(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.INFO)
    try:
        asyncio.run(_server_main(settings))
    except KeyboardInterrupt:
        log.info("interrupted, shutting down")
