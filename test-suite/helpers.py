#!/usr/bin/env python3
"""Shared fixtures for the tlsgate test-suite: module loading, config, loopback peers."""
import asyncio
import importlib.util
import itertools
import pathlib
import socket
import ssl
import sys
from typing import Awaitable, Callable, List, Optional, Tuple


ROOT = pathlib.Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "tlsgate.py"
CERTS = pathlib.Path(__file__).resolve().parent / "certs"
CERT = str(CERTS / "server.crt")
KEY = str(CERTS / "server.key")


def _load_module():
    if "tlsgate" in sys.modules:
        return sys.modules["tlsgate"]
    spec = importlib.util.spec_from_file_location("tlsgate", MODULE_PATH)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"cannot load module from {MODULE_PATH}")
    mod = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = mod
    spec.loader.exec_module(mod)
    return mod


TG = _load_module()


def make_config(upstream_addr: str = "127.0.0.1:9", listen: str = "127.0.0.1:0", **sections):
    """ProxyConfig for loopback tests; keyword sections (tls=, buffers=, policy=) replace defaults."""
    cfg = dict(
        listen=listen,
        tls=TG.TlsConfig(cert=CERT, key=KEY, handshake_timeout=5.0),
        upstream=TG.UpstreamConfig(addr=upstream_addr, connect_timeout=2.0),
        buffers=TG.BufferConfig(),
        policy=TG.PolicyConfig(read_timeout=5.0, idle_timeout=5.0, tunnel_idle_timeout=0),
    )
    cfg.update(sections)
    return TG.ProxyConfig(**cfg)


def unused_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
    finally:
        s.close()


def client_ssl_context(
    min_version: Optional[ssl.TLSVersion] = None,
    max_version: Optional[ssl.TLSVersion] = None,
    ciphers: Optional[str] = None,
) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    if min_version is not None:
        ctx.minimum_version = min_version
    if max_version is not None:
        ctx.maximum_version = max_version
    if ciphers:
        ctx.set_ciphers(ciphers)
    return ctx


Handler = Callable[["UpstreamStub", asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class UpstreamStub:
    """
    Loopback plain-HTTP peer standing in for the backend.

    Every request head read through read_request() is recorded in `requests`;
    `connections` counts accepted TCP connections.
    """

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: List = []
        self.bodies: List[bytes] = []
        self.connections = 0
        self.server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> "UpstreamStub":
        self.server = await asyncio.start_server(self._handle, host="127.0.0.1", port=0)
        return self

    @property
    def addr(self) -> str:
        host, port = self.server.sockets[0].getsockname()[:2]
        return f"{host}:{port}"

    async def close(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        try:
            await self.handler(self, reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def read_request(self, reader: asyncio.StreamReader):
        raw = await reader.readuntil(TG.HEAD_END)
        req = TG.parse_request_head(raw)
        self.requests.append(req)
        framing = TG.request_body_framing(req)
        body = b""
        if framing.kind != "none":
            async for data in TG.body_iter(reader, framing, itertools.repeat(4096), 5.0, "client"):
                body += data
        self.bodies.append(body)
        return req, body


def hello_responder(body: bytes = b"hello") -> Handler:
    """Answer every request on the connection with 200 and a fixed body."""

    async def handler(stub: UpstreamStub, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            try:
                await stub.read_request(reader)
            except asyncio.IncompleteReadError:
                return
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n"
                + f"Content-Length: {len(body)}\r\n\r\n".encode()
                + body
            )
            await writer.drain()

    return handler


async def read_response(reader: asyncio.StreamReader, method: str = "GET", timeout: float = 5.0) -> Tuple[object, bytes]:
    """Read one response; the body comes back exactly as framed on the wire."""
    raw = await asyncio.wait_for(reader.readuntil(TG.HEAD_END), timeout=timeout)
    head = TG.parse_response_head(raw)
    framing = TG.response_body_framing(method, head)
    body = b""
    if framing.kind != "none":
        async for data in TG.body_iter(reader, framing, itertools.repeat(4096), timeout, "upstream"):
            body += data
    return head, body


async def read_until_closed(reader: asyncio.StreamReader, timeout: float = 5.0) -> bytes:
    out = bytearray()

    async def _drain():
        while True:
            try:
                data = await reader.read(4096)
            except (ConnectionError, ssl.SSLError):
                return
            if not data:
                return
            out.extend(data)

    await asyncio.wait_for(_drain(), timeout=timeout)
    return bytes(out)


async def wait_for_condition(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def close_stream(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, ssl.SSLError):
        pass


class SessionHarness:
    """
    Plain-TCP front door that runs one ProxiedSession per accepted connection
    (no TLS), so session behaviour can be tested in isolation.
    """

    def __init__(self, cfg):
        self.cfg = cfg
        self.metrics = TG.Metrics()
        self.conn_store = TG.ConnectionStore()
        self.finished: asyncio.Queue = asyncio.Queue()
        self.server: Optional[asyncio.AbstractServer] = None
        self._n = 0

    async def start(self) -> "SessionHarness":
        self.server = await asyncio.start_server(
            self._handle, host="127.0.0.1", port=0, limit=self.cfg.policy.header_max,
        )
        return self

    async def connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        host, port = self.server.sockets[0].getsockname()[:2]
        return await asyncio.open_connection(host, port)

    async def next_session(self, timeout: float = 5.0):
        return await asyncio.wait_for(self.finished.get(), timeout=timeout)

    async def close(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._n += 1
        conn_id = f"s{self._n}"
        now = 0.0
        await self.conn_store.add(TG.ConnInfo(
            id=conn_id, client_ip="127.0.0.1", client_port=0,
            upstream_addr=self.cfg.upstream.addr, opened_ts=now, last_activity_ts=now,
        ))
        session = TG.ProxiedSession(self.cfg, conn_id, reader, writer, self.conn_store, self.metrics)
        try:
            await session.run()
        finally:
            await TG.close_writer(writer)
            await self.conn_store.remove(conn_id, close_reason=session.close_reason, closed_by=session.closed_by)
            self.finished.put_nowait(session)
