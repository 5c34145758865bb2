#!/usr/bin/env python3
import asyncio
import ssl
import unittest

from helpers import (
    CERT,
    KEY,
    TG,
    UpstreamStub,
    client_ssl_context,
    close_stream,
    hello_responder,
    make_config,
    read_response,
    read_until_closed,
    unused_port,
    wait_for_condition,
)


class _ListenerCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._cleanups_async = []

    async def asyncTearDown(self):
        for fn in reversed(self._cleanups_async):
            await fn()

    async def start_upstream(self, handler):
        stub = await UpstreamStub(handler).start()
        self._cleanups_async.append(stub.close)
        return stub

    async def start_listener(self, upstream_addr: str, **cfg_sections):
        listener = TG.ProxyListener(make_config(upstream_addr=upstream_addr, **cfg_sections))
        await listener.start()
        self._cleanups_async.append(listener.stop)
        return listener

    async def connect(self, listener, ctx=None):
        host, port = listener.address
        return await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ctx or client_ssl_context(), server_hostname="localhost"),
            timeout=5,
        )

    async def failed_handshakes(self, listener) -> int:
        return (await listener.metrics.snapshot()).get("tls_handshake_failed", 0)


class TestTlsTermination(_ListenerCase):
    async def test_tls13_get_reaches_upstream_with_rewritten_headers(self):
        stub = await self.start_upstream(hello_responder())
        listener = await self.start_listener(stub.addr)

        reader, writer = await self.connect(listener, client_ssl_context(min_version=ssl.TLSVersion.TLSv1_3))
        self.assertEqual(writer.get_extra_info("ssl_object").version(), "TLSv1.3")

        writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
        head, body = await read_response(reader)
        self.assertEqual((head.status, body), (200, b"hello"))

        req = stub.requests[0]
        self.assertEqual(TG.get_header(req.headers, "Host"), "example.com")
        self.assertEqual(TG.get_header(req.headers, "Connection"), "Upgrade")

        conns = await listener.conn_store.snapshot()
        self.assertEqual(len(conns), 1)
        self.assertEqual(conns[0].tls_in.version, "TLSv1.3")
        self.assertEqual(conns[0].tls_in.sni, "localhost")
        self.assertEqual(conns[0].tls_in.alpn, None)
        await close_stream(writer)

    async def test_alpn_offers_http11(self):
        stub = await self.start_upstream(hello_responder())
        listener = await self.start_listener(stub.addr)
        ctx = client_ssl_context()
        ctx.set_alpn_protocols(["h2", "http/1.1"])

        reader, writer = await self.connect(listener, ctx)
        self.assertEqual(writer.get_extra_info("ssl_object").selected_alpn_protocol(), "http/1.1")
        await close_stream(writer)

    async def test_version_below_floor_is_rejected_and_listener_keeps_serving(self):
        stub = await self.start_upstream(hello_responder())
        tls = TG.TlsConfig(cert=CERT, key=KEY, min_version="TLS1.3", handshake_timeout=5.0)
        listener = await self.start_listener(stub.addr, tls=tls)

        with self.assertRaises((ssl.SSLError, ConnectionError)):
            r, w = await self.connect(listener, client_ssl_context(max_version=ssl.TLSVersion.TLSv1_2))
            await read_until_closed(r)
            w.close()

        async def counted() -> bool:
            return await self.failed_handshakes(listener) >= 1

        await wait_for_condition(counted)

        reader, writer = await self.connect(listener)
        writer.write(b"GET /after HTTP/1.1\r\nHost: h\r\n\r\n")
        head, _ = await read_response(reader)
        self.assertEqual(head.status, 200)
        await close_stream(writer)

        closed = await listener.conn_store.snapshot(include_closed=True)
        reasons = [c.close_reason for c in closed if c.closed_ts is not None]
        self.assertTrue(any(r and r.startswith("tls_in_fail:") for r in reasons))

    async def test_no_shared_cipher_is_rejected(self):
        stub = await self.start_upstream(hello_responder())
        tls = TG.TlsConfig(cert=CERT, key=KEY, max_version="TLS1.2", ciphers="ECDHE+AESGCM", handshake_timeout=5.0)
        listener = await self.start_listener(stub.addr, tls=tls)

        client = client_ssl_context(max_version=ssl.TLSVersion.TLSv1_2, ciphers="ECDHE-RSA-CHACHA20-POLY1305")
        with self.assertRaises((ssl.SSLError, ConnectionError)):
            r, w = await self.connect(listener, client)
            await read_until_closed(r)
            w.close()

        async def counted() -> bool:
            return await self.failed_handshakes(listener) >= 1

        await wait_for_condition(counted)

    async def test_negotiated_cipher_is_in_allowed_set(self):
        stub = await self.start_upstream(hello_responder())
        tls = TG.TlsConfig(cert=CERT, key=KEY, max_version="TLS1.2", ciphers="ECDHE+AESGCM", handshake_timeout=5.0)
        listener = await self.start_listener(stub.addr, tls=tls)
        allowed = {c["name"] for c in TG.build_inbound_ssl_context(tls).get_ciphers()}

        reader, writer = await self.connect(listener)
        name, version, _bits = writer.get_extra_info("ssl_object").cipher()
        self.assertIn(name, allowed)
        self.assertEqual(version, "TLSv1.2")
        await close_stream(writer)

    async def test_unreachable_upstream_gets_502_over_tls(self):
        listener = await self.start_listener(f"127.0.0.1:{unused_port()}")
        reader, writer = await self.connect(listener)
        writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")

        data = await read_until_closed(reader)
        self.assertTrue(data.startswith(b"HTTP/1.1 502 Bad Gateway\r\n"))
        await close_stream(writer)

        async def gone() -> bool:
            return not await listener.conn_store.snapshot()

        await wait_for_condition(gone)
        snap = await listener.metrics.snapshot()
        self.assertEqual(snap.get("upstream_unavailable"), 1)

    async def test_websocket_over_tls(self):
        frames = [b"\x81\x02hi", b"\x82\x03\x00\x01\x02", b"\x88\x00"]

        async def handler(stub, reader, writer):
            await stub.read_request(reader)
            writer.write(b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n")
            await writer.drain()
            while True:
                data = await reader.read(4096)
                if not data:
                    return
                writer.write(data)
                await writer.drain()

        stub = await self.start_upstream(handler)
        listener = await self.start_listener(stub.addr)
        reader, writer = await self.connect(listener)
        writer.write(b"GET /ws HTTP/1.1\r\nHost: example.com\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n")

        head_raw = await asyncio.wait_for(reader.readuntil(TG.HEAD_END), timeout=5)
        self.assertTrue(head_raw.startswith(b"HTTP/1.1 101 "))
        for frame in frames:
            writer.write(frame)
            echoed = await asyncio.wait_for(reader.readexactly(len(frame)), timeout=5)
            self.assertEqual(echoed, frame)

        conns = await listener.conn_store.snapshot()
        self.assertEqual(conns[0].state, "tunnel")
        await close_stream(writer)

    async def test_stop_closes_active_sessions(self):
        async def handler(stub, reader, writer):
            await stub.read_request(reader)
            await reader.read()

        stub = await self.start_upstream(handler)
        listener = TG.ProxyListener(make_config(upstream_addr=stub.addr))
        await listener.start()
        reader, writer = await self.connect(listener)
        writer.write(b"GET /hang HTTP/1.1\r\nHost: h\r\n\r\n")

        async def forwarded() -> bool:
            return len(stub.requests) == 1

        await wait_for_condition(forwarded)
        await asyncio.wait_for(listener.stop(), timeout=5)

        self.assertEqual(await read_until_closed(reader), b"")
        self.assertEqual(await listener.conn_store.snapshot(), [])
        closed = await listener.conn_store.snapshot(include_closed=True)
        self.assertEqual(closed[0].close_reason, "cancelled")
        self.assertFalse(listener.running)
        await close_stream(writer)


class TestStartupErrors(_ListenerCase):
    async def test_bad_certificate_refuses_to_start(self):
        tls = TG.TlsConfig(cert=KEY, key=KEY)
        listener = TG.ProxyListener(make_config(tls=tls))
        with self.assertRaises(TG.ConfigurationError):
            await listener.start()
        self.assertFalse(listener.running)

    async def test_port_in_use_refuses_to_start(self):
        first = await self.start_listener("127.0.0.1:9")
        host, port = first.address
        second = TG.ProxyListener(make_config(listen=f"{host}:{port}"))
        with self.assertRaises(TG.ConfigurationError):
            await second.start()


class TestClassifyTlsFailure(unittest.TestCase):
    def test_categories(self):
        cases = [
            (asyncio.TimeoutError(), "handshake_timeout"),
            (ssl.SSLError(1, "[SSL: UNSUPPORTED_PROTOCOL] unsupported protocol"), "protocol_version"),
            (ssl.SSLError(1, "[SSL: NO_SHARED_CIPHER] no shared cipher"), "no_shared_cipher"),
            (ssl.SSLError(1, "[SSL: HTTP_REQUEST] http request"), "http_request"),
            (ConnectionResetError(104, "Connection reset by peer"), "rst"),
            (ssl.SSLEOFError(8, "EOF occurred in violation of protocol"), "eof"),
            (ssl.SSLError(1, "[SSL: BAD_RECORD_MAC] bad record mac"), "tls_error"),
        ]
        for exc, expected in cases:
            with self.subTest(exc=exc):
                self.assertEqual(TG.classify_tls_in_fail(exc), expected)


if __name__ == "__main__":
    unittest.main()
