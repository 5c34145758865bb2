#!/usr/bin/env python3
import time
import unittest

from helpers import TG


def _conn(conn_id: str, **kw):
    now = time.time()
    ci = TG.ConnInfo(
        id=conn_id,
        client_ip="198.51.100.7",
        client_port=50123,
        upstream_addr="node:9944",
        opened_ts=now - 12,
        last_activity_ts=now - 3,
    )
    for k, v in kw.items():
        setattr(ci, k, v)
    return ci


class TestRowCells(unittest.TestCase):
    def test_active_row(self):
        ci = _conn("a", state="http_stream", requests=4, bytes_in=512, bytes_out=3 * 1024 * 1024,
                   last_path="/rpc", tls_in=TG.TlsInfo(version="TLSv1.3"))
        cells = TG.conn_row_cells(ci)
        self.assertEqual(cells[0], "12s")
        self.assertEqual(cells[1], "3s")
        self.assertEqual(cells[2:], ["198.51.100.7:50123", "TLSv1.3", "http_stream", "4", "512B", "3M", "/rpc"])
        self.assertFalse(TG.conn_is_error(ci))

    def test_closed_row_shows_reason_and_error(self):
        ci = _conn("b", closed_ts=time.time(), close_reason="upstream_unavailable", closed_by="upstream",
                   last_error="connect refused", error_count=1)
        cells = TG.conn_row_cells(ci)
        self.assertEqual(cells[3], "-")
        self.assertEqual(cells[-1], "upstream:upstream_unavailable | connect refused")
        self.assertTrue(TG.conn_is_error(ci))


class TestConnectionsList(unittest.IsolatedAsyncioTestCase):
    async def test_refresh_and_modes(self):
        store = TG.ConnectionStore()
        await store.add(_conn("open-1"))
        await store.add(_conn("open-2"))
        await store.add(_conn("gone"))
        await store.remove("gone", close_reason="client_fin", closed_by="client")

        view = TG.ConnectionsList(store)
        await view.refresh()
        self.assertEqual([c.id for c in view.visible_conns], ["open-1", "open-2"])
        self.assertEqual(len(view.walker), 2)

        self.assertEqual(view.cycle_mode(), "all")
        await view.refresh()
        self.assertEqual(len(view.walker), 3)

        self.assertEqual(view.cycle_mode(), "closed")
        await view.refresh()
        self.assertEqual([c.id for c in view.visible_conns], ["gone"])

        self.assertEqual(view.cycle_mode(), "active")


if __name__ == "__main__":
    unittest.main()
