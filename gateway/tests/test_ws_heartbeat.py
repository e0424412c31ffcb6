import asyncio
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from chatsync.config import ChatConfig
from chatsync.ws_transport import create_app


class WsHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._servers: list[tuple[TestServer, TestClient]] = []

    async def asyncTearDown(self):
        for server, client in self._servers:
            await client.close()
            await server.close()

    async def _start_client(self, *, ping_interval_s: int, ping_miss_limit: int) -> TestClient:
        app = create_app(ChatConfig(), ping_interval_s=ping_interval_s, ping_miss_limit=ping_miss_limit)
        server = TestServer(app)
        await server.start_server()
        client = TestClient(server)
        await client.start_server()
        self._servers.append((server, client))
        return client

    async def _start_session(self, client: TestClient):
        ws = await client.ws_connect("/v1/ws", autoping=True)
        await ws.send_json(
            {"v": 1, "t": "session.start", "id": "start1", "body": {"user_id": "u1", "auth_token": "t"}}
        )
        ready = await ws.receive_json()
        self.assertEqual(ready["t"], "session.ready")
        return ws

    async def test_idle_connection_is_pinged_then_closed(self):
        client = await self._start_client(ping_interval_s=1, ping_miss_limit=0)
        ws = await self._start_session(client)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 8

        seen: list[str] = []
        while not ws.closed:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.fail(f"idle connection was not closed; saw {seen}")
            msg = await ws.receive(timeout=remaining)
            if msg.type == WSMsgType.TEXT:
                seen.append(msg.json()["t"])
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

        self.assertEqual(seen, ["ping"])
        self.assertEqual(ws.close_code, 1001)

    async def test_client_traffic_keeps_connection_alive(self):
        client = await self._start_client(ping_interval_s=1, ping_miss_limit=0)
        ws = await self._start_session(client)

        for i in range(6):
            await ws.send_json({"v": 1, "t": "ping", "id": f"p{i}"})
            pong = await ws.receive_json(timeout=2)
            self.assertEqual((pong["t"], pong["id"]), ("pong", f"p{i}"))
            await asyncio.sleep(0.3)

        self.assertFalse(ws.closed)
        await ws.close()


if __name__ == "__main__":
    unittest.main()
