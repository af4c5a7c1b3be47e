import asyncio
from contextlib import AsyncExitStack
from functools import partial
import socket
from typing import Any, List

from aiorpcx import handler_invocation, Request, RPCSession, serve_rs
import pytest
import pytest_asyncio

from walletsync.constants import ServerHealth
from walletsync.exceptions import ConnectError, Disconnected, ProtocolError, RequestTimeout
from walletsync.failover import FailoverController
from walletsync.protocol import (BLOCK_HEADER, Connection, HEADERS_SUBSCRIBE, ProtocolClient,
    SCRIPTHASH_HISTORY, SCRIPTHASH_SUBSCRIBE, SERVER_PING)
from walletsync.servers import ServerPool

from .util import FakeElectrumX, tcp_server


class LocalServer:
    def __init__(self, electrumx: FakeElectrumX) -> None:
        self.electrumx = electrumx
        self.protocol_version = "1.4.2"
        self.sessions: List["ServerSession"] = []
        self.port = 0


class ServerSession(RPCSession):
    def __init__(self, local_server: LocalServer, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.local_server = local_server
        local_server.sessions.append(self)

    # aiorpcx event
    async def handle_request(self, request: Request) -> Any:
        if request.method == "server.version":
            handler = self._handle_server_version
        elif request.method.startswith(("server.", "blockchain.")):
            handler = partial(self._forward, request.method)
        else:
            handler = None
        return await handler_invocation(handler, request)()

    async def _handle_server_version(self, client_string: str, version_range: List[str]):
        return "FakeServer", self.local_server.protocol_version

    async def _forward(self, method: str, *params: Any) -> Any:
        return await self.local_server.electrumx(method, list(params))


@pytest_asyncio.fixture
async def local_server(electrumx):
    local = LocalServer(electrumx)
    server = await serve_rs(partial(ServerSession, local), '127.0.0.1', 0)
    local.port = server.sockets[0].getsockname()[1]
    try:
        yield local
    finally:
        for session in local.sessions:
            await session.close()
        server.close()
        await server.wait_closed()


@pytest.fixture
def client() -> ProtocolClient:
    return ProtocolClient(request_timeout=2.0, ping=False)


def unused_port() -> int:
    with socket.socket() as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.mark.asyncio
async def test_connect_and_request(local_server, client, regtest_chain) -> None:
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        assert connection.session.ptuple == (1, 4, 2)
        result = await connection.request(BLOCK_HEADER, [3])
        assert result == regtest_chain[3].hex()
        assert connection.pending_count() == 0


@pytest.mark.asyncio
async def test_check_server(local_server, client) -> None:
    await client.check_server(tcp_server('127.0.0.1', local_server.port))
    assert local_server.electrumx.counts[SERVER_PING] == 1


@pytest.mark.asyncio
async def test_connect_refused(client) -> None:
    server = tcp_server('127.0.0.1', unused_port())
    with pytest.raises(ConnectError) as exc_info:
        await client.connect(server)
    assert exc_info.value.server is server


@pytest.mark.asyncio
async def test_unsupported_protocol_version_is_banned(local_server, client) -> None:
    local_server.protocol_version = "1.2"
    with pytest.raises(ProtocolError) as exc_info:
        await client.connect(tcp_server('127.0.0.1', local_server.port))
    assert exc_info.value.ban


@pytest.mark.asyncio
async def test_request_timeout(local_server, client) -> None:
    local_server.electrumx.gates[BLOCK_HEADER] = asyncio.Event()
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        with pytest.raises(RequestTimeout):
            await connection.request(BLOCK_HEADER, [1], timeout=0.2)
        assert connection.pending_count() == 0
        # The connection is still usable.
        await connection.request(SERVER_PING)


@pytest.mark.asyncio
async def test_rpc_error_is_protocol_error(local_server, client) -> None:
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        with pytest.raises(ProtocolError) as exc_info:
            await connection.request('mempool.get_fee_histogram')
        assert not exc_info.value.ban


@pytest.mark.asyncio
async def test_headers_subscription(local_server, client, regtest_chain) -> None:
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        async with connection.subscribe(HEADERS_SUBSCRIBE) as subscription:
            initial = await subscription.__anext__()
            assert initial == { "hex": regtest_chain[-1].hex(), "height": 30 }

            new_tip = { "hex": regtest_chain[5].hex(), "height": 5 }
            await local_server.sessions[0].send_notification(HEADERS_SUBSCRIBE, [new_tip])
            assert await asyncio.wait_for(subscription.__anext__(), 2) == new_tip


@pytest.mark.asyncio
async def test_scripthash_notifications_are_routed_by_script_hash(local_server,
        client) -> None:
    script_hash_1, script_hash_2 = "11" * 32, "22" * 32
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        subscription_1 = connection.subscribe(SCRIPTHASH_SUBSCRIBE, [script_hash_1])
        subscription_2 = connection.subscribe(SCRIPTHASH_SUBSCRIBE, [script_hash_2])
        async with subscription_1, subscription_2:
            assert await subscription_1.__anext__() is None
            assert await subscription_2.__anext__() is None
            await local_server.sessions[0].send_notification(SCRIPTHASH_SUBSCRIBE,
                [script_hash_2, "status2"])
            assert await asyncio.wait_for(subscription_2.__anext__(), 2) == "status2"
            assert subscription_1._queue.empty()


@pytest.mark.asyncio
async def test_closing_one_consumer_keeps_the_others(local_server, client) -> None:
    script_hash = "33" * 32
    async with await client.connect(tcp_server('127.0.0.1', local_server.port)) as connection:
        subscription_1 = connection.subscribe(SCRIPTHASH_SUBSCRIBE, [script_hash])
        subscription_2 = connection.subscribe(SCRIPTHASH_SUBSCRIBE, [script_hash])
        await subscription_1.start()
        await subscription_2.start()
        await subscription_1.close()
        # Another consumer remains, so the server subscription is kept.
        assert local_server.electrumx.counts['blockchain.scripthash.unsubscribe'] == 0

        await subscription_2.__anext__()
        await local_server.sessions[0].send_notification(SCRIPTHASH_SUBSCRIBE,
            [script_hash, "status"])
        assert await asyncio.wait_for(subscription_2.__anext__(), 2) == "status"
        with pytest.raises(StopAsyncIteration):
            await subscription_1.__anext__()

        await subscription_2.close()
        assert local_server.electrumx.counts['blockchain.scripthash.unsubscribe'] == 1
        assert not connection.is_closed()


@pytest.mark.asyncio
async def test_server_disconnect(local_server, client) -> None:
    connection = await client.connect(tcp_server('127.0.0.1', local_server.port))
    async with connection:
        async with connection.subscribe(HEADERS_SUBSCRIBE) as subscription:
            await subscription.__anext__()
            await local_server.sessions[0].close()
            with pytest.raises(Disconnected):
                await asyncio.wait_for(subscription.__anext__(), 2)
        assert connection.is_closed()
        with pytest.raises(Disconnected):
            await connection.request(SERVER_PING)


class GatedSession:
    '''Answers every request with its method name once `gate` is set.'''

    def __init__(self, server) -> None:
        self.logger = server.get_logger()
        self.gate = asyncio.Event()
        self.in_flight = 0
        self.most_in_flight = 0

    def is_closing(self) -> bool:
        return False

    async def send_request(self, method: str, params: List[Any]) -> Any:
        self.in_flight += 1
        self.most_in_flight = max(self.most_in_flight, self.in_flight)
        try:
            await self.gate.wait()
            return method
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_requests_over_the_pending_limit_wait() -> None:
    server = tcp_server("a")
    session = GatedSession(server)
    connection = Connection(server, session, AsyncExitStack(), max_pending=2)
    tasks = [ asyncio.create_task(connection.request(SERVER_PING)) for _ in range(5) ]
    await asyncio.sleep(0.05)
    assert connection.pending_count() == 2
    assert not any(task.done() for task in tasks)

    session.gate.set()
    assert await asyncio.gather(*tasks) == [ SERVER_PING ] * 5
    assert session.most_in_flight == 2
    assert connection.pending_count() == 0


@pytest.mark.asyncio
async def test_pending_limit_is_not_a_server_failure() -> None:
    server = tcp_server("a")
    session = GatedSession(server)

    class OneConnectionClient:
        async def connect(self, server):
            return Connection(server, session, AsyncExitStack(), max_pending=3)

    failover = FailoverController(ServerPool([ server ]), OneConnectionClient())
    tasks = [ asyncio.create_task(failover.request(SCRIPTHASH_HISTORY, [ "00" * 32 ]))
        for _ in range(10) ]
    await asyncio.sleep(0.05)
    session.gate.set()
    assert await asyncio.gather(*tasks) == [ SCRIPTHASH_HISTORY ] * 10
    assert server.state.health == ServerHealth.HEALTHY
    assert not failover.connection().is_closed()
