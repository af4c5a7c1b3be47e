# WalletSync - wallet synchronization backend
# Copyright (C) 2019-2020 The ElectrumSV Developers
# Copyright (C) 2024 The WalletSync Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

'''Electrum protocol client.

A `Connection` is one live session with one server. Requests are newline delimited JSON-RPC
correlated by id by aiorpcx; this module adds a bounded pending request table, timeouts mapped to
our own error hierarchy and per-topic notification queues so that any number of consumers can
subscribe over a single connection.
'''

import asyncio
from contextlib import AsyncExitStack
from functools import partial
import ssl
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aiorpcx import (
    connect_rs, Notification, NewlineFramer, RPCError, RPCSession, TaskTimeout,
    handler_invocation, run_in_thread, sleep, timeout_after,
    ProtocolError as RPCProtocolError,
)

from .constants import DEFAULT_REQUEST_TIMEOUT, MAX_PENDING_REQUESTS, TransportKind
from .exceptions import ConnectError, Disconnected, ProtocolError, RequestTimeout
from .i18n import _
from .logs import logs
from .servers import Server, certificate_fingerprint
from .util import protocol_tuple, version_string
from .version import PACKAGE_VERSION, PROTOCOL_MIN, PROTOCOL_MAX


logger = logs.get_logger("protocol")

HEADERS_SUBSCRIBE = 'blockchain.headers.subscribe'
BLOCK_HEADER = 'blockchain.block.header'
BLOCK_HEADERS = 'blockchain.block.headers'
SCRIPTHASH_HISTORY = 'blockchain.scripthash.get_history'
SCRIPTHASH_SUBSCRIBE = 'blockchain.scripthash.subscribe'
SCRIPTHASH_UNSUBSCRIBE = 'blockchain.scripthash.unsubscribe'
TRANSACTION_GET = 'blockchain.transaction.get'
SERVER_PING = 'server.ping'
SERVER_VERSION = 'server.version'

PING_INTERVAL = 300
# A notification topic is the method name and the parameters it was subscribed with.
Topic = Tuple[str, Tuple[Any, ...]]

_DISCONNECTED = object()


class ElectrumSession(RPCSession):

    def __init__(self, server: Server, logger, message_size_limit: int, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._message_size_limit = message_size_limit
        self._queues: Dict[Topic, List[asyncio.Queue]] = {}
        self._closed_event = asyncio.Event()
        # These attributes are intended to part of the external API
        self.logger = logger
        self.server = server
        self.ptuple: Tuple[int, ...] = (0, )

    def default_framer(self) -> NewlineFramer:
        return NewlineFramer(max_size=self._message_size_limit * 1024 * 1024)

    def add_queue(self, topic: Topic, queue: asyncio.Queue) -> None:
        self._queues.setdefault(topic, []).append(queue)
        if self._closed_event.is_set():
            queue.put_nowait(_DISCONNECTED)

    def remove_queue(self, topic: Topic, queue: asyncio.Queue) -> bool:
        '''Returns True if that was the last consumer of the topic.'''
        queues = self._queues.get(topic, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._queues.pop(topic, None)
            return True
        return False

    def _dispatch_notification(self, method: str, args: Sequence[Any]) -> bool:
        delivered = False
        for (topic_method, params), queues in list(self._queues.items()):
            if topic_method != method or tuple(args[:len(params)]) != params:
                continue
            payload = args[len(params):]
            item = payload[0] if len(payload) == 1 else list(payload)
            for queue in queues:
                queue.put_nowait(item)
            delivered = True
        return delivered

    async def handle_request(self, request):
        if isinstance(request, Notification):
            args = request.args if isinstance(request.args, (list, tuple)) else []
            if self._dispatch_notification(request.method, args):
                return None
            self.logger.debug('ignoring unsubscribed notification %s', request.method)
            return None
        # Servers do not send us requests.  This responds with a method-not-found error.
        coro = handler_invocation(None, request)()
        return await coro

    async def connection_lost(self):
        await super().connection_lost()
        self._closed_event.set()
        for queues in self._queues.values():
            for queue in queues:
                queue.put_nowait(_DISCONNECTED)

    async def negotiate_protocol(self) -> None:
        '''Raises: RPCError, TaskTimeout, ProtocolError'''
        args = (PACKAGE_VERSION, [ version_string(PROTOCOL_MIN), version_string(PROTOCOL_MAX) ])
        try:
            server_string, protocol_string = await self.send_request(SERVER_VERSION, args)
            assert isinstance(server_string, str)
            assert isinstance(protocol_string, str)
            self.logger.debug(f'server string: {server_string}')
            self.logger.debug(f'negotiated protocol: {protocol_string}')
            self.ptuple = protocol_tuple(protocol_string)
            assert len(self.ptuple) in (2, 3)
            assert PROTOCOL_MIN <= self.ptuple <= PROTOCOL_MAX
        except (AssertionError, TypeError, ValueError) as e:
            raise ProtocolError(f'{SERVER_VERSION} failed: {e}', ban=True)


class Subscription:
    '''The notifications of one topic on one connection.

    The first item is the result of the subscribe request itself, then every notification for
    the topic follows in arrival order. Iteration raises `Disconnected` when the connection is
    lost and stops when the subscription is closed.
    '''

    def __init__(self, connection: "Connection", method: str, params: Sequence[Any]) -> None:
        self.connection = connection
        self.method = method
        self.topic: Topic = (method, tuple(params))
        self._queue: asyncio.Queue = asyncio.Queue()
        self._initial: List[Any] = []
        self._started = False
        self._closed = False

    async def start(self) -> Any:
        '''Registers for notifications and sends the subscribe request.'''
        if self._started:
            raise RuntimeError('subscription already started')
        self._started = True
        self.connection.session.add_queue(self.topic, self._queue)
        try:
            result = await self.connection.request(self.method, list(self.topic[1]))
        except BaseException:
            await self.close()
            raise
        self._initial.append(result)
        return result

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_DISCONNECTED)
        if not self._started:
            return
        session = self.connection.session
        was_last = session.remove_queue(self.topic, self._queue)
        if (was_last and self.method == SCRIPTHASH_SUBSCRIBE and session.ptuple >= (1, 4, 2)
                and not self.connection.is_closed()):
            try:
                await self.connection.request(SCRIPTHASH_UNSUBSCRIBE, list(self.topic[1]))
            except (Disconnected, ProtocolError, RequestTimeout) as e:
                self.connection.logger.debug('unsubscribe from %s failed: %s', self.topic, e)

    async def __aenter__(self) -> "Subscription":
        if not self._started:
            await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        if not self._started:
            await self.start()
        if self._initial:
            return self._initial.pop()
        item = await self._queue.get()
        if item is _DISCONNECTED:
            if self._closed:
                raise StopAsyncIteration
            raise Disconnected(_('connection to {} lost').format(self.connection.server))
        return item


class Connection:
    '''A live, handshaken session with one server.

    At most `max_pending` requests are outstanding at once. Further requests wait for a slot, and
    that wait is not part of their timeout. Request ids are allocated and correlated by aiorpcx.
    '''

    def __init__(self, server: Server, session: ElectrumSession, exit_stack: AsyncExitStack,
            request_timeout: float=DEFAULT_REQUEST_TIMEOUT,
            max_pending: int=MAX_PENDING_REQUESTS) -> None:
        self.server = server
        self.session = session
        self.logger = session.logger
        self.request_timeout = request_timeout
        self._exit_stack = exit_stack
        self._slots = asyncio.Semaphore(max_pending)
        self._pending = 0
        self._ping_task: Optional[asyncio.Task] = None
        self.last_request_time = time.time()

    def start_ping_loop(self) -> None:
        self._ping_task = asyncio.create_task(self._ping_loop())

    def _secs_to_next_ping(self) -> float:
        return self.last_request_time + PING_INTERVAL - time.time()

    async def _ping_loop(self) -> None:
        while True:
            await sleep(self._secs_to_next_ping())
            if self._secs_to_next_ping() < 1:
                self.logger.debug(f'sending {SERVER_PING}')
                try:
                    await self.request(SERVER_PING)
                except (Disconnected, ProtocolError, RequestTimeout) as e:
                    self.logger.info('ping failed: %s', e)
                    await self.close()
                    return

    def is_closed(self) -> bool:
        return self.session.is_closing()

    def pending_count(self) -> int:
        return self._pending

    async def request(self, method: str, params: Sequence[Any]=(),
            timeout: Optional[float]=None) -> Any:
        '''Raises: RequestTimeout, ProtocolError, Disconnected'''
        if timeout is None:
            timeout = self.request_timeout
        async with self._slots:
            if self.is_closed():
                raise Disconnected(_('connection to {} is closed').format(self.server))
            self._pending += 1
            try:
                return await self._send_request(method, params, timeout)
            finally:
                self._pending -= 1

    async def _send_request(self, method: str, params: Sequence[Any], timeout: float) -> Any:
        self.last_request_time = time.time()
        self.logger.debug('request %s %s', method, params)
        try:
            async with timeout_after(timeout):
                return await self.session.send_request(method, list(params))
        except TaskTimeout:
            raise RequestTimeout(_('{method} to {server} timed out').format(
                method=method, server=self.server)) from None
        except RPCProtocolError as e:
            raise ProtocolError(f'malformed {method} response: {e.message}') from None
        except RPCError as e:
            raise ProtocolError(f'{method}: {e.message}') from None
        except (ConnectionError, OSError) as e:
            raise Disconnected(f'{method}: {e}') from None
        except asyncio.CancelledError:
            # aiorpcx cancels pending requests when the connection is lost.
            task = asyncio.current_task()
            if self.is_closed() and (task is None or not task.cancelling()):
                raise Disconnected(_('connection to {} lost').format(self.server)) from None
            raise

    def subscribe(self, method: str, params: Sequence[Any]=()) -> Subscription:
        return Subscription(self, method, params)

    async def close(self) -> None:
        ping_task, self._ping_task = self._ping_task, None
        if ping_task is not None and ping_task is not asyncio.current_task():
            ping_task.cancel()
        await self._exit_stack.aclose()

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()


async def download_certificate(host: str, port: int,
        timeout: float=DEFAULT_REQUEST_TIMEOUT) -> str:
    '''Fetch the PEM certificate a TLS server presents, without verifying it.'''
    async with timeout_after(timeout):
        return await run_in_thread(ssl.get_server_certificate, (host, port))


class ProtocolClient:
    '''Creates handshaken connections to servers.'''

    def __init__(self, request_timeout: float=DEFAULT_REQUEST_TIMEOUT,
            message_size_limit: int=32, ping: bool=True) -> None:
        self.request_timeout = request_timeout
        self.message_size_limit = message_size_limit
        self._ping = ping

    async def _pinned_certificate(self, server: Server) -> Optional[str]:
        if server.transport is not TransportKind.SSL or server.fingerprint is None:
            return server.certificate
        pem_certificate = await download_certificate(server.host, server.port,
            self.request_timeout)
        fingerprint = certificate_fingerprint(pem_certificate)
        if fingerprint != server.fingerprint:
            raise ssl.SSLError(f'certificate fingerprint {fingerprint} does not match')
        return pem_certificate

    async def connect(self, server: Server) -> Connection:
        '''Raises: ConnectError'''
        server_logger = server.get_logger()
        server_logger.info('connecting...')
        exit_stack = AsyncExitStack()
        try:
            async with timeout_after(self.request_timeout):
                pinned_certificate = await self._pinned_certificate(server)
                session_factory = partial(ElectrumSession, server, server_logger,
                    self.message_size_limit)
                session = await exit_stack.enter_async_context(
                    connect_rs(server.host, server.port, session_factory=session_factory,
                        ssl=server.ssl_context(pinned_certificate)))
                await session.negotiate_protocol()
        except ProtocolError as e:
            await exit_stack.aclose()
            if e.ban:
                raise
            raise ConnectError(server, e) from e
        except (OSError, ssl.SSLError, TaskTimeout, RPCError, RPCProtocolError) as e:
            await exit_stack.aclose()
            raise ConnectError(server, e) from e
        connection = Connection(server, session, exit_stack, self.request_timeout)
        if self._ping:
            connection.start_ping_loop()
        server_logger.info('connected with protocol %s', version_string(session.ptuple))
        return connection

    async def check_server(self, server: Server) -> None:
        '''Connect, handshake and ping. Raises a TransientNetworkError on failure.'''
        connection = await self.connect(server)
        async with connection:
            await connection.request(SERVER_PING)
