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

'''Keeps one active connection for a coin and moves to the next server when it misbehaves.'''

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from .constants import DEFAULT_TIMEOUT_THRESHOLD, NetworkEventNames
from .exceptions import (AllServersExhausted, ConnectError, Disconnected, ProtocolError,
    RequestTimeout, TransientNetworkError)
from .logs import logs
from .protocol import Connection, ProtocolClient, Subscription
from .servers import Server, ServerPool
from .util import TriggeredCallbacks


logger = logs.get_logger("failover")

T = TypeVar("T")


class Resubscribed:
    '''Yielded by a `FailoverSubscription` after it was re-established on another server. The
    next item is the initial result of the new subscription.'''

    def __init__(self, server: Server) -> None:
        self.server = server

    def __repr__(self) -> str:
        return f'Resubscribed({self.server})'


class FailoverController(TriggeredCallbacks):
    '''Runs operations against the current server of a pool.

    A failed operation is retried against the next server in pool order, until as many servers
    have failed as the pool holds. Servers that fail are marked unreachable which starts their retry
    backoff, and servers that send bad data are banned.
    '''

    def __init__(self, pool: ServerPool, client: ProtocolClient,
            timeout_threshold: int=DEFAULT_TIMEOUT_THRESHOLD) -> None:
        super().__init__()
        self._pool = pool
        self._client = client
        self._timeout_threshold = timeout_threshold
        self._current: Server = pool.list_servers()[0]
        self._connection: Optional[Connection] = None
        self._connect_lock = asyncio.Lock()
        self._timeouts: Dict[Server, int] = {}
        self._closed = False

    @property
    def pool(self) -> ServerPool:
        return self._pool

    def current_server(self) -> Server:
        return self._current

    def connection(self) -> Optional[Connection]:
        return self._connection

    def _next_server(self, after: Server) -> Optional[Server]:
        available = self._pool.available_servers()
        if not available:
            return None
        servers = self._pool.list_servers()
        start = servers.index(after)
        for offset in range(len(servers)):
            server = servers[(start + offset) % len(servers)]
            if server in available:
                return server
        return None

    async def _get_connection(self) -> Connection:
        '''Raises: ConnectError, ProtocolError, AllServersExhausted'''
        async with self._connect_lock:
            if self._closed:
                raise Disconnected('the failover controller is closed')
            connection = self._connection
            if connection is not None and not connection.is_closed():
                return connection
            self._connection = None
            server = self._next_server(self._current)
            if server is None:
                raise AllServersExhausted()
            if server is not self._current:
                self._switch_to(server)
            try:
                self._connection = await self._client.connect(server)
            except ProtocolError as e:
                raise _ConnectionAttemptFailed(server, e) from e
            except ConnectError as e:
                raise _ConnectionAttemptFailed(server, e) from e
            self._pool.mark_healthy(server)
            return self._connection

    def _switch_to(self, server: Server) -> None:
        logger.info('switching to server %s', server)
        previous, self._current = self._current, server
        self.trigger_callback(NetworkEventNames.SERVER_SWITCHED.value, previous, server)

    async def report_failure(self, server: Server, error: TransientNetworkError) -> None:
        '''Record that `server` failed with `error` and move on to the next server.

        Failures reported for a server that is no longer current are ignored, so that concurrent
        operations failing on the same connection only cause one switch.'''
        async with self._connect_lock:
            if server is not self._current:
                return
            connection, self._connection = self._connection, None
            self._timeouts.pop(server, None)
            if isinstance(error, ProtocolError) and error.ban:
                self._pool.mark_banned(server)
            else:
                self._pool.mark_unreachable(server)
            logger.warning('server %s failed: %s', server, error)
            next_server = self._next_server(server)
            if next_server is not None and next_server is not server:
                self._switch_to(next_server)
        if connection is not None:
            await connection.close()

    def _record_timeout(self, server: Server) -> bool:
        '''Returns True if the server has now timed out too often.'''
        count = self._timeouts.get(server, 0) + 1
        self._timeouts[server] = count
        return count >= self._timeout_threshold

    async def with_active_connection(self, fn: Callable[[Connection], Awaitable[T]]) -> T:
        '''Await `fn(connection)` on the current server, failing over as necessary.

        Exceptions other than transient network errors raised by `fn` are propagated unchanged.

        Raises: AllServersExhausted
        '''
        last_error: Optional[BaseException] = None
        # Timeouts below the threshold retry the same server and are not counted as failures.
        failures = 0
        while failures < len(self._pool):
            try:
                connection = await self._get_connection()
            except _ConnectionAttemptFailed as e:
                failures += 1
                last_error = e.error
                await self.report_failure(e.server, e.error)
                continue
            except AllServersExhausted:
                break
            server = connection.server
            try:
                result = await fn(connection)
            except RequestTimeout as e:
                last_error = e
                connection.logger.info('request timed out: %s', e)
                if self._record_timeout(server):
                    failures += 1
                    await self.report_failure(server, e)
                continue
            except (Disconnected, ProtocolError) as e:
                failures += 1
                last_error = e
                await self.report_failure(server, e)
                continue
            self._timeouts.pop(server, None)
            return result
        raise AllServersExhausted(last_error)

    async def request(self, method: str, params: Sequence[Any]=()) -> Any:
        return await self.with_active_connection(
            lambda connection: connection.request(method, params))

    def subscribe(self, method: str, params: Sequence[Any]=()) -> "FailoverSubscription":
        return FailoverSubscription(self, method, params)

    async def close(self) -> None:
        async with self._connect_lock:
            self._closed = True
            connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()


class _ConnectionAttemptFailed(Exception):

    def __init__(self, server: Server, error: TransientNetworkError) -> None:
        super().__init__(str(error))
        self.server = server
        self.error = error


class FailoverSubscription:
    '''A subscription that survives server switches.

    When the underlying connection is lost the subscription is opened again through the failover
    controller, and a `Resubscribed` marker is yielded ahead of the new initial result. Closing it
    only removes this consumer, never the shared connection.
    '''

    def __init__(self, controller: FailoverController, method: str,
            params: Sequence[Any]=()) -> None:
        self._controller = controller
        self.method = method
        self.params = tuple(params)
        self._subscription: Optional[Subscription] = None
        self._opened_once = False
        self._resubscribed: Optional[Resubscribed] = None
        self._closed = False

    async def _open(self, connection: Connection) -> Subscription:
        subscription = connection.subscribe(self.method, self.params)
        await subscription.start()
        return subscription

    def __aiter__(self) -> "FailoverSubscription":
        return self

    async def __anext__(self) -> Any:
        while True:
            if self._closed:
                raise StopAsyncIteration
            if self._subscription is None:
                self._subscription = await self._controller.with_active_connection(self._open)
                if self._opened_once:
                    self._resubscribed = Resubscribed(self._subscription.connection.server)
                self._opened_once = True
            if self._resubscribed is not None:
                marker, self._resubscribed = self._resubscribed, None
                return marker
            subscription = self._subscription
            try:
                return await subscription.__anext__()
            except StopAsyncIteration:
                if self._closed:
                    raise
                self._subscription = None
            except TransientNetworkError as e:
                self._subscription = None
                await subscription.close()
                await self._controller.report_failure(subscription.connection.server, e)

    async def close(self) -> None:
        self._closed = True
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def __aenter__(self) -> "FailoverSubscription":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()
