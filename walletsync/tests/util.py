import asyncio
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bitcoinx import (BitcoinRegtest, BIP32PrivateKey, grind_header, pack_le_uint32, Script,
    sha256, Tx, TxInput, TxOutput)

from walletsync.constants import DerivationPath, TransportKind
from walletsync.exceptions import ConnectError, Disconnected, ProtocolError
from walletsync.servers import Server
from walletsync.signing import script_hash_hex

GENESIS_HEADER_HEX = \
    '0100000000000000000000000000000000000000000000000000000000000000000000003ba3edfd' \
    '7a7b12b27ac72c3e67768f617fc81bc3888a51323a9fb8aa4b1e5e4adae5494dffff7f2002000000'
GENESIS_HEADER = bytes.fromhex(GENESIS_HEADER_HEX)
BLOCK_INTERVAL = 600

MASTER = BIP32PrivateKey.from_seed(bytes(range(32)), BitcoinRegtest)
XPUB = MASTER.public_key.to_extended_key_string()


def make_headers(parent_raw: bytes, parent_height: int, count: int,
        salt: bytes=b'') -> List[bytes]:
    '''Ground regtest headers on top of `parent_raw`. A different `salt` gives a different
    chain.'''
    headers = []
    parent = BitcoinRegtest.deserialized_header(parent_raw, parent_height)
    for height in range(parent_height + 1, parent_height + 1 + count):
        root = sha256(salt + pack_le_uint32(height))
        raw = grind_header(parent.version, parent.hash, root, parent.timestamp + BLOCK_INTERVAL,
            parent.bits)
        assert raw is not None
        headers.append(raw)
        parent = BitcoinRegtest.deserialized_header(raw, height)
    return headers


def make_chain(count: int, salt: bytes=b'') -> List[bytes]:
    '''The regtest genesis header and `count` headers on top of it.'''
    return [GENESIS_HEADER] + make_headers(GENESIS_HEADER, 0, count, salt)


def header_timestamp(raw_header: bytes, height: int) -> int:
    return BitcoinRegtest.deserialized_header(raw_header, height).timestamp


def make_tx(inputs: Sequence[Tuple[str, int]], outputs: Sequence[Tuple[int, bytes]]) -> Tx:
    '''A transaction spending `(tx_id, index)` outpoints and paying `(value, script)` outputs.
    Input scripts are left empty, nothing here is ever signed.'''
    tx_inputs = [ TxInput(bytes.fromhex(tx_id)[::-1], index, Script(b''), 0xffffffff)
        for tx_id, index in inputs ]
    tx_outputs = [ TxOutput(value, Script(script)) for value, script in outputs ]
    return Tx(1, tx_inputs, tx_outputs, 0)


def coinbase_tx(outputs: Sequence[Tuple[int, bytes]], tag: int=0) -> Tx:
    # The tag keeps otherwise identical funding transactions apart.
    return make_tx([ ('00' * 31 + f'{tag:02x}', 0xffffffff) ], outputs)


def account_script(subpath: DerivationPath, index: int) -> bytes:
    key = MASTER.public_key
    for n in subpath + (index,):
        key = key.child_safe(n)
    return key.to_address(coin=BitcoinRegtest).to_script_bytes()


class FakeElectrumX:
    '''Answers Electrum protocol requests from in-memory data.'''

    def __init__(self) -> None:
        self.headers: List[bytes] = []
        self.histories: Dict[str, List[Tuple[str, int]]] = {}
        self.transactions: Dict[str, str] = {}
        self.counts: Counter = Counter()
        # Requests for these methods wait for the event to be set before they are answered.
        self.gates: Dict[str, asyncio.Event] = {}
        # Requests for these methods raise the given exception.
        self.failures: Dict[str, BaseException] = {}

    def tip(self) -> Dict[str, Any]:
        height = len(self.headers) - 1
        return { "hex": self.headers[height].hex(), "height": height }

    def add_transaction(self, tx: Tx, height: int, scripts: Sequence[bytes]) -> str:
        tx_id = tx.hex_hash()
        self.transactions[tx_id] = tx.to_hex()
        for script in scripts:
            self.histories.setdefault(script_hash_hex(script), []).append((tx_id, height))
        return tx_id

    async def __call__(self, method: str, params: List[Any]) -> Any:
        self.counts[method] += 1
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(method)
        if failure is not None:
            raise failure
        if method == 'server.ping':
            return None
        if method == 'blockchain.headers.subscribe':
            return self.tip()
        if method == 'blockchain.block.header':
            return self.headers[params[0]].hex()
        if method == 'blockchain.block.headers':
            start_height, count = params
            raw = self.headers[start_height: start_height + count]
            return { "count": len(raw), "hex": b''.join(raw).hex(), "max": 2016 }
        if method == 'blockchain.scripthash.get_history':
            return [ { "tx_hash": tx_hash, "height": height }
                for tx_hash, height in self.histories.get(params[0], []) ]
        if method == 'blockchain.scripthash.subscribe':
            history = self.histories.get(params[0])
            if not history:
                return None
            return sha256(''.join(f'{tx_hash}:{height}:'
                for tx_hash, height in history).encode()).hex()
        if method == 'blockchain.scripthash.unsubscribe':
            return params[0] in self.histories
        if method == 'blockchain.transaction.get':
            return self.transactions[params[0]]
        raise ProtocolError(f'unknown method {method}')


_DISCONNECTED = object()


class FakeSubscription:

    def __init__(self, connection: "FakeConnection", method: str,
            params: Sequence[Any]) -> None:
        self.connection = connection
        self.method = method
        self.params = list(params)
        self.queue: asyncio.Queue = asyncio.Queue()
        self.initial: List[Any] = []
        self.closed = False

    async def start(self) -> Any:
        result = await self.connection.request(self.method, self.params)
        self.initial.append(result)
        return result

    def notify(self, item: Any) -> None:
        self.queue.put_nowait(item)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(_DISCONNECTED)

    def __aiter__(self) -> "FakeSubscription":
        return self

    async def __anext__(self) -> Any:
        if self.closed:
            raise StopAsyncIteration
        if self.initial:
            return self.initial.pop()
        item = await self.queue.get()
        if item is _DISCONNECTED:
            if self.closed:
                raise StopAsyncIteration
            raise Disconnected('connection lost')
        return item


class FakeConnection:
    '''Stands in for `protocol.Connection`, passing requests to a handler coroutine.'''

    def __init__(self, server: Server, handler: Callable[[str, List[Any]], Any]) -> None:
        self.server = server
        self.logger = server.get_logger()
        self.handler = handler
        self.requests: List[Tuple[str, List[Any]]] = []
        self.subscriptions: List[FakeSubscription] = []
        self.closed = False

    def is_closed(self) -> bool:
        return self.closed

    async def request(self, method: str, params: Sequence[Any]=(),
            timeout: Optional[float]=None) -> Any:
        if self.closed:
            raise Disconnected('connection is closed')
        self.requests.append((method, list(params)))
        return await self.handler(method, list(params))

    def subscribe(self, method: str, params: Sequence[Any]=()) -> FakeSubscription:
        subscription = FakeSubscription(self, method, params)
        self.subscriptions.append(subscription)
        return subscription

    def disconnect(self) -> None:
        self.closed = True
        for subscription in self.subscriptions:
            subscription.queue.put_nowait(_DISCONNECTED)

    async def close(self) -> None:
        self.disconnect()


class FakeClient:
    '''Stands in for `protocol.ProtocolClient`.

    `behaviours` maps a server host to either a request handler, or an exception that
    connecting to the server raises.
    '''

    def __init__(self, behaviours: Optional[Dict[str, Any]]=None,
            default: Optional[Callable[[str, List[Any]], Any]]=None) -> None:
        self.behaviours = behaviours or {}
        self.default = default or FakeElectrumX()
        self.attempts: List[str] = []
        self.connections: List[FakeConnection] = []
        self.request_timeout = 1.0

    async def connect(self, server: Server) -> FakeConnection:
        self.attempts.append(server.host)
        behaviour = self.behaviours.get(server.host, self.default)
        if isinstance(behaviour, ProtocolError):
            raise behaviour
        if isinstance(behaviour, BaseException):
            raise ConnectError(server, behaviour)
        connection = FakeConnection(server, behaviour)
        self.connections.append(connection)
        return connection

    async def check_server(self, server: Server) -> None:
        connection = await self.connect(server)
        await connection.request('server.ping')
        await connection.close()


class FakeKeystore:

    def __init__(self, configurations: Dict[str, Sequence[Any]]) -> None:
        self.configurations = configurations

    def signing_configurations(self, account_id: str) -> Sequence[Any]:
        return self.configurations[account_id]


def tcp_server(host: str, port: int=50001) -> Server:
    return Server(host, port, TransportKind.TCP)

