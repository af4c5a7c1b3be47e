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

'''The locally verified header chain of a coin.

Headers are checked for linkage and, on networks with real proof of work, that the header hash
meets the target its bits encode. Difficulty adjustment is not checked.
'''

from dataclasses import dataclass
import os
import threading
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

from bitcoinx import bits_to_target, hash_to_hex_str, pack_le_uint32, unpack_le_uint32_from

from .constants import DEFAULT_MAX_REORG_DEPTH, HEADER_SIZE, HEADERS_CHUNK_SIZE
from .exceptions import ChainError, ProtocolError
from .logs import logs

if TYPE_CHECKING:
    from bitcoinx import Header
    from .failover import FailoverController
    from .networks import CoinType
    from .protocol import Connection


logger = logs.get_logger("headers")

CHAIN_NON_CONTIGUOUS = "non-contiguous"
CHAIN_MALFORMED = "malformed"
CHAIN_BAD_POW = "bad-pow"


@dataclass(frozen=True)
class HeaderChainStatus:
    tip_height: int
    tip_hash: str
    verified_height: int
    syncing: bool
    # Set when header sync for the coin is halted.
    error: Optional[ChainError] = None

    def to_json(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "tip": self.tip_height,
            "tipHashHex": self.tip_hash,
            "verifiedHeight": self.verified_height,
            "syncing": self.syncing,
        }
        if self.error is not None:
            result["error"] = self.error.to_json()
        return result


class HeaderChainStore:
    '''Headers from `base_height` up to the verified height, with nothing missing in between.

    There is one writer at a time, guarded by a re-entrant lock, and readers always see a state
    that was complete at some point.
    '''

    def __init__(self, coin: "CoinType", base_height: int=0,
            max_reorg_depth: int=DEFAULT_MAX_REORG_DEPTH) -> None:
        self.coin = coin
        self.max_reorg_depth = max_reorg_depth
        self._lock = threading.RLock()
        self._base_height = base_height
        self._headers: List["Header"] = []
        self._target_height = -1
        self._target_hash = ''
        self._syncing = False

    @property
    def base_height(self) -> int:
        return self._base_height

    @property
    def verified_height(self) -> int:
        with self._lock:
            return self._base_height + len(self._headers) - 1

    @property
    def tip_height(self) -> int:
        with self._lock:
            return max(self._target_height, self.verified_height)

    def _deserialize(self, raw_header: bytes, height: int) -> "Header":
        if len(raw_header) != HEADER_SIZE:
            raise ChainError(CHAIN_MALFORMED, f'header at height {height} has bad length')
        header = self.coin.COIN.deserialized_header(raw_header, height)
        if self.coin.CHECK_POW:
            if int.from_bytes(header.hash, 'little') > bits_to_target(header.bits):
                raise ChainError(CHAIN_BAD_POW,
                    f'insufficient proof of work at height {height:,d}')
        return header

    def _index(self, height: int) -> int:
        return height - self._base_height

    def _header_at(self, height: int) -> Optional["Header"]:
        index = self._index(height)
        if 0 <= index < len(self._headers):
            return self._headers[index]
        return None

    def extend(self, start_height: int, raw_headers: Sequence[bytes]) -> HeaderChainStatus:
        '''Connect `raw_headers`, the first of which is at `start_height`.

        Headers already in the store are skipped. A sequence that forks from the stored chain
        replaces the stored headers above the fork point, as long as the fork point lies within
        `max_reorg_depth` of the verified height.

        Raises: ChainError
        '''
        headers = [ self._deserialize(raw, start_height + n)
            for n, raw in enumerate(raw_headers) ]
        for previous, header in zip(headers, headers[1:]):
            if header.prev_hash != previous.hash:
                raise ChainError(CHAIN_NON_CONTIGUOUS,
                    f'headers do not link at height {header.height:,d}')

        with self._lock:
            if not headers:
                return self.status()
            if not self._headers:
                self._base_height = start_height
                self._headers = headers
                self._log_extension(start_height)
                return self.status()

            verified_height = self.verified_height
            if start_height < self._base_height or start_height > verified_height + 1:
                raise ChainError(CHAIN_NON_CONTIGUOUS,
                    f'headers at {start_height:,d} do not connect to the stored chain '
                    f'ending at {verified_height:,d}')

            # Skip what we already have.
            skip = 0
            for header in headers:
                known = self._header_at(header.height)
                if known is None or known.hash != header.hash:
                    break
                skip += 1
            headers = headers[skip:]
            if not headers:
                return self.status()

            first = headers[0]
            parent = self._header_at(first.height - 1)
            if first.height == verified_height + 1 and parent is not None and \
                    parent.hash == first.prev_hash:
                self._headers.extend(headers)
                self._log_extension(first.height)
                return self.status()

            self._reorganize(headers)
            return self.status()

    def _reorganize(self, headers: List["Header"]) -> None:
        # Find the last stored header that a header in the new sequence builds on.
        verified_height = self.verified_height
        prev_hashes = { header.prev_hash: n for n, header in enumerate(headers) }
        lowest_height = max(self._base_height, verified_height - self.max_reorg_depth + 1)
        for height in range(verified_height, lowest_height - 1, -1):
            n = prev_hashes.get(self._header_at(height).hash)
            if n is None:
                continue
            if headers[n].height != height + 1:
                raise ChainError(CHAIN_NON_CONTIGUOUS,
                    f'header at {headers[n].height:,d} claims parent at {height:,d}')
            depth = verified_height - height
            del self._headers[self._index(height + 1):]
            self._headers.extend(headers[n:])
            logger.info('reorg of depth %d from height %d, new chain height %d',
                depth, height, self.verified_height)
            return
        raise ChainError(CHAIN_NON_CONTIGUOUS,
            f'no common ancestor within {self.max_reorg_depth} headers of height '
            f'{verified_height:,d}')

    def _log_extension(self, from_height: int) -> None:
        logger.debug('connected headers %d to %d', from_height, self.verified_height)

    def status(self) -> HeaderChainStatus:
        with self._lock:
            verified_height = self.verified_height
            if self._target_height > verified_height:
                tip_height, tip_hash = self._target_height, self._target_hash
            elif self._headers:
                tip_height = verified_height
                tip_hash = hash_to_hex_str(self._headers[-1].hash)
            else:
                tip_height, tip_hash = verified_height, ''
            return HeaderChainStatus(tip_height, tip_hash, verified_height, self._syncing)

    def set_target(self, height: int, hash_hex: str) -> None:
        '''Record the tip a server announced.'''
        with self._lock:
            self._target_height = height
            self._target_hash = hash_hex

    def set_syncing(self, flag: bool) -> None:
        with self._lock:
            self._syncing = flag

    def header_at_height(self, height: int) -> Optional["Header"]:
        with self._lock:
            return self._header_at(height)

    def hash_at_height(self, height: int) -> Optional[str]:
        header = self.header_at_height(height)
        return None if header is None else hash_to_hex_str(header.hash)

    def timestamp_at_height(self, height: int) -> Optional[int]:
        header = self.header_at_height(height)
        return None if header is None else header.timestamp

    def save(self, path: str) -> None:
        '''Write the base height and then the raw headers, replacing any existing file.'''
        with self._lock:
            data = pack_le_uint32(self._base_height) + b''.join(
                header.raw for header in self._headers)
        tmp_path = path + '.tmp'
        with open(tmp_path, 'wb') as f:
            f.write(data)
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, coin: "CoinType", path: str,
            max_reorg_depth: int=DEFAULT_MAX_REORG_DEPTH) -> "HeaderChainStore":
        store = cls(coin, max_reorg_depth=max_reorg_depth)
        if not os.path.exists(path):
            return store
        with open(path, 'rb') as f:
            data = f.read()
        if len(data) < 4 or (len(data) - 4) % HEADER_SIZE:
            logger.error('ignoring corrupt headers file %s', path)
            return store
        base_height = unpack_le_uint32_from(data, 0)[0]
        raw_headers = [ data[offset: offset + HEADER_SIZE]
            for offset in range(4, len(data), HEADER_SIZE) ]
        store.extend(base_height, raw_headers)
        logger.info('read %d headers from %s', len(raw_headers), path)
        return store


def _parse_headers_result(result: Any, height: int) -> List[bytes]:
    try:
        count = result['count']
        raw_chunk = bytes.fromhex(result['hex'])
        assert isinstance(count, int)
        assert len(raw_chunk) == HEADER_SIZE * count
    except (AssertionError, KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f'bad headers response at height {height:,d}: {e}', ban=True)
    return [ raw_chunk[offset: offset + HEADER_SIZE]
        for offset in range(0, len(raw_chunk), HEADER_SIZE) ]


async def _request_headers(connection: "Connection", height: int, count: int) -> List[bytes]:
    connection.logger.info(f'requesting {count:,d} headers from height {height:,d}')
    result = await connection.request('blockchain.block.headers', (height, count))
    return _parse_headers_result(result, height)


def _connect(store: HeaderChainStore, height: int, raw_headers: List[bytes]) -> None:
    try:
        store.extend(height, raw_headers)
    except ChainError as e:
        if e.reason in (CHAIN_MALFORMED, CHAIN_BAD_POW):
            raise ProtocolError(f'bad header provided: {e}', ban=True)
        raise


async def sync_headers(failover: "FailoverController", store: HeaderChainStore,
        tip_height: int, tip_hash: str='',
        chunk_size: int=HEADERS_CHUNK_SIZE) -> HeaderChainStatus:
    '''Download and connect headers up to `tip_height`.

    When the next chunk does not connect to the stored tip, the headers of the lookback window
    are fetched again so that a reorg can be resolved.

    Raises: ChainError, AllServersExhausted
    '''
    store.set_target(tip_height, tip_hash)
    store.set_syncing(True)

    async def _connect_chunk(connection: "Connection") -> int:
        height = store.verified_height + 1
        count = min(chunk_size, tip_height - height + 1)
        raw_headers = await _request_headers(connection, height, count)
        if not raw_headers:
            return 0
        try:
            _connect(store, height, raw_headers)
        except ChainError as e:
            if e.reason != CHAIN_NON_CONTIGUOUS:
                raise
            lookback_height = max(store.base_height, height - store.max_reorg_depth)
            connection.logger.info('headers do not connect at %d, fetching from %d',
                height, lookback_height)
            raw_headers = await _request_headers(connection, lookback_height,
                height - lookback_height + len(raw_headers))
            _connect(store, lookback_height, raw_headers)
        return len(raw_headers)

    try:
        while store.verified_height < tip_height:
            received = await failover.with_active_connection(_connect_chunk)
            if not received:
                break
    finally:
        store.set_syncing(False)
    status = store.status()
    logger.info('headers synchronized to height %d', status.verified_height)
    return status
