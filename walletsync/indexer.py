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

'''Per-account blockchain state: addresses, transactions and balances.

Every account is synchronized by at most one pass at a time. A pass derives the account's scripts,
asks the servers for the history of each script hash, fetches any transactions it has not seen
before and then publishes the result as a single immutable `AccountSnapshot`. Readers only ever
see complete snapshots.
'''

import asyncio
from dataclasses import dataclass, replace
from functools import partial
import struct
from typing import (Any, Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional,
    Sequence, Set, Tuple, TypeVar)

from aiorpcx import TaskGroup
from bitcoinx import BIP32PublicKey, hash_to_hex_str, Tx

from .constants import (AccountSyncState, CHANGE_SUBPATH, DEFAULT_GAP_LIMITS,
    DEFAULT_SYNC_RETRY_BUDGET, DerivationPath, NetworkEventNames, RECEIVING_SUBPATH)
from .exceptions import (AccountNotReady, AllServersExhausted, ChainError, ConfigError,
    InvalidSigningConfiguration, ProtocolError, UnknownAccountError)
from .failover import FailoverController
from .headers import HeaderChainStatus, HeaderChainStore
from .i18n import _
from .logs import logs
from .networks import CoinType
from .protocol import BLOCK_HEADER, Connection, SCRIPTHASH_HISTORY, TRANSACTION_GET
from .signing import script_hash_hex, SigningConfiguration
from .types import AccountSnapshot, Balance, TransactionEntry
from .util import chunks, TriggeredCallbacks


logger = logs.get_logger("indexer")

T = TypeVar("T")

# How many script hashes or transactions are requested at the same time.
REQUEST_BATCH_SIZE = 50


@dataclass
class BIP32ParentPath:
    # The signing configuration this path belongs to.
    configuration: SigningConfiguration
    # The subpath has already been applied. It is provided solely for context.
    subpath: DerivationPath
    # The pre-derived parent public keys.
    parent_public_keys: List[BIP32PublicKey]
    gap_limit: int
    # Current index.
    last_index: int = -1
    # Highest known index with a non-empty script hash history.
    highest_used_index: int = -1


class ScriptEntry(NamedTuple):
    script: bytes
    script_hash: str
    parent_path: Optional[BIP32ParentPath] = None
    parent_index: int = -1


class AddressDiscovery:
    '''The scripts of an account, grown on demand to stay `gap_limit` keys ahead of the highest
    used key on each derivation subpath.'''

    def __init__(self, coin: CoinType, configurations: Sequence[SigningConfiguration],
            gap_limits: Optional[Dict[DerivationPath, int]]=None) -> None:
        self._coin = coin
        gap_limits = DEFAULT_GAP_LIMITS | (gap_limits or {})
        self._entries: List[ScriptEntry] = []
        self._pending: List[ScriptEntry] = []
        self._bip32_paths: List[BIP32ParentPath] = []
        for configuration in configurations:
            configuration.validate(coin)
            if configuration.is_address_based():
                script = configuration.address_script(coin)
                self._pending.append(ScriptEntry(script, script_hash_hex(script)))
                continue
            for subpath in (RECEIVING_SUBPATH, CHANGE_SUBPATH):
                self._bip32_paths.append(BIP32ParentPath(configuration, subpath,
                    configuration.parent_public_keys(subpath), gap_limits[subpath]))

    def entries(self) -> List[ScriptEntry]:
        return list(self._entries)

    def scripts(self) -> Set[bytes]:
        return { entry.script for entry in self._entries }

    def script_hashes(self) -> List[str]:
        return [ entry.script_hash for entry in self._entries ]

    def mark_used(self, entry: ScriptEntry) -> None:
        parent_path = entry.parent_path
        if parent_path is not None:
            parent_path.highest_used_index = max(parent_path.highest_used_index,
                entry.parent_index)

    def create_new_entries(self) -> List[ScriptEntry]:
        '''The scripts needed to restore the gap on every path. Empty when nothing is missing.'''
        new_entries, self._pending = self._pending, []
        for parent_path in self._bip32_paths:
            while self._get_bip32_path_count(parent_path) > 0:
                current_index = parent_path.last_index + 1
                public_keys = [ public_key.child_safe(current_index)
                    for public_key in parent_path.parent_public_keys ]
                script = parent_path.configuration.script_for_public_keys(self._coin,
                    public_keys)
                new_entries.append(ScriptEntry(script, script_hash_hex(script), parent_path,
                    current_index))
                parent_path.last_index = current_index
        self._entries.extend(new_entries)
        return new_entries

    def _get_bip32_path_count(self, parent_path: BIP32ParentPath) -> int:
        """
        How many keys we can still examine for this BIP32 path given the gap limit.
        """
        if parent_path.highest_used_index > -1:
            gap_current = parent_path.last_index - parent_path.highest_used_index
            return parent_path.gap_limit - gap_current
        return parent_path.gap_limit - (parent_path.last_index + 1)


class Account:
    '''An account as the sync core sees it. Its state only changes through the indexer.'''

    def __init__(self, code: str, name: str, coin: CoinType,
            signing_configurations: Sequence[SigningConfiguration]) -> None:
        self.code = code
        self.name = name
        self.coin = coin
        self.signing_configurations = tuple(signing_configurations)
        self._state = AccountSyncState.UNINITIALIZED
        self._snapshot: Optional[AccountSnapshot] = None
        self._fatal_error: Optional[str] = None
        # Sync caches, only touched by the account's current sync pass.
        self._discovery: Optional[AddressDiscovery] = None
        self._histories: Dict[str, List[Tuple[str, int]]] = {}
        self._transactions: Dict[str, Tx] = {}
        self._timestamps: Dict[int, int] = {}

    @property
    def state(self) -> AccountSyncState:
        return self._state

    @property
    def snapshot(self) -> Optional[AccountSnapshot]:
        return self._snapshot

    @property
    def fatal_error_message(self) -> Optional[str]:
        return self._fatal_error

    def script_hashes(self) -> List[str]:
        if self._discovery is None:
            return []
        return self._discovery.script_hashes()

    def __repr__(self) -> str:
        return f'Account({self.code!r}, {self.coin.CODE!r}, {self._state.value!r})'


def _require_list(obj: Any) -> Sequence[Any]:
    assert isinstance(obj, (tuple, list))
    return obj


def _parse_history(script_hash: str, result: Any) -> List[Tuple[str, int]]:
    try:
        history = [ (item['tx_hash'], item['height']) for item in _require_list(result) ]
        for tx_hash, height in history:
            assert isinstance(tx_hash, str) and len(tx_hash) == 64
            assert isinstance(height, int)
        # Check that txids are unique
        assert len(set(tx_hash for tx_hash, _height in history)) == len(history), \
            f'server history for {script_hash} has duplicate transactions'
    except (AssertionError, KeyError, TypeError) as e:
        raise ProtocolError(f'bad history for {script_hash}: {e}', ban=True)
    return history


class AccountIndexer(TriggeredCallbacks):
    '''Synchronizes the accounts of one coin.'''

    def __init__(self, coin: CoinType, failover: FailoverController, store: HeaderChainStore,
            gap_limits: Optional[Dict[DerivationPath, int]]=None,
            retry_budget: int=DEFAULT_SYNC_RETRY_BUDGET, retry_delay: float=5.0) -> None:
        super().__init__()
        self.coin = coin
        self._failover = failover
        self._store = store
        self._gap_limits = gap_limits or {}
        self._retry_budget = retry_budget
        self._retry_delay = retry_delay
        self._accounts: Dict[str, Account] = {}
        self._passes: Dict[str, asyncio.Task] = {}
        # Script hashes that changed while a pass was running, per account code.
        self._follow_ups: Dict[str, Set[str]] = {}
        self._chain_error: Optional[ChainError] = None

    @property
    def chain_error(self) -> Optional[ChainError]:
        return self._chain_error

    def halt(self, error: ChainError) -> None:
        '''Stop synchronizing the coin's accounts. Every later sync pass fails with `error`.'''
        logger.error('%s synchronization halted: %s', self.coin.CODE, error)
        self._chain_error = error

    def accounts(self) -> List[Account]:
        return list(self._accounts.values())

    def get_account(self, code: str) -> Account:
        account = self._accounts.get(code)
        if account is None:
            raise UnknownAccountError(code)
        return account

    async def initialize(self, account: Account) -> None:
        '''Register the account and run its first sync pass.'''
        if account.coin is not self.coin:
            raise ConfigError(_("account {} is not a {} account").format(account.code,
                self.coin.NAME))
        self._accounts[account.code] = account
        if account._discovery is None:
            try:
                account._discovery = AddressDiscovery(self.coin, account.signing_configurations,
                    self._gap_limits)
            except InvalidSigningConfiguration as e:
                self._set_fatal(account, str(e))
                raise
        await self.synchronize(account)

    def status(self) -> HeaderChainStatus:
        return replace(self._store.status(), error=self._chain_error)

    def fatal_error(self, account: Account) -> bool:
        return account.state == AccountSyncState.FATAL_ERROR

    def _ready_snapshot(self, account: Account) -> AccountSnapshot:
        snapshot = account.snapshot
        if snapshot is None or account.state == AccountSyncState.FATAL_ERROR:
            raise AccountNotReady(account.code)
        return snapshot

    def balance(self, account: Account) -> Balance:
        '''Raises: AccountNotReady'''
        return self._ready_snapshot(account).balance

    def transactions(self, account: Account) -> List[TransactionEntry]:
        '''Newest first with confirmation counts against the current tip.

        Raises: AccountNotReady'''
        snapshot = self._ready_snapshot(account)
        tip_height = self._store.tip_height
        result = []
        for entry in snapshot.transactions:
            confirmations = max(0, tip_height - entry.height + 1) if entry.is_confirmed() else 0
            result.append(TransactionEntry(entry.tx_id, entry.height, entry.amount,
                entry.timestamp, confirmations))
        return result

    def has_unconfirmed_transactions(self, account: Account) -> bool:
        snapshot = account.snapshot
        return snapshot is not None and any(not entry.is_confirmed()
            for entry in snapshot.transactions)

    async def synchronize(self, account: Account,
            script_hashes: Optional[Iterable[str]]=None) -> None:
        '''Run a sync pass for the account, or join the one already running.

        With `script_hashes` only the history of those script hashes is refreshed. If a pass is
        already running when they arrive, one more pass is made for them after it finishes.

        Raises: AllServersExhausted, ChainError, InvalidSigningConfiguration, UnknownAccountError
        '''
        if self._accounts.get(account.code) is not account:
            raise UnknownAccountError(account.code)
        if self._chain_error is not None:
            raise self._chain_error
        task = self._passes.get(account.code)
        if task is not None and not task.done():
            if script_hashes is not None:
                self._follow_ups.setdefault(account.code, set()).update(script_hashes)
            await asyncio.shield(task)
            return
        dirty = None if script_hashes is None else set(script_hashes)
        task = asyncio.create_task(self._run_passes(account, dirty))
        self._passes[account.code] = task
        await asyncio.shield(task)

    def remove(self, account: Account) -> None:
        '''Forget the account, cancelling any sync pass it has running.'''
        self._accounts.pop(account.code, None)
        self._follow_ups.pop(account.code, None)
        task = self._passes.pop(account.code, None)
        if task is not None:
            task.cancel()

    def _set_fatal(self, account: Account, message: str) -> None:
        logger.error('account %s fatal error: %s', account.code, message)
        account._fatal_error = message
        account._state = AccountSyncState.FATAL_ERROR
        self.trigger_callback(NetworkEventNames.ACCOUNT_FATAL_ERROR.value, account)

    async def _run_passes(self, account: Account, dirty: Optional[Set[str]]) -> None:
        try:
            while True:
                await self._sync_with_retries(account, dirty)
                follow_up = self._follow_ups.pop(account.code, None)
                if not follow_up:
                    return
                dirty = follow_up
        finally:
            # No await separates this from the follow-up check, so no trigger is left behind.
            if self._passes.get(account.code) is asyncio.current_task():
                del self._passes[account.code]

    async def _sync_with_retries(self, account: Account, dirty: Optional[Set[str]]) -> None:
        attempts = 0
        while True:
            try:
                await self._sync_pass(account, dirty)
                return
            except AllServersExhausted as e:
                attempts += 1
                if attempts > self._retry_budget:
                    self._set_fatal(account, _("no server could synchronize the account: {}")
                        .format(e.last_error or e))
                    raise
                logger.warning('account %s sync attempt %d failed: %s', account.code, attempts,
                    e.last_error or e)
                await asyncio.sleep(self._retry_delay * attempts)
            except InvalidSigningConfiguration as e:
                self._set_fatal(account, str(e))
                raise

    async def _sync_pass(self, account: Account, dirty: Optional[Set[str]]) -> None:
        if account.state == AccountSyncState.FATAL_ERROR:
            return
        if self._chain_error is not None:
            raise self._chain_error
        discovery = account._discovery
        assert discovery is not None
        account._state = AccountSyncState.SYNCING
        synced_height = self._store.tip_height

        entries = [ entry for entry in discovery.entries()
            if dirty is None or entry.script_hash in dirty ]
        entries.extend(discovery.create_new_entries())
        while entries:
            histories = await self._gather(self._request_history,
                [ entry.script_hash for entry in entries ])
            for entry, history in zip(entries, histories):
                account._histories[entry.script_hash] = history
                if history:
                    discovery.mark_used(entry)
            entries = discovery.create_new_entries()

        heights: Dict[str, int] = {}
        for history in account._histories.values():
            for tx_hash, height in history:
                heights[tx_hash] = height

        missing = [ tx_hash for tx_hash in heights if tx_hash not in account._transactions ]
        if missing:
            logger.debug('account %s fetching %d transactions', account.code, len(missing))
            for tx_hash, tx in zip(missing,
                    await self._gather(self._request_transaction, missing)):
                account._transactions[tx_hash] = tx
        # Transactions that dropped out of the history were replaced or reorged away.
        for tx_hash in set(account._transactions) - set(heights):
            del account._transactions[tx_hash]

        confirmed_heights = sorted({ height for height in heights.values() if height > 0 })
        for height, timestamp in zip(confirmed_heights, await self._gather(
                partial(self._timestamp_at_height, account), confirmed_heights)):
            account._timestamps[height] = timestamp

        snapshot = self._build_snapshot(account, discovery.scripts(), heights, synced_height)
        # Publish the pass result in one step.
        account._snapshot = snapshot
        account._state = AccountSyncState.READY
        logger.debug('account %s synchronized: %d transactions, balance %s', account.code,
            len(snapshot.transactions), snapshot.balance)
        self.trigger_callback(NetworkEventNames.ACCOUNT_SYNCED.value, account)

    def _build_snapshot(self, account: Account, scripts: Set[bytes], heights: Dict[str, int],
            synced_height: int) -> AccountSnapshot:
        transactions = account._transactions
        owned: Dict[Tuple[str, int], int] = {}
        for tx_hash, tx in transactions.items():
            for index, output in enumerate(tx.outputs):
                if bytes(output.script_pubkey) in scripts:
                    owned[(tx_hash, index)] = output.value

        spent: Set[Tuple[str, int]] = set()
        spends_own: Set[str] = set()
        entries: List[TransactionEntry] = []
        for tx_hash, height in heights.items():
            tx = transactions[tx_hash]
            amount = sum(value for (output_hash, _index), value in owned.items()
                if output_hash == tx_hash)
            for txin in tx.inputs:
                outpoint = (hash_to_hex_str(txin.prev_hash), txin.prev_idx)
                if outpoint in owned:
                    amount -= owned[outpoint]
                    spent.add(outpoint)
                    spends_own.add(tx_hash)
            timestamp = account._timestamps.get(height) if height > 0 else None
            entries.append(TransactionEntry(tx_hash, height, amount, timestamp))

        # Coins received in unconfirmed transactions we did not create are incoming, everything
        # else we still own is available.
        available = incoming = 0
        for (tx_hash, index), value in owned.items():
            if (tx_hash, index) in spent:
                continue
            if heights[tx_hash] <= 0 and tx_hash not in spends_own:
                incoming += value
            else:
                available += value

        entries.sort(key=_transaction_sort_key)
        return AccountSnapshot(Balance(available, incoming), tuple(entries), synced_height,
            len(scripts))

    async def _gather(self, func: Callable[[T], Awaitable[Any]], items: List[T]) -> List[Any]:
        results: List[Any] = []
        for batch in chunks(items, REQUEST_BATCH_SIZE):
            async with TaskGroup() as group:
                tasks = [ await group.spawn(func(item)) for item in batch ]
            results.extend(task.result() for task in tasks)
        return results

    async def _request_history(self, script_hash: str) -> List[Tuple[str, int]]:
        async def _get(connection: Connection) -> List[Tuple[str, int]]:
            result = await connection.request(SCRIPTHASH_HISTORY, [script_hash])
            return _parse_history(script_hash, result)
        return await self._failover.with_active_connection(_get)

    async def _request_transaction(self, tx_hash: str) -> Tx:
        async def _get(connection: Connection) -> Tx:
            result = await connection.request(TRANSACTION_GET, [tx_hash])
            try:
                tx = Tx.from_hex(result)
            except (AssertionError, TypeError, ValueError, struct.error) as e:
                raise ProtocolError(f'bad transaction {tx_hash}: {e}', ban=True)
            if tx.hex_hash() != tx_hash:
                raise ProtocolError(f'server sent transaction {tx.hex_hash()} for {tx_hash}',
                    ban=True)
            return tx
        return await self._failover.with_active_connection(_get)

    async def _timestamp_at_height(self, account: Account, height: int) -> int:
        timestamp = self._store.timestamp_at_height(height)
        if timestamp is not None:
            return timestamp
        timestamp = account._timestamps.get(height)
        if timestamp is not None:
            return timestamp

        async def _get(connection: Connection) -> int:
            result = await connection.request(BLOCK_HEADER, [height])
            try:
                return self.coin.COIN.deserialized_header(bytes.fromhex(result), height).timestamp
            except (AssertionError, TypeError, ValueError, struct.error) as e:
                raise ProtocolError(f'bad header at height {height}: {e}', ban=True)
        return await self._failover.with_active_connection(_get)


def _transaction_sort_key(entry: TransactionEntry) -> Tuple[int, int, str]:
    # Unconfirmed first, then the most recent block first.
    if not entry.is_confirmed():
        return (0, 0, entry.tx_id)
    return (1, -entry.height, entry.tx_id)
