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

'''Wires the sync components of each coin together and keeps them running.

For every coin with an account there is one server pool, one failover controller, one header
store and one account indexer. A monitor task follows the server's chain tip, and every account
has its script hashes watched so that new activity starts a sync pass.
'''

import asyncio
from contextlib import suppress
import os
from typing import Dict, List, Optional, Set

from aiorpcx import run_in_thread, TaskGroup
from bitcoinx import hash_to_hex_str

from .constants import AccountSyncState, NetworkEventNames
from .exceptions import (AllServersExhausted, ChainError, ProtocolError, UnknownAccountError,
    WalletSyncError)
from .failover import FailoverController, Resubscribed
from .headers import HeaderChainStore, sync_headers
from .indexer import Account, AccountIndexer
from .logs import logs
from .networks import CoinType, coin_by_code
from .protocol import HEADERS_SUBSCRIBE, ProtocolClient, SCRIPTHASH_SUBSCRIBE
from .servers import ServerPool
from .signing import derive_account_code
from .simple_config import SimpleConfig
from .types import KeystoreProtocol
from .util import TriggeredCallbacks


logger = logs.get_logger("backend")

# How long to wait before subscribing again after every server failed.
RESUBSCRIBE_DELAY = 10.0


class CoinBackend(TriggeredCallbacks):

    def __init__(self, coin: CoinType, config: SimpleConfig,
            client: Optional[ProtocolClient]=None) -> None:
        super().__init__()
        self.coin = coin
        self.pool = ServerPool.from_config(config, coin)
        self.client = client or ProtocolClient(config.get_request_timeout(),
            config.electrumx_message_size_limit())
        self.failover = FailoverController(self.pool, self.client,
            config.get_timeout_threshold())
        self.headers_path = os.path.join(config.path, f'headers_{coin.CODE}')
        self.store = HeaderChainStore.load(coin, self.headers_path,
            config.get_max_reorg_depth())
        self.indexer = AccountIndexer(coin, self.failover, self.store,
            config.get_gap_limits(), config.get_sync_retry_budget())
        self.indexer.register_callback(self._on_account_synced,
            [NetworkEventNames.ACCOUNT_SYNCED.value, NetworkEventNames.ACCOUNT_FATAL_ERROR.value])
        self._account_jobs: asyncio.Queue = asyncio.Queue()
        self._scripts_changed: Dict[str, asyncio.Event] = {}
        self._main_task: Optional[asyncio.Task] = None

    def is_running(self) -> bool:
        return self._main_task is not None and not self._main_task.done()

    def start(self) -> None:
        if self._main_task is None:
            self._main_task = asyncio.create_task(self._main())

    async def _main(self) -> None:
        try:
            async with TaskGroup() as group:
                await group.spawn(self._monitor_tip, group)
                await group.spawn(self._monitor_accounts, group)
        except Exception:
            logger.exception('%s backend stopped', self.coin.CODE)

    def add_account(self, account: Account) -> None:
        self._account_jobs.put_nowait(('add', account))

    def remove_account(self, account: Account) -> None:
        self._account_jobs.put_nowait(('remove', account))

    async def _monitor_accounts(self, group: TaskGroup) -> None:
        account_tasks: Dict[str, asyncio.Task] = {}
        while True:
            job, account = await self._account_jobs.get()
            if job == 'add':
                if account.code not in account_tasks:
                    account_tasks[account.code] = await group.spawn(
                        self._maintain_account(account))
            elif job == 'remove':
                task = account_tasks.pop(account.code, None)
                if task is not None:
                    task.cancel()
                self.indexer.remove(account)
            else:
                logger.error(f'unknown account job {job}')

    async def _monitor_tip(self, group: TaskGroup) -> None:
        while True:
            try:
                async with self.failover.subscribe(HEADERS_SUBSCRIBE) as subscription:
                    async for tip in subscription:
                        if isinstance(tip, Resubscribed):
                            logger.info('following the chain tip of %s', tip.server)
                            continue
                        await self._on_new_tip(tip, group)
            except AllServersExhausted as e:
                logger.warning('unable to follow the chain tip: %s', e.last_error or e)
                await asyncio.sleep(RESUBSCRIBE_DELAY)
            except ChainError as e:
                # Sync stays halted until the accounts are reinitialized.
                self.indexer.halt(e)
                return

    async def _on_new_tip(self, json_tip, group: TaskGroup) -> None:
        '''Raises: AllServersExhausted, ChainError'''
        try:
            raw_header = bytes.fromhex(json_tip['hex'])
            height = json_tip['height']
            assert isinstance(height, int), "height must be an integer"
            tip = self.coin.COIN.deserialized_header(raw_header, height)
        except Exception as e:
            await self.failover.report_failure(self.failover.current_server(),
                ProtocolError(f'error connecting tip: {e} {json_tip}', ban=True))
            return

        status = await sync_headers(self.failover, self.store, height, hash_to_hex_str(tip.hash))
        await run_in_thread(self.store.save, self.headers_path)
        self.trigger_callback(NetworkEventNames.NEW_TIP.value, status)
        # Only unconfirmed transactions can change with a new block.
        for account in self.indexer.accounts():
            if self.indexer.has_unconfirmed_transactions(account):
                await group.spawn(self._synchronize(account))

    async def _synchronize(self, account: Account, script_hashes: Optional[List[str]]=None):
        try:
            await self.indexer.synchronize(account, script_hashes)
        except WalletSyncError as e:
            logger.error('account %s sync failed: %s', account.code, e)

    def _on_account_synced(self, event: str, account: Account) -> None:
        changed = self._scripts_changed.get(account.code)
        if changed is not None:
            changed.set()

    async def _maintain_account(self, account: Account) -> None:
        '''Put all tasks for a single account in a group so they can be cancelled together.'''
        logger.info(f'maintaining account {account}')
        changed = self._scripts_changed.setdefault(account.code, asyncio.Event())
        try:
            try:
                await self.indexer.initialize(account)
            except WalletSyncError as e:
                logger.error('account %s failed to initialize: %s', account.code, e)
                return
            watched: Set[str] = set()
            async with TaskGroup() as group:
                while account.state != AccountSyncState.FATAL_ERROR:
                    for script_hash in account.script_hashes():
                        if script_hash not in watched:
                            watched.add(script_hash)
                            await group.spawn(self._watch_script_hash(account, script_hash))
                    await changed.wait()
                    changed.clear()
                await group.cancel_remaining()
        finally:
            self._scripts_changed.pop(account.code, None)
            logger.info(f'stopped maintaining account {account}')

    async def _watch_script_hash(self, account: Account, script_hash: str) -> None:
        # The first status is already covered by the sync pass that found the script hash.
        reconcile = False
        while account.state != AccountSyncState.FATAL_ERROR:
            try:
                async with self.failover.subscribe(SCRIPTHASH_SUBSCRIBE,
                        [script_hash]) as subscription:
                    initial = True
                    async for _status in subscription:
                        if isinstance(_status, Resubscribed):
                            # Another server may know of changes we missed.
                            reconcile = initial = True
                            continue
                        if initial and not reconcile:
                            initial = False
                            continue
                        initial = reconcile = False
                        await self._synchronize(account, [script_hash])
            except AllServersExhausted as e:
                logger.warning('unable to watch %s: %s', script_hash, e.last_error or e)
                reconcile = True
                await asyncio.sleep(RESUBSCRIBE_DELAY)

    async def close(self) -> None:
        task, self._main_task = self._main_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        await self.failover.close()
        if self.store.verified_height >= self.store.base_height:
            await run_in_thread(self.store.save, self.headers_path)


class Backend(TriggeredCallbacks):
    '''All accounts across all coins.'''

    def __init__(self, config: SimpleConfig, keystore: KeystoreProtocol,
            client: Optional[ProtocolClient]=None) -> None:
        super().__init__()
        self.config = config
        self.keystore = keystore
        self._client = client
        self._coins: Dict[str, CoinBackend] = {}
        self._accounts: Dict[str, Account] = {}

    def coin(self, coin_code: str) -> CoinBackend:
        '''Raises: UnknownCoinError'''
        coin_backend = self._coins.get(coin_code)
        if coin_backend is None:
            coin_backend = CoinBackend(coin_by_code(coin_code), self.config, self._client)
            self._coins[coin_code] = coin_backend
        return coin_backend

    def accounts(self) -> List[Account]:
        return list(self._accounts.values())

    def account(self, code: str) -> Account:
        account = self._accounts.get(code)
        if account is None:
            raise UnknownAccountError(code)
        return account

    def add_account(self, coin_code: str, name: str, keystore_account_id: str) -> Account:
        '''Create the account if it is new and start maintaining it.'''
        coin_backend = self.coin(coin_code)
        configurations = self.keystore.signing_configurations(keystore_account_id)
        code = derive_account_code(coin_backend.coin, configurations)
        account = self._accounts.get(code)
        if account is None:
            account = self._start_account(Account(code, name, coin_backend.coin, configurations))
            logger.info('added account %s', code)
        return account

    def _start_account(self, account: Account) -> Account:
        coin_backend = self.coin(account.coin.CODE)
        self._accounts[account.code] = account
        coin_backend.start()
        coin_backend.add_account(account)
        return account

    def remove_account(self, code: str) -> None:
        account = self._accounts.pop(code, None)
        if account is not None:
            self.coin(account.coin.CODE).remove_account(account)
            logger.info('removed account %s', code)

    def indexer_for(self, account: Account) -> AccountIndexer:
        return self.coin(account.coin.CODE).indexer

    async def reinitialize_accounts(self) -> None:
        '''Throw away all sync state and start every account again from scratch.

        Each coin gets a new server pool read from the config, so server changes saved since
        startup take effect. A coin halted on a chain error is resumed.
        '''
        await self.close()
        self._coins.clear()
        accounts, self._accounts = self._accounts, {}
        for account in accounts.values():
            self._start_account(Account(account.code, account.name, account.coin,
                account.signing_configurations))
        logger.info('reinitialized %d accounts', len(accounts))

    async def close(self) -> None:
        for coin_backend in self._coins.values():
            await coin_backend.close()
