# Pytest looks here for fixtures
import asyncio
from typing import List

import pytest
import pytest_asyncio

from walletsync.backend import Backend
from walletsync.constants import NetworkEventNames, RECEIVING_SUBPATH
from walletsync.networks import SVRegTestnet
from walletsync.signing import SigningConfiguration
from walletsync.simple_config import SimpleConfig

from .util import account_script, coinbase_tx, FakeClient, FakeElectrumX, FakeKeystore, \
    make_chain, XPUB


@pytest.fixture
def config(tmp_path) -> SimpleConfig:
    return SimpleConfig({'walletsync_path': str(tmp_path)},
        read_user_config_function=lambda path: {})


@pytest.fixture(scope="session")
def regtest_chain() -> List[bytes]:
    # Grinding is cheap on regtest bits but there is no need to repeat it for every test.
    return make_chain(30)


@pytest.fixture
def electrumx(regtest_chain) -> FakeElectrumX:
    server = FakeElectrumX()
    server.headers = list(regtest_chain)
    return server


@pytest.fixture
def regtest_coin():
    return SVRegTestnet


@pytest.fixture
def keystore() -> FakeKeystore:
    return FakeKeystore({ "main": [ SigningConfiguration.single_key(XPUB) ] })


@pytest_asyncio.fixture
async def synced_backend(config, electrumx, keystore):
    '''A backend following the regtest chain with one synced account holding 1.5 coins and
    5,000 satoshis incoming.'''
    receive_0 = account_script(RECEIVING_SUBPATH, 0)
    electrumx.add_transaction(coinbase_tx([ (150_000_000, receive_0) ], 1), 5, [ receive_0 ])
    electrumx.add_transaction(coinbase_tx([ (5_000, receive_0) ], 2), 0, [ receive_0 ])
    backend = Backend(config, keystore, FakeClient(default=electrumx))
    coin_backend = backend.coin(SVRegTestnet.CODE)
    synced = asyncio.Event()
    new_tip = asyncio.Event()
    coin_backend.indexer.register_callback(lambda event, account: synced.set(),
        [NetworkEventNames.ACCOUNT_SYNCED.value])
    coin_backend.register_callback(lambda event, status: new_tip.set(),
        [NetworkEventNames.NEW_TIP.value])
    backend.add_account(SVRegTestnet.CODE, "Main", "main")
    await asyncio.wait_for(asyncio.gather(synced.wait(), new_tip.wait()), 10)
    yield backend
    await backend.close()
