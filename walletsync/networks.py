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

import json
import os
from typing import Dict, Type

from bitcoinx import Bitcoin, BitcoinRegtest, BitcoinTestnet

from .exceptions import UnknownCoinError


def read_json_dict(filename: str) -> Dict[str, Dict[str, str]]:
    path = os.path.join(os.path.dirname(os.path.realpath(__file__)), filename)
    with open(path, 'r') as f:
        return json.loads(f.read())


class SVMainnet(object):
    CODE = 'bsv'
    NAME = 'Bitcoin SV'
    UNIT = 'BSV'
    DECIMALS = 8
    IS_TESTNET = False
    DEFAULT_PORTS = {'t': '50001', 's': '50002'}
    DEFAULT_SERVERS = read_json_dict('servers.json')
    GENESIS = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"
    COIN = Bitcoin
    # Header proof of work is checked against the target encoded in the header bits.
    CHECK_POW = True


class SVTestnet(object):
    CODE = 'tbsv'
    NAME = 'Bitcoin SV Testnet'
    UNIT = 'TBSV'
    DECIMALS = 8
    IS_TESTNET = True
    DEFAULT_PORTS = {'t': '51001', 's': '51002'}
    DEFAULT_SERVERS = read_json_dict('servers_testnet.json')
    GENESIS = "000000000933ea01ad0ee984209779baaec3ced90fa3f408719526f8d77f4943"
    COIN = BitcoinTestnet
    CHECK_POW = True


class SVRegTestnet(object):
    """
    Note: RegTest overflows the max nBits field, presumably due to a very short time interval
    between generated blocks. Proof of work is not checked for it.
    """
    CODE = 'rbsv'
    NAME = 'Bitcoin SV Regtest'
    UNIT = 'RBSV'
    DECIMALS = 8
    IS_TESTNET = True
    DEFAULT_PORTS = {'t': '51001'}
    DEFAULT_SERVERS = read_json_dict('servers_regtest.json')
    GENESIS = "0f9188f13cb7b2c71f2a335e3a4fc328bf5beb436012afca590b1a11466e2206"
    COIN = BitcoinRegtest
    CHECK_POW = False


CoinType = Type[SVMainnet] | Type[SVTestnet] | Type[SVRegTestnet]

COINS: Dict[str, CoinType] = {
    network.CODE: network for network in (SVMainnet, SVTestnet, SVRegTestnet)
}

# Test coins have no market price. Their rates are looked up using the unit of the coin they
# stand in for. This is a fixed table of the units we know about, not a naming rule.
TESTNET_UNIT_MAP: Dict[str, str] = {
    "TBSV": "BSV",
    "RBSV": "BSV",
    "TBTC": "BTC",
    "TLTC": "LTC",
    "TETH": "ETH",
    "RETH": "ETH",
}


def coin_by_code(code: str) -> CoinType:
    try:
        return COINS[code]
    except KeyError:
        raise UnknownCoinError(code) from None


def rates_unit(unit: str) -> str:
    return TESTNET_UNIT_MAP.get(unit, unit)
