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

'''The calls the UI makes into the sync core.

Results are JSON-ready dictionaries. Failures are raised as `WalletSyncError` subclasses, except
for the server checks which report failures in their result like the UI expects.
'''

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from aiorpcx import TaskTimeout

from .backend import Backend
from .constants import TransportKind
from .exceptions import (InvalidServerError, RatesNotAvailable, TransientNetworkError,
    WalletSyncError)
from .i18n import _
from .logs import logs
from .networks import coin_by_code, rates_unit
from .protocol import download_certificate, ProtocolClient
from .servers import Server
from .timeseries import account_json, build_account_summary, format_amount, SummaryAccount
from .types import RatesProtocol

logger = logs.get_logger("api")


def parse_server_address(server_address: str) -> Tuple[str, int]:
    host, _sep, port_text = server_address.rpartition(':')
    try:
        port = int(port_text)
    except ValueError:
        raise InvalidServerError(_('bad server address: {}').format(server_address)) from None
    if not host or not 0 < port < 65536:
        raise InvalidServerError(_('bad server address: {}').format(server_address))
    return host, port


class Handlers:

    def __init__(self, backend: Backend, rates: RatesProtocol,
            client: Optional[ProtocolClient]=None, clock: Callable[[], float]=time.time) -> None:
        self.backend = backend
        self.rates = rates
        self.client = client or ProtocolClient(backend.config.get_request_timeout(),
            backend.config.electrumx_message_size_limit(), ping=False)
        self._clock = clock

    def get_headers_status(self, coin_code: str) -> Dict[str, Any]:
        return self.backend.coin(coin_code).indexer.status().to_json()

    def get_accounts(self) -> List[Dict[str, Any]]:
        return [ {
            "coinCode": account.coin.CODE,
            "coinUnit": account.coin.UNIT,
            "code": account.code,
            "name": account.name,
        } for account in self.backend.accounts() ]

    async def reinitialize_accounts(self) -> None:
        await self.backend.reinitialize_accounts()

    def get_balance(self, account_code: str) -> Dict[str, Any]:
        account = self.backend.account(account_code)
        return account_json(SummaryAccount(account.code, account.name, account.coin,
            self.backend.indexer_for(account).balance(account), ()))["balance"]

    def get_transactions(self, account_code: str) -> List[Dict[str, Any]]:
        account = self.backend.account(account_code)
        result = []
        for entry in self.backend.indexer_for(account).transactions(account):
            result.append({
                "txID": entry.tx_id,
                "height": entry.height,
                "timestamp": entry.timestamp,
                "numConfirmations": entry.confirmations,
                "type": "receive" if entry.amount >= 0 else "send",
                "amount": format_amount(abs(entry.amount), account.coin),
            })
        return result

    def get_account_summary(self) -> Dict[str, Any]:
        accounts = []
        for account in self.backend.accounts():
            indexer = self.backend.indexer_for(account)
            if indexer.fatal_error(account):
                continue
            accounts.append(SummaryAccount(account.code, account.name, account.coin,
                indexer.balance(account), indexer.transactions(account)))
        return build_account_summary(accounts, self.rates, self.backend.config.get_main_fiat(),
            int(self._clock()))

    async def check_server(self, server_info: Dict[str, Any]) -> Dict[str, Any]:
        '''Connect to the server described by `server_info`, handshake and ping.'''
        try:
            host, port = parse_server_address(server_info.get("server", ""))
            transport = TransportKind.SSL if server_info.get("tls") else TransportKind.TCP
            server = Server(host, port, transport, certificate=server_info.get("pemCert") or None)
            await self.client.check_server(server)
        except (TransientNetworkError, InvalidServerError) as e:
            logger.info('server check of %s failed: %s', server_info.get("server"), e)
            return { "success": False, "errorMessage": str(e) }
        return { "success": True }

    async def download_certificate(self, server_address: str) -> Dict[str, Any]:
        try:
            host, port = parse_server_address(server_address)
            pem_certificate = await download_certificate(host, port, self.client.request_timeout)
        except (InvalidServerError, OSError) as e:
            return { "success": False, "errorMessage": str(e) }
        except TaskTimeout:
            return { "success": False, "errorMessage": _("timed out") }
        return { "success": True, "pemCert": pem_certificate }

    def _last_rate(self, coin_unit: str, fiat: str) -> float:
        try:
            return self.rates.last_for_pair(rates_unit(coin_unit), fiat)
        except RatesNotAvailable:
            return 0.

    def convert_to_fiat(self, from_unit: str, to_fiat: str, amount: str) -> Dict[str, Any]:
        try:
            amount_value = float(amount)
        except ValueError:
            return { "success": False, "errMsg": "invalid amount" }
        rate = self._last_rate(from_unit, to_fiat)
        return { "success": True, "fiatAmount": f"{amount_value * rate:.2f}" }

    def convert_from_fiat(self, from_fiat: str, to_coin_code: str,
            amount: str) -> Dict[str, Any]:
        try:
            coin = coin_by_code(to_coin_code)
        except WalletSyncError:
            return { "success": False, "errMsg": "internal error" }
        try:
            amount_value = float(amount)
        except ValueError:
            return { "success": False, "errMsg": "invalid amount" }
        rate = self._last_rate(coin.UNIT, from_fiat)
        result = amount_value / rate if rate else 0.
        return { "success": True, "amount": f"{result:.{coin.DECIMALS}f}" }
