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

from typing import Optional, TYPE_CHECKING

from .i18n import _

if TYPE_CHECKING:
    from .servers import Server


class WalletSyncError(Exception):
    '''The base of all structured errors. These have a `kind` that the API layer can report
    alongside the human readable message.'''
    kind = "internal"

    def __init__(self, message: str="") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.__class__.__name__

    def to_json(self) -> dict:
        return { "kind": self.kind, "message": str(self) }


class ConfigError(WalletSyncError):
    kind = "config"


class InvalidServerError(ConfigError):
    pass


class TransientNetworkError(WalletSyncError):
    '''Errors of this type are absorbed by the failover logic and should never reach an
    account.'''
    kind = "network"


class ConnectError(TransientNetworkError):

    def __init__(self, server: "Server", cause: BaseException) -> None:
        super().__init__(_("Unable to connect to {server}: {cause}").format(server=server,
            cause=str(cause) or type(cause).__name__))
        self.server = server
        self.cause = cause


class RequestTimeout(TransientNetworkError):
    pass


class ProtocolError(TransientNetworkError):

    def __init__(self, message: str, *, ban: bool=False) -> None:
        super().__init__(message)
        # The server sent data that can only be the result of it being broken or malicious.
        self.ban = ban


class Disconnected(TransientNetworkError):
    pass


class AllServersExhausted(WalletSyncError):
    kind = "servers-exhausted"

    def __init__(self, last_error: Optional[BaseException]=None) -> None:
        super().__init__(_("No server could complete the request"))
        self.last_error = last_error


class ChainError(WalletSyncError):
    kind = "chain"

    def __init__(self, reason: str, message: str="") -> None:
        super().__init__(message or reason)
        self.reason = reason


class AccountNotReady(WalletSyncError):
    kind = "account-not-ready"

    def __str__(self) -> str:
        return _("The account is not synchronized yet")


class UnknownAccountError(WalletSyncError):
    kind = "unknown-account"

    def __str__(self) -> str:
        return _("Unknown account {}").format(self.message)


class UnknownCoinError(WalletSyncError):
    kind = "unknown-coin"

    def __str__(self) -> str:
        return _("Unknown coin {}").format(self.message)


class InvalidSigningConfiguration(WalletSyncError):
    kind = "invalid-signing-configuration"


class RatesNotAvailable(WalletSyncError):
    kind = "rates-not-available"


class TimeseriesNotAvailable(WalletSyncError):
    kind = "timeseries-not-available"
