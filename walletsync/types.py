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

from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional, Protocol, Sequence, Tuple, TYPE_CHECKING

from .constants import AccountSyncState

if TYPE_CHECKING:
    from .signing import SigningConfiguration


class KeystoreProtocol(Protocol):
    def signing_configurations(self, account_id: str) -> Sequence["SigningConfiguration"]:
        ...


class RatesProtocol(Protocol):
    def price_at(self, coin_unit: str, fiat: str, timestamp: int) -> float:
        ...

    def earliest_history_timestamp(self, coin_unit: str, fiat: str) -> Optional[int]:
        ...

    def latest_history_timestamp(self, coin_units: Sequence[str], fiat: str) -> Optional[int]:
        ...

    def last_for_pair(self, coin_unit: str, fiat: str) -> float:
        ...


@dataclass(frozen=True)
class Balance:
    available: int = 0
    incoming: int = 0


@dataclass(frozen=True)
class TransactionEntry:
    tx_id: str
    # Zero or less for unconfirmed transactions.
    height: int
    # The delta to the account's balance, negative for outgoing transactions.
    amount: int
    timestamp: Optional[int] = None
    confirmations: int = 0

    def is_confirmed(self) -> bool:
        return self.height > 0


class TimeseriesEntry(NamedTuple):
    time: int
    value: int


class ChartEntry(NamedTuple):
    time: int
    value: float

    def to_json(self) -> Dict[str, Any]:
        return { "time": self.time, "value": self.value }


@dataclass(frozen=True)
class AccountSnapshot:
    '''Everything one sync pass learned. It is replaced as a whole, never modified.'''
    balance: Balance
    # Newest first, with unconfirmed transactions before all confirmed ones.
    transactions: Tuple[TransactionEntry, ...]
    synced_height: int
    script_hash_count: int = 0

