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

'''Balance over time and its fiat valuation, as shown by the account summary chart.

Everything here is a pure function of its arguments, so building the summary twice from the same
inputs gives the same result.
'''

from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from .constants import CHART_HOURLY_DAYS, CHART_STALE_PRICE_SECONDS, ONE_DAY, ONE_HOUR
from .exceptions import RatesNotAvailable, TimeseriesNotAvailable
from .logs import logs
from .networks import CoinType, rates_unit
from .types import Balance, ChartEntry, RatesProtocol, TimeseriesEntry, TransactionEntry
from .util import format_satoshis_plain

logger = logs.get_logger("timeseries")


class SummaryAccount(NamedTuple):
    code: str
    name: str
    coin: CoinType
    balance: Balance
    transactions: Sequence[TransactionEntry]


def earliest_time(transactions: Iterable[TransactionEntry]) -> Optional[int]:
    '''The timestamp of the oldest confirmed transaction, if any.'''
    timestamps = [ entry.timestamp for entry in transactions if entry.timestamp is not None ]
    return min(timestamps) if timestamps else None


def truncate(timestamp: int, interval: int) -> int:
    return timestamp - timestamp % interval


def timeseries(transactions: Iterable[TransactionEntry], start: int, end: int,
        interval: int) -> List[TimeseriesEntry]:
    '''The confirmed balance at `start`, `start + interval`, ... up to and including `end`.

    Raises: TimeseriesNotAvailable if a confirmed transaction has no timestamp yet.
    '''
    timed = []
    for entry in transactions:
        if not entry.is_confirmed():
            continue
        if entry.timestamp is None:
            raise TimeseriesNotAvailable(entry.tx_id)
        timed.append((entry.timestamp, entry.amount))
    timed.sort()

    result: List[TimeseriesEntry] = []
    balance = 0
    index = 0
    current = start
    while current <= end:
        while index < len(timed) and timed[index][0] <= current:
            balance += timed[index][1]
            index += 1
        result.append(TimeseriesEntry(current, balance))
        current += interval
    return result


def fiat_value(amount: int, decimals: int, price: float) -> float:
    return float(Decimal(amount) / (Decimal(10) ** decimals) * Decimal(price))


def format_amount(amount: int, coin: CoinType) -> Dict[str, str]:
    return {
        "amount": format_satoshis_plain(amount, coin.DECIMALS),
        "unit": coin.UNIT,
    }


def account_json(account: SummaryAccount) -> Dict[str, Any]:
    balance = account.balance
    return {
        "code": account.code,
        "name": account.name,
        "coinCode": account.coin.CODE,
        "coinUnit": account.coin.UNIT,
        "coinName": account.coin.NAME,
        "balance": {
            "available": format_amount(balance.available, account.coin),
            "incoming": format_amount(balance.incoming, account.coin),
            "hasIncoming": balance.incoming > 0,
        },
    }


def _sorted_chart(entries: Dict[int, float]) -> List[Dict[str, Any]]:
    result = [ ChartEntry(time, value) for time, value in sorted(entries.items()) ]
    # Truncate leading zeroes.
    for i, entry in enumerate(result):
        if entry.value != 0:
            result = result[i:]
            break
    return [ entry.to_json() for entry in result ]


def build_account_summary(accounts: Sequence[SummaryAccount], rates: RatesProtocol, fiat: str,
        now: int) -> Dict[str, Any]:
    '''The balances of all accounts and a chart of their combined fiat value over time.

    The chart has daily points since the oldest transaction and hourly points for the last week.
    If prices or block times needed for it are missing, `chartDataMissing` is set and the chart
    should not be shown as complete.
    '''
    json_accounts = []
    totals: Dict[str, int] = {}
    coins: Dict[str, CoinType] = {}
    coin_names: Dict[str, str] = {}
    chart_daily: Dict[int, float] = {}
    chart_hourly: Dict[int, float] = {}
    now_value: Optional[float] = None

    coin_units = sorted({ rates_unit(account.coin.UNIT) for account in accounts })
    # Chart data until this point in time.
    until = rates.latest_history_timestamp(coin_units, fiat)
    chart_data_missing = until is None or now - until > CHART_STALE_PRICE_SECONDS
    if chart_data_missing:
        logger.info('chart data missing: prices until %s, now %d', until, now)

    for account in accounts:
        coin = account.coin
        json_accounts.append(account_json(account))
        totals[coin.CODE] = totals.get(coin.CODE, 0) + account.balance.available
        coins[coin.CODE] = coin
        coin_names[coin.CODE] = coin.NAME

        # Below here, only chart data is being computed.
        if chart_data_missing:
            continue

        # Time from which the chart turns from daily points to hourly points.
        hourly_from = truncate(now - CHART_HOURLY_DAYS * ONE_DAY, ONE_DAY)
        unit = rates_unit(coin.UNIT)
        earliest_price = rates.earliest_history_timestamp(unit, fiat)
        earliest_tx_time = earliest_time(account.transactions)
        if earliest_tx_time is None:
            # Ignore the chart for this account, there is no timed transaction.
            continue
        if earliest_price is None or earliest_tx_time < earliest_price:
            logger.info('chart data missing for %s: earliest tx %d, earliest price %s',
                coin.CODE, earliest_tx_time, earliest_price)
            chart_data_missing = True
            continue

        try:
            daily = timeseries(account.transactions,
                truncate(earliest_tx_time, ONE_DAY) + ONE_HOUR, until, ONE_DAY)
            hourly = timeseries(account.transactions, hourly_from, until, ONE_HOUR)
        except TimeseriesNotAvailable:
            logger.info('chart data missing for %s: block times unknown', coin.CODE)
            chart_data_missing = True
            continue

        for series, chart in ((daily, chart_daily), (hourly, chart_hourly)):
            for entry in series:
                price = rates.price_at(unit, fiat, entry.time)
                chart[entry.time] = chart.get(entry.time, 0.) + fiat_value(entry.value,
                    coin.DECIMALS, price)

        # One final point with the latest price, so the chart ends at the current balance.
        try:
            price = rates.last_for_pair(unit, fiat)
        except RatesNotAvailable as e:
            logger.info('chart data missing: %s', e)
            chart_data_missing = True
            continue
        now_value = (now_value or 0.) + fiat_value(account.balance.available, coin.DECIMALS,
            price)

    if now_value is not None:
        chart_hourly[now] = now_value

    return {
        "accounts": json_accounts,
        "totals": { code: format_amount(total, coins[code]) for code, total in totals.items() },
        "coinNames": coin_names,
        "chartDataMissing": chart_data_missing,
        "chartDataDaily": _sorted_chart(chart_daily),
        "chartDataHourly": _sorted_chart(chart_hourly),
        "chartFiat": fiat,
    }
