from typing import Sequence

import pytest

from walletsync.constants import ONE_DAY, ONE_HOUR
from walletsync.exceptions import TimeseriesNotAvailable
from walletsync.exchange_rate import RatesHistory
from walletsync.networks import SVMainnet, SVTestnet
from walletsync.timeseries import (build_account_summary, earliest_time, fiat_value,
    SummaryAccount, timeseries, truncate)
from walletsync.types import Balance, TimeseriesEntry, TransactionEntry


COIN = 100_000_000
# A day boundary in 2022.
BASE = 19_000 * ONE_DAY
NOW = BASE + 30 * ONE_DAY + 12 * ONE_HOUR
TX_RECEIVE_TIME = BASE + 10 * ONE_DAY + 5 * ONE_HOUR
TX_SEND_TIME = BASE + 28 * ONE_DAY


def entry(tx_id: str, height: int, amount: int, timestamp=None) -> TransactionEntry:
    return TransactionEntry(tx_id, height, amount, timestamp)


def hourly_prices(start: int, until: int, price: float=100.0):
    return [ (t, price) for t in range(start, until + 1, ONE_HOUR) ]


def make_rates(until: int=NOW - ONE_HOUR, quote: float=200.0, start: int=BASE) -> RatesHistory:
    rates = RatesHistory()
    rates.add_history('BSV', 'USD', hourly_prices(start, until))
    rates.set_quote('BSV', 'USD', quote)
    return rates


def standard_account(code: str="bsv-1", coin=SVMainnet) -> SummaryAccount:
    transactions: Sequence[TransactionEntry] = (
        entry("c", 0, COIN // 10),
        entry("b", 8, -COIN // 4, TX_SEND_TIME),
        entry("a", 5, COIN, TX_RECEIVE_TIME),
    )
    return SummaryAccount(code, "Savings", coin, Balance(COIN * 3 // 4, COIN // 10),
        transactions)


def test_timeseries_buckets() -> None:
    transactions = [
        entry("a", 1, 50, 100),
        entry("b", 2, -20, 250),
        entry("c", 0, 1000),
    ]
    assert timeseries(transactions, 0, 300, 100) == [
        TimeseriesEntry(0, 0),
        TimeseriesEntry(100, 50),
        TimeseriesEntry(200, 50),
        TimeseriesEntry(300, 30),
    ]


def test_timeseries_empty_range() -> None:
    assert timeseries([ entry("a", 1, 50, 100) ], 200, 100, 10) == []


def test_timeseries_untimed_confirmed() -> None:
    with pytest.raises(TimeseriesNotAvailable):
        timeseries([ entry("a", 1, 50, 100), entry("b", 2, 10) ], 0, 300, 100)


def test_earliest_time() -> None:
    assert earliest_time([]) is None
    assert earliest_time([ entry("a", 0, 5) ]) is None
    assert earliest_time([ entry("a", 3, 5, 300), entry("b", 2, 5, 200) ]) == 200


def test_truncate() -> None:
    assert truncate(ONE_DAY + 5, ONE_DAY) == ONE_DAY
    assert truncate(ONE_DAY, ONE_DAY) == ONE_DAY


def test_fiat_value() -> None:
    assert fiat_value(COIN * 3 // 4, 8, 200.0) == 150.0
    assert fiat_value(0, 8, 200.0) == 0.0


def test_summary_no_prices() -> None:
    account = SummaryAccount("bsv-1", "Fresh", SVMainnet, Balance(0, 5000),
        [ entry("a", 0, 5000) ])
    summary = build_account_summary([ account ], RatesHistory(), 'USD', NOW)
    assert summary["chartDataMissing"] is True
    assert summary["chartDataDaily"] == []
    assert summary["chartDataHourly"] == []
    assert summary["chartFiat"] == 'USD'
    assert summary["accounts"][0]["balance"] == {
        "available": { "amount": "0", "unit": "BSV" },
        "incoming": { "amount": "0.00005", "unit": "BSV" },
        "hasIncoming": True,
    }


def test_summary_stale_prices() -> None:
    rates = make_rates(until=NOW - 3 * ONE_HOUR)
    summary = build_account_summary([ standard_account() ], rates, 'USD', NOW)
    assert summary["chartDataMissing"] is True
    assert summary["chartDataHourly"] == []


def test_summary_prices_start_after_first_transaction() -> None:
    rates = make_rates(start=TX_RECEIVE_TIME + ONE_HOUR)
    summary = build_account_summary([ standard_account() ], rates, 'USD', NOW)
    assert summary["chartDataMissing"] is True
    assert summary["chartDataDaily"] == []


def test_summary_untimed_confirmed_transaction() -> None:
    account = SummaryAccount("bsv-1", "Savings", SVMainnet, Balance(COIN, 0),
        [ entry("a", 5, COIN, TX_RECEIVE_TIME), entry("b", 6, COIN) ])
    summary = build_account_summary([ account ], make_rates(), 'USD', NOW)
    assert summary["chartDataMissing"] is True


def test_summary_chart() -> None:
    summary = build_account_summary([ standard_account() ], make_rates(), 'USD', NOW)
    assert summary["chartDataMissing"] is False

    daily = summary["chartDataDaily"]
    # The leading zero point before the first transaction is dropped.
    assert daily[0] == { "time": BASE + 11 * ONE_DAY + ONE_HOUR, "value": 100.0 }
    assert daily[-1] == { "time": BASE + 30 * ONE_DAY + ONE_HOUR, "value": 75.0 }
    assert len(daily) == 20
    assert { "time": BASE + 28 * ONE_DAY + ONE_HOUR, "value": 75.0 } in daily
    assert { "time": BASE + 27 * ONE_DAY + ONE_HOUR, "value": 100.0 } in daily

    hourly = summary["chartDataHourly"]
    assert hourly[0] == { "time": BASE + 23 * ONE_DAY, "value": 100.0 }
    assert { "time": TX_SEND_TIME - ONE_HOUR, "value": 100.0 } in hourly
    assert { "time": TX_SEND_TIME, "value": 75.0 } in hourly
    # The last point values the current balance with the latest quote.
    assert hourly[-2] == { "time": NOW - ONE_HOUR, "value": 75.0 }
    assert hourly[-1] == { "time": NOW, "value": 150.0 }
    assert len(hourly) == 7 * 24 + 12 + 1


def test_summary_now_point_not_counted_twice() -> None:
    rates = make_rates(until=NOW)
    summary = build_account_summary([ standard_account() ], rates, 'USD', NOW)
    assert summary["chartDataHourly"][-1] == { "time": NOW, "value": 150.0 }


def test_summary_totals_and_coin_names() -> None:
    accounts = [
        standard_account("bsv-1"),
        standard_account("bsv-2"),
        standard_account("tbsv-1", SVTestnet),
    ]
    summary = build_account_summary(accounts, make_rates(), 'USD', NOW)
    assert summary["totals"] == {
        "bsv": { "amount": "1.5", "unit": "BSV" },
        "tbsv": { "amount": "0.75", "unit": "TBSV" },
    }
    assert summary["coinNames"] == { "bsv": "Bitcoin SV", "tbsv": "Bitcoin SV Testnet" }
    assert [ account["code"] for account in summary["accounts"] ] == [
        "bsv-1", "bsv-2", "tbsv-1" ]
    # Testnet coins are valued with the prices of their mainnet coin.
    assert summary["chartDataMissing"] is False
    assert summary["chartDataHourly"][-1] == { "time": NOW, "value": 450.0 }


def test_summary_account_without_timed_transactions_is_ignored() -> None:
    fresh = SummaryAccount("bsv-2", "Fresh", SVMainnet, Balance(0, 5000),
        [ entry("x", 0, 5000) ])
    summary = build_account_summary([ standard_account(), fresh ], make_rates(), 'USD', NOW)
    assert summary["chartDataMissing"] is False
    assert summary["chartDataHourly"][-1] == { "time": NOW, "value": 150.0 }


def test_summary_is_deterministic() -> None:
    accounts = [ standard_account("bsv-1"), standard_account("tbsv-1", SVTestnet) ]
    rates = make_rates()
    assert (build_account_summary(accounts, rates, 'USD', NOW) ==
        build_account_summary(accounts, rates, 'USD', NOW))


def test_summary_no_accounts() -> None:
    summary = build_account_summary([], make_rates(), 'USD', NOW)
    assert summary["accounts"] == []
    assert summary["totals"] == {}
    assert summary["chartDataMissing"] is True


def test_summary_prices_from_the_epoch() -> None:
    now = 2 * ONE_DAY
    account = SummaryAccount("bsv-1", "Savings", SVMainnet, Balance(COIN, 0),
        [ entry("a", 5, COIN, ONE_HOUR) ])
    rates = make_rates(until=now - ONE_HOUR, start=0)
    assert rates.earliest_history_timestamp('BSV', 'USD') == 0
    summary = build_account_summary([ account ], rates, 'USD', now)
    assert summary["chartDataMissing"] is False
    assert summary["chartDataDaily"][0] == { "time": ONE_HOUR, "value": 100.0 }
    assert summary["chartDataHourly"][-1] == { "time": now, "value": 200.0 }
