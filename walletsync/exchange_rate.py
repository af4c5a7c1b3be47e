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

'''Fiat prices for the account summary charts.

`RatesHistory` holds the price points and answers the questions the chart builder asks of it.
The exchange classes fill it from public price APIs.
'''

import asyncio
import bisect
from decimal import Decimal
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from aiorpcx import ignore_after, run_in_thread
import requests

from .exceptions import RatesNotAvailable
from .logs import logs
from .util import get_posix_timestamp

logger = logs.get_logger("exchangerate")

PricePoint = Tuple[int, float]


class RatesHistory:
    '''Price history and the latest quote per (coin unit, fiat) pair.

    Coin units are the rates units of `networks.rates_unit`, so testnet coins share the prices
    of their mainnet counterparts.
    '''

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._history: Dict[Tuple[str, str], List[PricePoint]] = {}
        self._quotes: Dict[Tuple[str, str], float] = {}

    def add_history(self, coin_unit: str, fiat: str, points: Iterable[PricePoint]) -> None:
        key = (coin_unit, fiat)
        with self._lock:
            merged = dict(self._history.get(key, []))
            merged.update((int(timestamp), float(price)) for timestamp, price in points)
            self._history[key] = sorted(merged.items())

    def set_quote(self, coin_unit: str, fiat: str, price: float) -> None:
        with self._lock:
            self._quotes[(coin_unit, fiat)] = float(price)

    def price_at(self, coin_unit: str, fiat: str, timestamp: int) -> float:
        '''The price at `timestamp`, interpolated between the surrounding points. Zero outside
        the range of the history.'''
        with self._lock:
            points = self._history.get((coin_unit, fiat), [])
        if not points:
            return 0.
        index = bisect.bisect_left(points, (timestamp, float('-inf')))
        if index == len(points):
            return 0.
        at_time, at_price = points[index]
        if at_time == timestamp:
            return at_price
        if index == 0:
            return 0.
        before_time, before_price = points[index - 1]
        fraction = (timestamp - before_time) / (at_time - before_time)
        return before_price + fraction * (at_price - before_price)

    def earliest_history_timestamp(self, coin_unit: str, fiat: str) -> Optional[int]:
        with self._lock:
            points = self._history.get((coin_unit, fiat))
        return points[0][0] if points else None

    def latest_history_timestamp(self, coin_units: Sequence[str], fiat: str) -> Optional[int]:
        '''The most recent time all the given coins have a price for. None if any has none.'''
        latest = []
        with self._lock:
            for coin_unit in coin_units:
                points = self._history.get((coin_unit, fiat))
                if not points:
                    return None
                latest.append(points[-1][0])
        return min(latest) if latest else None

    def last_for_pair(self, coin_unit: str, fiat: str) -> float:
        '''Raises: RatesNotAvailable'''
        with self._lock:
            price = self._quotes.get((coin_unit, fiat))
        if price is None:
            raise RatesNotAvailable(f'{coin_unit}/{fiat}')
        return price


class ExchangeBase(object):

    def get_json(self, site, get_string):
        # APIs must have https
        url = ''.join(['https://', site, get_string])
        response = requests.request('GET', url, headers={'User-Agent' : 'WalletSync'}, timeout=10)
        response.raise_for_status()
        return response.json()

    def name(self) -> str:
        return self.__class__.__name__

    def get_rates(self, coin_unit: str) -> Dict[str, Decimal]:
        raise NotImplementedError()

    def request_history(self, coin_unit: str, fiat: str) -> List[PricePoint]:
        raise NotImplementedError()

    async def update(self, rates: RatesHistory, coin_units: Sequence[str], fiat: str,
            fetch_history: bool=True) -> None:
        for coin_unit in coin_units:
            try:
                logger.debug(f'getting fx quotes for {coin_unit}')
                quotes = await run_in_thread(self.get_rates, coin_unit)
                if fiat in quotes:
                    rates.set_quote(coin_unit, fiat, float(quotes[fiat]))
                if fetch_history:
                    logger.debug(f'getting historical FX rates for {coin_unit}/{fiat}')
                    points = await run_in_thread(self.request_history, coin_unit, fiat)
                    rates.add_history(coin_unit, fiat, points)
                    logger.debug('received %d historical FX rates', len(points))
            except requests.exceptions.RequestException as e:
                logger.error(f"unable to update {coin_unit} rates: {e}")
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"bad {self.name()} response for {coin_unit}: {e}")


class CoinGecko(ExchangeBase):

    COIN_IDS = {
        'BSV': 'bitcoin-cash-sv',
        'BTC': 'bitcoin',
        'LTC': 'litecoin',
        'ETH': 'ethereum',
    }

    def _coin_id(self, coin_unit: str) -> str:
        coin_id = self.COIN_IDS.get(coin_unit)
        if coin_id is None:
            raise ValueError(f'no price source for {coin_unit}')
        return coin_id

    def get_rates(self, coin_unit):
        json = self.get_json('api.coingecko.com',
            f'/api/v3/coins/{self._coin_id(coin_unit)}?localization=False&sparkline=false')
        prices = json["market_data"]["current_price"]
        return dict([(a[0].upper(),Decimal(a[1])) for a in prices.items()])

    def request_history(self, coin_unit, fiat):
        # The full range has daily points, the last week hourly ones.
        points: Dict[int, float] = {}
        for days in ('max', '7'):
            history = self.get_json('api.coingecko.com',
                f'/api/v3/coins/{self._coin_id(coin_unit)}/market_chart'
                f'?vs_currency={fiat.lower()}&days={days}')
            points.update((int(h[0] / 1000), float(h[1])) for h in history['prices'])
        return sorted(points.items())


class FxTask:
    '''Keeps a `RatesHistory` up to date for the coins of the active accounts.'''

    def __init__(self, rates: RatesHistory, exchange: Optional[ExchangeBase]=None,
            refresh_interval: float=150) -> None:
        self.rates = rates
        self.exchange = exchange or CoinGecko()
        self.refresh_interval = refresh_interval
        self.refresh_event = asyncio.Event()
        self.coin_units: List[str] = []
        self.fiat = 'USD'
        self._last_history_fetch = 0

    def set_pairs(self, coin_units: Sequence[str], fiat: str) -> None:
        if sorted(coin_units) != sorted(self.coin_units) or fiat != self.fiat:
            self.coin_units = list(coin_units)
            self.fiat = fiat
            self._last_history_fetch = 0
            self.refresh_event.set()

    async def refresh_loop(self) -> None:
        while True:
            async with ignore_after(self.refresh_interval):
                await self.refresh_event.wait()
            self.refresh_event.clear()
            if not self.coin_units:
                continue
            # The history only gains a point an hour, so it is refreshed less often.
            now = get_posix_timestamp()
            fetch_history = now - self._last_history_fetch > 1800
            await self.exchange.update(self.rates, self.coin_units, self.fiat, fetch_history)
            if fetch_history:
                self._last_history_fetch = now
