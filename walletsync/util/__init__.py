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


"""Small helpers shared across walletsync that have no better home."""

from collections import defaultdict
from decimal import Decimal
import os
import stat
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Sequence, Tuple, TypeVar

from ..logs import logs


T1 = TypeVar("T1")

EventCallback = Callable[..., None]


def protocol_tuple(s: str) -> Tuple[int, ...]:
    '''Turn a dotted protocol version such as "1.4" into (1, 4).

    Raises ValueError if the version number is bad.'''
    if not isinstance(s, str) or not s:
        raise ValueError(f'invalid protocol version: {s}')
    parts = s.split('.')
    if not all(part.isdigit() for part in parts):
        raise ValueError(f'invalid protocol version: {s}')
    return tuple(int(part) for part in parts)


def version_string(ptuple: Tuple[int, ...]) -> str:
    '''The inverse of `protocol_tuple`, padded so that (1, ) gives "1.0".'''
    padded = tuple(ptuple) + (0, ) * max(0, 2 - len(ptuple))
    return '.'.join(map(str, padded))


def make_dir(path: str) -> None:
    """Create a private directory unless `path` already exists."""
    if os.path.exists(path):
        return
    if os.path.islink(path):
        raise FileNotFoundError(f'{path} is a link to a missing location')
    os.mkdir(path)
    os.chmod(path, stat.S_IRWXU)


def get_posix_timestamp() -> int:
    return int(time.time())


def format_satoshis_plain(x: int, decimal_point: int=8) -> str:
    """The amount in coins with no trailing zeros and no thousands separator."""
    amount = Decimal(x).scaleb(-decimal_point)
    return f"{amount:.{decimal_point}f}".rstrip('0').rstrip('.')


def chunks(items: Sequence[T1], size: int) -> Iterator[Sequence[T1]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class TriggeredCallbacks:
    """Named events with callbacks that are invoked synchronously as `callback(event, *args)`."""

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[EventCallback]] = defaultdict(list)
        self._callback_lock = threading.Lock()
        self._callback_logger = logs.get_logger("callbacks")

    def register_callback(self, callback: EventCallback, events: List[str]) -> None:
        with self._callback_lock:
            for event in events:
                registered = self._callbacks[event]
                if callback in registered:
                    self._callback_logger.error("duplicate registration for %s: %s", event,
                        callback)
                else:
                    registered.append(callback)

    def unregister_callback(self, callback: EventCallback) -> None:
        with self._callback_lock:
            for registered in self._callbacks.values():
                registered[:] = [ entry for entry in registered if entry != callback ]

    def trigger_callback(self, event: str, *args: Any) -> None:
        # Call outside the lock so that a callback may register or unregister.
        with self._callback_lock:
            callbacks = list(self._callbacks.get(event, ()))
        for callback in callbacks:
            callback(event, *args)
