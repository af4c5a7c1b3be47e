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

'''Logging for walletsync.

Every module logs through a child of the `walletsync` logger so that an embedding application
can raise or lower the verbosity of the sync core without touching its own loggers.'''

import logging
from typing import Union


LOGGER_NAMESPACE = "walletsync"
LOG_FORMAT = '%(asctime)s:%(levelname)s:%(name)s:%(message)s'


class Logs(object):

    def __init__(self) -> None:
        self.root = logging.getLogger(LOGGER_NAMESPACE)
        self.stream_handler = logging.StreamHandler()
        self.add_handler(self.stream_handler)

    def add_handler(self, handler: logging.Handler) -> None:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.root.addHandler(handler)

    def get_logger(self, name: str) -> logging.Logger:
        return self.root.getChild(name)

    def set_level(self, level: Union[str, int]) -> None:
        '''Accepts a level name in any case, like "debug", or a `logging` level number.'''
        self.root.setLevel(level.upper() if isinstance(level, str) else level)

    def level(self) -> int:
        return self.root.level


logs = Logs()
