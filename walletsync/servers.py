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

'''The pool of remote Electrum protocol servers configured for a coin.

The pool only tracks server identity and health, it never talks to a server itself. Health
state is changed by the failover controller.
'''

from contextlib import suppress
import hashlib
import logging
import ssl
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import certifi

from .constants import (BAN_PERIOD, RETRY_DELAY_INITIAL, RETRY_DELAY_MAXIMUM, ServerHealth,
    TransportKind)
from .exceptions import ConfigError, InvalidServerError
from .i18n import _
from .logs import logs

if TYPE_CHECKING:
    from .networks import CoinType
    from .simple_config import SimpleConfig


logger = logs.get_logger("servers")


def normalize_fingerprint(fingerprint: str) -> str:
    return fingerprint.replace(':', '').replace(' ', '').lower()


def certificate_fingerprint(pem_certificate: str) -> str:
    return hashlib.sha256(ssl.PEM_cert_to_DER_cert(pem_certificate)).hexdigest()


class ServerState:
    '''The run-time state of a Server.'''

    def __init__(self) -> None:
        self.health = ServerHealth.UNKNOWN
        self.last_try = 0.
        self.last_good = 0.
        self.last_blacklisted: Optional[float] = None
        self.retry_delay = 0.

    def can_retry(self, now: float) -> bool:
        return not self.is_blacklisted(now) and self.last_try + self.retry_delay <= now

    def is_blacklisted(self, now: float) -> bool:
        return (self.last_blacklisted is not None and
            self.last_blacklisted > now - BAN_PERIOD)

    def record_success(self, now: float) -> None:
        self.health = ServerHealth.HEALTHY
        self.last_try = now
        self.last_good = now
        self.retry_delay = 0.

    def record_failure(self, now: float) -> None:
        # Exponential backoff: 1, 2, 4, ... seconds capped at the maximum.
        self.health = ServerHealth.UNREACHABLE
        self.last_try = now
        if self.retry_delay == 0:
            self.retry_delay = RETRY_DELAY_INITIAL
        else:
            self.retry_delay = min(self.retry_delay * 2, RETRY_DELAY_MAXIMUM)

    def record_blacklisted(self, now: float) -> None:
        self.health = ServerHealth.BANNED
        self.last_try = now
        self.last_blacklisted = now

    def __str__(self) -> str:
        return f'{self.health.name.lower()} last_try={self.last_try:.0f}'


class Server:
    '''A smart wrapper around a (host, port, transport) tuple and its trust anchor.

    The trust anchor is only relevant for SSL servers. It is either a PEM certificate that the
    connection is pinned to, or the SHA-256 fingerprint of the certificate the server is expected
    to present. With neither, the server certificate is verified against the certifi CA bundle.
    '''

    def __init__(self, host: str, port: int, transport: TransportKind,
            certificate: Optional[str]=None, fingerprint: Optional[str]=None) -> None:
        if not isinstance(host, str) or not host:
            raise InvalidServerError(_('bad host: {}').format(host))
        if not isinstance(port, int) or not 0 < port < 65536:
            raise InvalidServerError(_('bad port: {}').format(port))
        if not isinstance(transport, TransportKind):
            raise InvalidServerError(_('unknown protocol: {}').format(transport))
        # API attributes
        self.host = host
        self.port = port
        self.transport = transport
        self.certificate = certificate
        self.fingerprint = normalize_fingerprint(fingerprint) if fingerprint else None
        self.state = ServerState()

    def key(self) -> Tuple[str, int, TransportKind]:
        return self.host, self.port, self.transport

    @classmethod
    def from_string(cls, text: str, certificate: Optional[str]=None) -> "Server":
        '''Parse the Electrum server string form "host:port:s" or "host:port:t".'''
        parts = text.rsplit(':', 2)
        if len(parts) != 3:
            raise InvalidServerError(_('bad server string: {}').format(text))
        host, port_text, protocol = parts
        port = -1
        with suppress(ValueError):
            port = int(port_text)
        try:
            transport = TransportKind(protocol)
        except ValueError:
            raise InvalidServerError(_('unknown protocol: {}').format(protocol)) from None
        return cls(host, port, transport, certificate=certificate)

    def ssl_context(self, pinned_certificate: Optional[str]=None) -> Optional[ssl.SSLContext]:
        if self.transport is not TransportKind.SSL:
            return None
        pinned_certificate = pinned_certificate or self.certificate
        if pinned_certificate:
            # Electrum servers commonly use self-signed certificates. The pinned certificate is
            # the only trusted one and the host name is not part of the check.
            context = ssl.create_default_context(cadata=pinned_certificate)
            context.check_hostname = False
            return context
        return ssl.create_default_context(cafile=certifi.where())

    def get_logger(self) -> logging.Logger:
        return logs.get_logger(f'[{self.host}:{self.port} {self.protocol_text()}]')

    def protocol_text(self) -> str:
        if self.transport is TransportKind.SSL:
            return 'SSL'
        return 'TCP'

    def to_string(self) -> str:
        return f'{self.host}:{self.port}:{self.transport.value}'

    def to_json(self) -> Tuple[str, int, str, Optional[str], Optional[str]]:
        return (self.host, self.port, self.transport.value, self.certificate, self.fingerprint)

    @classmethod
    def from_json(cls, hpps: Sequence[Any]) -> "Server":
        host, port, protocol, certificate, fingerprint = hpps
        return cls(host, port, TransportKind(protocol), certificate, fingerprint)

    def __repr__(self) -> str:
        return f'Server("{self.host}", {self.port}, "{self.transport.value}")'

    def __str__(self) -> str:
        return self.to_string()


class ServerPool:
    '''The ordered set of servers for one coin.

    The order is the configuration order, and is what the failover controller walks through when
    it needs a new server. This makes failover reproducible.
    '''

    def __init__(self, servers: Sequence[Server], clock=time.time) -> None:
        unique: Dict[Tuple[str, int, TransportKind], Server] = {}
        for server in servers:
            unique.setdefault(server.key(), server)
        if not unique:
            raise ConfigError(_("No servers are configured"))
        self._servers: List[Server] = list(unique.values())
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._servers)

    def __iter__(self):
        return iter(self.list_servers())

    def list_servers(self) -> List[Server]:
        with self._lock:
            if not self._servers:
                raise ConfigError(_("No servers are configured"))
            return list(self._servers)

    def index_of(self, server: Server) -> int:
        return self._servers.index(server)

    def available_servers(self, now: Optional[float]=None) -> List[Server]:
        '''The servers that are neither banned nor waiting out a retry delay, in pool order.'''
        if now is None:
            now = self._clock()
        return [ server for server in self.list_servers() if server.state.can_retry(now) ]

    def mark_healthy(self, server: Server, now: Optional[float]=None) -> None:
        with self._lock:
            server.state.record_success(self._clock() if now is None else now)

    def mark_unreachable(self, server: Server, now: Optional[float]=None) -> None:
        with self._lock:
            server.state.record_failure(self._clock() if now is None else now)
        logger.debug("%s unreachable, retry in %.0f seconds", server, server.state.retry_delay)

    def mark_banned(self, server: Server, now: Optional[float]=None) -> None:
        with self._lock:
            server.state.record_blacklisted(self._clock() if now is None else now)
        logger.error("%s banned", server)

    @classmethod
    def from_config(cls, config: "SimpleConfig", coin: "CoinType") -> "ServerPool":
        '''Servers come from the user config if any are stored for the coin, otherwise the coin's
        default servers are used. SSL servers are preferred over TCP for the defaults.'''
        servers: List[Server] = []
        entries = config.get(f'servers_{coin.CODE}')
        if entries:
            for entry in entries:
                if isinstance(entry, str):
                    servers.append(Server.from_string(entry))
                else:
                    servers.append(Server.from_json(entry))
            logger.info("read %d servers for %s from config file", len(servers), coin.CODE)
        else:
            for host, data in coin.DEFAULT_SERVERS.items():
                for protocol in 'st':
                    if protocol in data:
                        servers.append(Server(host, int(data[protocol]),
                            TransportKind(protocol)))
                        break
        return cls(servers)

    def save_to_config(self, config: "SimpleConfig", coin: "CoinType") -> None:
        config.set_key(f'servers_{coin.CODE}',
            [ server.to_json() for server in self.list_servers() ], True)
