from enum import Enum, IntEnum
from typing import Tuple


DerivationPath = Tuple[int, ...]


class ServerHealth(IntEnum):
    UNKNOWN = 0
    HEALTHY = 1
    UNREACHABLE = 2
    BANNED = 3


class TransportKind(Enum):
    # The values are the single character protocol codes used in Electrum server strings.
    TCP = "t"
    SSL = "s"


class AccountSyncState(Enum):
    UNINITIALIZED = "uninitialized"
    SYNCING = "syncing"
    READY = "ready"
    FATAL_ERROR = "fatal-error"


class SigningConfigurationKind(IntEnum):
    ADDRESS = 1
    SINGLE_KEY = 2
    MULTISIG = 3


class ScriptType(IntEnum):
    # These names are used as text identifiers in REST results. Consider that if you plan on
    # renaming them.
    NONE = 0
    P2PKH = 2
    MULTISIG_P2SH = 4


class NetworkEventNames(Enum):
    SERVER_SWITCHED = "server_switched"
    NEW_TIP = "new_tip"
    ACCOUNT_SYNCED = "account_synced"
    ACCOUNT_FATAL_ERROR = "account_fatal_error"


RECEIVING_SUBPATH: DerivationPath = (0,)
CHANGE_SUBPATH: DerivationPath = (1,)

# How far above the last used key to look for more key usage, per derivation subpath.
DEFAULT_GAP_LIMITS = {
    RECEIVING_SUBPATH: 20,
    CHANGE_SUBPATH: 6,
}

HEADER_SIZE = 80
HEADERS_CHUNK_SIZE = 2016
# How many headers below the tip a competing chain may fork before we refuse it.
DEFAULT_MAX_REORG_DEPTH = 100

DEFAULT_REQUEST_TIMEOUT = 30.0
# How many request timeouts against one server before the failover gives up on it.
DEFAULT_TIMEOUT_THRESHOLD = 2
# How many exhausted failover rounds an account sync tolerates before a fatal error.
DEFAULT_SYNC_RETRY_BUDGET = 3

RETRY_DELAY_INITIAL = 1.0
RETRY_DELAY_MAXIMUM = 60.0
ONE_HOUR = 3600
ONE_DAY = 24 * 3600
BAN_PERIOD = ONE_DAY

# The price history must have a data point at least this recent for charts to be complete.
CHART_STALE_PRICE_SECONDS = 2 * ONE_HOUR
CHART_HOURLY_DAYS = 7

MAX_PENDING_REQUESTS = 200
