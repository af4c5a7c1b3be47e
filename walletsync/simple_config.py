from __future__ import annotations
from copy import deepcopy
import json
import os
import stat
import threading
from typing import Any, Callable, cast, Type, TypeVar

from .constants import (CHANGE_SUBPATH, DEFAULT_GAP_LIMITS, DEFAULT_MAX_REORG_DEPTH,
    DEFAULT_REQUEST_TIMEOUT, DEFAULT_SYNC_RETRY_BUDGET, DEFAULT_TIMEOUT_THRESHOLD,
    DerivationPath, RECEIVING_SUBPATH)
from .logs import logs
from .util import make_dir


logger = logs.get_logger("config")


FINAL_CONFIG_VERSION = 1
CONFIG_FILE_NAME = "config"

# Each of these flags selects a network subdirectory below the data directory.
NETWORK_DIRECTORY_FLAGS = ('testnet', 'regtest')

T = TypeVar('T')


def default_user_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".walletsync")


class SimpleConfig:
    """
    Settings for a walletsync process, layered from two sources.

    Options passed in by the embedding application (usually parsed from the command line) take
    precedence and are fixed for the life of the process. Everything else comes from the JSON
    `config` file in the data directory, which `set_key` edits and persists.
    """

    def __init__(self, options: dict[str, Any]|None=None,
            read_user_config_function: Callable[[str], dict[str, Any]]|None=None,
            read_user_dir_function: Callable[[], str]|None=None) -> None:
        # Guards both layers.
        self.lock = threading.RLock()
        self.user_dir = read_user_dir_function or default_user_dir

        fixed = deepcopy(options) if options else {}
        # The file format version always belongs to the file.
        fixed.pop('config_version', None)
        self.cmdline_options: dict[str, Any] = fixed

        # `walletsync_path` consults `get`, which needs an empty file layer to fall through to.
        self.user_config: dict[str, Any] = {}
        self.path = self.walletsync_path()
        loader = read_user_config_function or read_user_config
        self.user_config = loader(self.path) or { 'config_version': FINAL_CONFIG_VERSION }

    def walletsync_path(self) -> str:
        base = cast(str|None, self.get('walletsync_path')) or self.user_dir()
        make_dir(base)
        path = base
        for flag in NETWORK_DIRECTORY_FLAGS:
            if self.get(flag):
                path = os.path.join(path, flag)
                make_dir(path)
        path = os.path.abspath(path)
        logger.debug("data directory '%s'", path)
        return path

    def file_path(self, file_name: str) -> str|None:
        return os.path.join(self.path, file_name) if self.path else None

    def is_modifiable(self, key: str) -> bool:
        return key not in self.cmdline_options

    def set_key(self, key: str, value: Any, save: bool=True) -> None:
        """Store `value` in the config file layer, or remove the key when it is None."""
        if not self.is_modifiable(key):
            logger.warning("ignoring change to '%s', it was fixed at startup", key)
            return
        with self.lock:
            if value is None:
                self.user_config.pop(key, None)
            else:
                self.user_config[key] = value
            if save:
                self.save_user_config()

    def _lookup(self, key: str, default: Any) -> Any:
        with self.lock:
            value = self.cmdline_options.get(key)
            return self.user_config.get(key, default) if value is None else value

    def get(self, key: str, default: Any=None) -> Any|None:
        return self._lookup(key, default)

    def get_explicit_type(self, return_type: Type[T], key: str, default: T) -> T:
        value = self._lookup(key, default)
        # JSON has no separate float type for whole numbers.
        if return_type is float and isinstance(value, int):
            value = float(value)
        assert isinstance(value, return_type), f"config key {key} is not {return_type.__name__}"
        return cast(T, value)

    def save_user_config(self) -> None:
        config_path = self.file_path(CONFIG_FILE_NAME)
        if config_path is None:
            return
        with self.lock:
            text = json.dumps(self.user_config, indent=4, sort_keys=True)
        with open(config_path, "w", encoding='utf-8') as f:
            f.write(text)
        os.chmod(config_path, stat.S_IREAD | stat.S_IWRITE)

    #
    # Synchronization settings.
    #

    def get_gap_limits(self) -> dict[DerivationPath, int]:
        return {
            RECEIVING_SUBPATH: self.get_explicit_type(int, 'gap_limit_receive',
                DEFAULT_GAP_LIMITS[RECEIVING_SUBPATH]),
            CHANGE_SUBPATH: self.get_explicit_type(int, 'gap_limit_change',
                DEFAULT_GAP_LIMITS[CHANGE_SUBPATH]),
        }

    def get_request_timeout(self) -> float:
        return self.get_explicit_type(float, 'request_timeout', DEFAULT_REQUEST_TIMEOUT)

    def get_timeout_threshold(self) -> int:
        return self.get_explicit_type(int, 'timeout_threshold', DEFAULT_TIMEOUT_THRESHOLD)

    def get_max_reorg_depth(self) -> int:
        return self.get_explicit_type(int, 'max_reorg_depth', DEFAULT_MAX_REORG_DEPTH)

    def get_sync_retry_budget(self) -> int:
        return self.get_explicit_type(int, 'sync_retry_budget', DEFAULT_SYNC_RETRY_BUDGET)

    def get_main_fiat(self) -> str:
        return self.get_explicit_type(str, 'main_fiat', 'USD')

    def electrumx_message_size_limit(self) -> int:
        # In megabytes.
        return self.get_explicit_type(int, 'electrumx_message_size_limit', 32)


def read_user_config(path: str) -> dict[str, Any]:
    """Load the settings file in `path`.

    A missing, unreadable or non-object file yields an empty dictionary."""
    if not path:
        return {}
    config_path = os.path.join(path, CONFIG_FILE_NAME)
    if not os.path.isfile(config_path):
        return {}
    try:
        with open(config_path, "r", encoding='utf-8') as f:
            settings = json.load(f)
    except (OSError, ValueError):
        logger.exception("unable to load settings from %s", config_path)
        return {}
    return settings if isinstance(settings, dict) else {}
