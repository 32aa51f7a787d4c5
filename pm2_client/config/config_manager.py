"""
Configuration Manager module for the PM2 client agent.
"""
import copy
import json
import os
from typing import Any, Optional, Dict, Mapping

from ..utils import get_logger

logger = get_logger(__name__)

DEFAULT_SERVER_URL = "ws://localhost:7000"

DEFAULT_CONFIG: Dict[str, Any] = {
    "server_url": None,
    "agent": {
        "self_id": None,
        "publish_interval_sec": 1.0,
    },
    "websocket": {
        "reconnect_delay_sec": 5.0,
    },
    "action_queue": {
        "max_size": 10,
        "delay_sec": 0.5,
    },
    "pm2": {
        "binary": "pm2",
        "command_timeout_sec": 30,
    },
    "telemetry": {
        "ipinfo_url": "https://ipinfo.io/json",
        "ipinfo_timeout_sec": 5,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

# Environment variable -> dot-separated config key.
# `pm_id` is injected by PM2 into every process it manages.
ENV_OVERRIDES: Dict[str, str] = {
    "PM2_CLIENT_SERVER_URL": "server_url",
    "PM2_CLIENT_PM2_BIN": "pm2.binary",
    "PM2_CLIENT_LOG_LEVEL": "logging.level",
    "pm_id": "agent.self_id",
}

# When installed as a PM2 module, `pm2 set pm2-client:<key> <value>` settings
# reach the process as a JSON object in the environment variable named after
# the module.
PM2_MODULE_NAME = "pm2-client"
MODULE_CONF_KEYS: Dict[str, str] = {
    "serverURL": "server_url",
}


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """
    Loads agent configuration from built-in defaults, an optional JSON file,
    the PM2 module configuration, environment variables and explicit
    overrides, in that order of precedence (later wins).
    """

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Mapping[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        """
        Initializes the ConfigManager.

        :param config_path: Path to a JSON configuration file, or None
        :type config_path: Optional[str]
        :param overrides: Dot-separated keys to force (e.g. from the command line)
        :type overrides: Optional[Mapping[str, Any]]
        :param environ: Environment mapping, defaults to ``os.environ``
        :type environ: Optional[Mapping[str, str]]
        :raises: FileNotFoundError if config_path is given but does not exist
        :raises: ValueError if the configuration file is not a JSON object
        """
        self._config_path = config_path
        self._config_data: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self._server_url_defaulted = False

        if self._config_path:
            _deep_merge(self._config_data, self._load_file(self._config_path))

        environ = os.environ if environ is None else environ
        self._apply_module_conf(environ)
        self._apply_environment(environ)

        for key_path, value in (overrides or {}).items():
            if value is not None:
                self.set(key_path, value)

        self._validate_config()

    def _load_file(self, path: str) -> Dict[str, Any]:
        """
        Loads the configuration data from the JSON file.

        :raises: FileNotFoundError if the file doesn't exist
        :raises: ValueError if there are JSON parsing errors
        """
        if not os.path.exists(path):
            logger.critical(f"Configuration file not found: {path}")
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.critical(f"Error decoding JSON from config file {path}: {e}")
            raise ValueError(f"Invalid JSON in configuration file: {e}") from e
        except OSError as e:
            logger.critical(f"Error reading config file {path}: {e}")
            raise ValueError(f"Could not read configuration file: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Configuration file content is not a valid JSON object.")
        logger.info(f"Configuration loaded from: {path}")
        return data

    def _apply_module_conf(self, environ: Mapping[str, str]):
        """
        Applies the PM2 module configuration (``pm2 set pm2-client:serverURL ...``).
        A malformed value is logged and ignored.
        """
        raw = environ.get(PM2_MODULE_NAME)
        if not raw:
            return
        try:
            module_conf = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring PM2 module configuration in ${PM2_MODULE_NAME}: {e}")
            return
        if not isinstance(module_conf, dict):
            logger.warning(f"Ignoring PM2 module configuration in ${PM2_MODULE_NAME}: not a JSON object.")
            return

        for conf_key, key_path in MODULE_CONF_KEYS.items():
            value = module_conf.get(conf_key)
            if value not in (None, ''):
                logger.debug(f"Configuration key '{key_path}' taken from PM2 module setting {conf_key}.")
                self.set(key_path, value)

    def _apply_environment(self, environ: Mapping[str, str]):
        for env_name, key_path in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value not in (None, ''):
                logger.debug(f"Configuration key '{key_path}' taken from environment variable {env_name}.")
                self.set(key_path, value)

    def _validate_config(self):
        """
        Fills in the default controller URL and checks numeric settings.

        :raises: ValueError if a setting has an unusable value
        """
        server_url = self.get('server_url')
        if not server_url:
            logger.warning(f"Master server URL not configured. Set the master server using "
                           f"`pm2 set {PM2_MODULE_NAME}:serverURL \"ws://master.example.com:3000\"`, "
                           f"PM2_CLIENT_SERVER_URL or the config file.")
            logger.warning(f"Defaulting to {DEFAULT_SERVER_URL}")
            self.set('server_url', DEFAULT_SERVER_URL)
            self._server_url_defaulted = True
        elif not isinstance(server_url, str):
            raise ValueError("Invalid 'server_url' configuration: Must be a non-empty string.")

        for key_path in ('agent.publish_interval_sec', 'websocket.reconnect_delay_sec',
                         'action_queue.delay_sec', 'pm2.command_timeout_sec',
                         'telemetry.ipinfo_timeout_sec'):
            value = self.get(key_path)
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid '{key_path}' configuration: {value!r} is not a number.")
            if number < 0:
                raise ValueError(f"Invalid '{key_path}' configuration: must not be negative.")
            self.set(key_path, number)

        max_size = self.get('action_queue.max_size')
        if not isinstance(max_size, int) or isinstance(max_size, bool) or max_size <= 0:
            raise ValueError("Invalid 'action_queue.max_size' configuration: Must be a positive integer.")

        logger.debug("Basic configuration validation passed.")

    @property
    def server_url_defaulted(self) -> bool:
        """True when no controller URL was configured and the default is used."""
        return self._server_url_defaulted

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Retrieves a configuration value using a dot-separated key path.

        :param key_path: The dot-separated path to the configuration key
        :type key_path: str
        :param default: The default value to return if the key is not found or is None
        :type default: Any
        :return: The configuration value or the default value
        :rtype: Any
        """
        value: Any = self._config_data
        for key in key_path.split('.'):
            if not isinstance(value, dict) or key not in value:
                logger.debug(f"Configuration key not found: '{key_path}'. Returning default: {default}")
                return default
            value = value[key]
        return default if value is None else value

    def set(self, key_path: str, value: Any):
        """
        Sets a configuration value using a dot-separated key path, creating
        intermediate sections as needed.
        """
        keys = key_path.split('.')
        section = self._config_data
        for key in keys[:-1]:
            if not isinstance(section.get(key), dict):
                section[key] = {}
            section = section[key]
        section[keys[-1]] = value

    @property
    def all_config(self) -> Dict[str, Any]:
        """
        Returns a copy of the entire configuration dictionary.

        :return: Copy of configuration dictionary
        :rtype: Dict[str, Any]
        """
        return copy.deepcopy(self._config_data)
