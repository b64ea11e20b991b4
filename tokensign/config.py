import enum
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple, Union

import yaml

from .config_utils import (
    ConfigurableMixin,
    ConfigurationError,
    check_config_keys,
)
from .pdf_utils.misc import get_and_apply
from .sign.pdf_signer import SigningSettings
from .sign.timestamps import (
    DEFAULT_TSA_URLS,
    FallbackTimeStamper,
    default_timestamper,
)

__all__ = [
    'StdLogOutput', 'LogConfig', 'TSAConfig', 'CLIConfig',
    'PersistedSettings', 'SettingsStore', 'parse_logging_config',
    'parse_cli_config', 'DEFAULT_SETTINGS_FILE',
]

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = os.path.join('~', '.config', 'tokensign',
                                     'settings.yml')
DEFAULT_ROOT_LOGGER_LEVEL = logging.INFO


class StdLogOutput(enum.Enum):
    STDERR = enum.auto()
    STDOUT = enum.auto()


@dataclass(frozen=True)
class LogConfig:
    level: Union[int, str]
    """
    Logging level, should be one of the levels defined in the logging module.
    """

    output: Union[StdLogOutput, str]
    """
    Name of the output file, or a standard one.
    """

    @staticmethod
    def parse_output_spec(spec) -> Union[StdLogOutput, str]:
        if not isinstance(spec, str):
            raise ConfigurationError(
                "Log output must be specified as a string."
            )
        spec_l = spec.lower()
        if spec_l == 'stderr':
            return StdLogOutput.STDERR
        elif spec_l == 'stdout':
            return StdLogOutput.STDOUT
        else:
            return spec


def _retrieve_log_level(settings_dict, key, default=None) -> Union[int, str]:
    try:
        level_spec = settings_dict[key]
    except KeyError:
        if default is not None:
            return default
        raise ConfigurationError(
            f"Logging config for '{key}' does not define a log level."
        )
    if not isinstance(level_spec, (int, str)):
        raise ConfigurationError(
            f"Log levels must be int or str, not {type(level_spec)}"
        )
    return level_spec


def parse_logging_config(log_config_spec) -> Dict[Optional[str], LogConfig]:
    if not isinstance(log_config_spec, dict):
        raise ConfigurationError('logging config should be a dictionary')

    root_logger_level = _retrieve_log_level(
        log_config_spec, 'root-level', default=DEFAULT_ROOT_LOGGER_LEVEL
    )

    root_logger_output = get_and_apply(
        log_config_spec, 'root-output', LogConfig.parse_output_spec,
        default=StdLogOutput.STDERR
    )

    log_config = {None: LogConfig(root_logger_level, root_logger_output)}

    logging_by_module = log_config_spec.get('by-module', {})
    if not isinstance(logging_by_module, dict):
        raise ConfigurationError('logging.by-module should be a dict')

    for module, module_logging_settings in logging_by_module.items():
        if not isinstance(module, str):
            raise ConfigurationError(
                "Keys in logging.by-module should be strings"
            )
        level_spec = _retrieve_log_level(module_logging_settings, 'level')
        output_spec = get_and_apply(
            module_logging_settings, 'output', LogConfig.parse_output_spec,
            default=StdLogOutput.STDERR
        )
        log_config[module] = LogConfig(level=level_spec, output=output_spec)

    return log_config


@dataclass(frozen=True)
class TSAConfig(ConfigurableMixin):
    """
    Timestamping settings.
    """

    endpoints: Tuple[str, ...] = DEFAULT_TSA_URLS
    """TSA URLs, in the order in which they are tried."""

    timeout: int = 30
    """Per-request timeout in seconds."""

    require_timestamp: bool = False
    """
    Fail signing operations when no timestamp can be obtained, instead of
    producing a signature without one.
    """

    allow_insecure: bool = False
    """Allow TSA endpoints over plain HTTP."""

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        endpoints = config_dict.get('endpoints')
        if endpoints is not None:
            if isinstance(endpoints, str):
                endpoints = (endpoints,)
            if not isinstance(endpoints, (list, tuple)) or \
                    not all(isinstance(url, str) for url in endpoints):
                raise ConfigurationError(
                    "'endpoints' must be a list of URLs."
                )
            config_dict['endpoints'] = tuple(endpoints)
        timeout = config_dict.get('timeout')
        if timeout is not None and \
                (not isinstance(timeout, int) or timeout <= 0):
            raise ConfigurationError("'timeout' must be a positive integer.")

    def as_timestamper(self) -> FallbackTimeStamper:
        return default_timestamper(
            self.endpoints, timeout=self.timeout,
            allow_insecure=self.allow_insecure
        )


@dataclass
class CLIConfig:
    tsa: TSAConfig = field(default_factory=TSAConfig)
    signing: SigningSettings = field(default_factory=SigningSettings)
    settings_file: str = DEFAULT_SETTINGS_FILE
    log_config: Dict[Optional[str], LogConfig] = field(
        default_factory=lambda: parse_logging_config({})
    )


def process_config_dict(config_dict: dict) -> dict:
    check_config_keys(
        'CLIConfig', ('tsa', 'signing', 'settings-file', 'logging'),
        config_dict
    )
    result = {}
    try:
        result['tsa'] = TSAConfig.from_config(config_dict['tsa'] or {})
    except KeyError:
        pass
    try:
        result['signing'] = SigningSettings.from_config(
            config_dict['signing'] or {}
        )
    except KeyError:
        pass
    settings_file = config_dict.get('settings-file')
    if settings_file is not None:
        if not isinstance(settings_file, str):
            raise ConfigurationError("'settings-file' must be a path.")
        result['settings_file'] = settings_file
    result['log_config'] = parse_logging_config(
        config_dict.get('logging') or {}
    )
    return result


def parse_cli_config(yaml_str) -> CLIConfig:
    try:
        config_dict = yaml.safe_load(yaml_str) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Configuration is not valid YAML: {e}")
    return CLIConfig(**process_config_dict(config_dict))


@dataclass(frozen=True)
class PersistedSettings:
    """
    State remembered between runs. Never holds secrets.
    """

    last_library_path: Optional[str] = None
    last_slot_id: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            'last-library-path': self.last_library_path,
            'last-slot-id': self.last_slot_id,
        }

    @classmethod
    def from_dict(cls, data) -> 'PersistedSettings':
        if not isinstance(data, dict):
            raise ConfigurationError("Settings must be a dictionary.")
        library_path = data.get('last-library-path')
        slot_id = data.get('last-slot-id')
        if library_path is not None and not isinstance(library_path, str):
            raise ConfigurationError("'last-library-path' must be a string.")
        if slot_id is not None and \
                (not isinstance(slot_id, int) or isinstance(slot_id, bool)):
            raise ConfigurationError("'last-slot-id' must be an integer.")
        return cls(last_library_path=library_path, last_slot_id=slot_id)


class SettingsStore:
    """
    Load and save :class:`PersistedSettings` as a YAML file.
    A missing or unreadable file yields the defaults.

    :param path:
        Location of the settings file; ``~`` is expanded.
    """

    def __init__(self, path: str = DEFAULT_SETTINGS_FILE):
        self.path = os.path.expanduser(path)

    def load(self) -> PersistedSettings:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            logger.debug(f"No settings file at {self.path}, using defaults")
            return PersistedSettings()
        except (OSError, yaml.YAMLError) as e:
            logger.warning(
                f"Could not read settings from {self.path}, "
                f"using defaults: {e}"
            )
            return PersistedSettings()
        if data is None:
            return PersistedSettings()
        try:
            return PersistedSettings.from_dict(data)
        except ConfigurationError as e:
            logger.warning(
                f"Ignoring malformed settings in {self.path}: {e}"
            )
            return PersistedSettings()

    def save(self, settings: PersistedSettings):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(settings.as_dict(), f, default_flow_style=False)

    def update(self, **kwargs) -> PersistedSettings:
        """
        Change some of the settings and save the result.
        """
        settings = replace(self.load(), **kwargs)
        self.save(settings)
        return settings
