"""
Configuration and logging bootstrap.

Settings live in an INI file (``conf/offline_tide.conf`` by default, or the
path in ``$OFFLINE_TIDE_CONFIG``) and are read one section at a time.  The
typed ``*Settings`` dataclasses turn those sections into constructor
arguments for the cache, the manifest validator, and the orchestrator.
"""
from __future__ import annotations

import configparser
import logging
import logging.config
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'OFFLINE_TIDE_CONFIG'
_CONF_DIR = (Path(__file__).parent.parent.parent / 'conf').resolve()


class Utils:
    """Helpers for locating and reading the INI configuration."""

    def __init__(self, config_file: str | os.PathLike | None = None):
        self._config_file = config_file

    def get_config_file(self) -> Path:
        """Return the configuration file path (explicit, env var, default)."""
        if self._config_file is not None:
            return Path(self._config_file)
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return Path(env_path)
        return _CONF_DIR / 'offline_tide.conf'

    def read_config_section(
        self,
        section: str,
        logger: logging.Logger | None = None,
    ) -> dict[str, str]:
        """
        Read one section of the configuration file.

        Parameters
        ----------
        section : str
            INI section name.
        logger : logging.Logger, optional
            Logger instance for diagnostic messages.

        Returns
        -------
        dict
            Key/value pairs of the section.  Empty if the file or the
            section does not exist.
        """
        _log = logger or logging.getLogger(__name__)

        config_file = self.get_config_file()
        parser = configparser.ConfigParser()
        if not parser.read(config_file):
            _log.warning('Config file %s not found; using defaults.', config_file)
            return {}
        if not parser.has_section(section):
            _log.debug('Config section [%s] absent in %s.', section, config_file)
            return {}
        return dict(parser.items(section))

    def setup_logger(self, logger: logging.Logger | None = None) -> logging.Logger:
        """Initialise logging from ``conf/logging.conf`` if no logger is given."""
        if logger is not None:
            return logger

        log_config_file = _CONF_DIR / 'logging.conf'
        if log_config_file.is_file():
            logging.config.fileConfig(log_config_file, disable_existing_loggers=False)
        else:
            logging.basicConfig(level=logging.INFO)
        logger = logging.getLogger('root')
        logger.info('Using config %s', self.get_config_file())
        logger.info('Using log config %s', log_config_file)
        return logger


def _get_float(section: dict[str, str], key: str, default: float) -> float:
    value = section.get(key)
    if value is None or value.strip() == '':
        return default
    return float(value)


def _get_int(section: dict[str, str], key: str, default: int) -> int:
    value = section.get(key)
    if value is None or value.strip() == '':
        return default
    return int(value)


@dataclass(frozen=True)
class CacheSettings:
    """Limits and location of the persistent tile cache."""

    db_path: str = ':memory:'
    max_tiles: int = 200
    max_bytes: int = 100 * 1024 * 1024
    max_age_days: float | None = 30.0

    @classmethod
    def from_config(
        cls,
        utils: Utils | None = None,
        logger: logging.Logger | None = None,
    ) -> CacheSettings:
        section = (utils or Utils()).read_config_section('cache', logger)
        max_age = section.get('max_age_days')
        return cls(
            db_path=section.get('db_path', cls.db_path),
            max_tiles=_get_int(section, 'max_tiles', cls.max_tiles),
            max_bytes=_get_int(section, 'max_bytes', cls.max_bytes),
            max_age_days=float(max_age) if max_age else cls.max_age_days,
        )


@dataclass(frozen=True)
class ManifestSettings:
    """Signature policy for tile manifests."""

    environment: str = 'production'
    signing_key_env: str = 'OFFLINE_TIDE_MANIFEST_KEY'

    @property
    def signing_key(self) -> bytes | None:
        value = os.environ.get(self.signing_key_env)
        return value.encode('utf-8') if value else None

    @classmethod
    def from_config(
        cls,
        utils: Utils | None = None,
        logger: logging.Logger | None = None,
    ) -> ManifestSettings:
        section = (utils or Utils()).read_config_section('manifest', logger)
        return cls(
            environment=section.get('environment', cls.environment).strip().lower(),
            signing_key_env=section.get('signing_key_env', cls.signing_key_env),
        )


@dataclass(frozen=True)
class PredictionSettings:
    """Defaults and limits for prediction requests."""

    default_step_minutes: float = 15.0
    max_points: int = 20000
    native_engine: str | None = None

    @classmethod
    def from_config(
        cls,
        utils: Utils | None = None,
        logger: logging.Logger | None = None,
    ) -> PredictionSettings:
        section = (utils or Utils()).read_config_section('prediction', logger)
        return cls(
            default_step_minutes=_get_float(
                section, 'default_step_minutes', cls.default_step_minutes),
            max_points=_get_int(section, 'max_points', cls.max_points),
            native_engine=section.get('native_engine') or None,
        )
