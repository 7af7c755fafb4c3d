import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from apptrace_shim.instrumentation.common.constants import (
    ENABLED_ENV_NAME,
    NEST_TRANSACTIONS_ENV_NAME,
    RECORD_SQL_ENV_NAME,
    MAX_SEGMENTS_ENV_NAME,
    MAX_DIAGNOSTICS_ENV_NAME,
    LOG_LEVEL_ENV_NAME,
    RECORD_SQL_OBFUSCATED,
    RECORD_SQL_MODES,
)

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(frozen=True)
class ShimConfig:
    enabled: bool = True
    nest_transactions: bool = True
    record_sql: str = RECORD_SQL_OBFUSCATED
    max_segments: int = 900
    max_diagnostics: int = 100
    log_level: Optional[str] = None


def _read_bool(env_name: str, default: bool) -> bool:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Ignoring invalid boolean %s=%s, using %s", env_name, raw, default)
    return default


def _read_int(env_name: str, default: int) -> int:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = int(raw)
        if value < 0:
            raise ValueError(raw)
        return value
    except ValueError:
        logger.warning("Ignoring invalid integer %s=%s, using %s", env_name, raw, default)
        return default


def _read_record_sql(default: str) -> str:
    raw = os.environ.get(RECORD_SQL_ENV_NAME)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value not in RECORD_SQL_MODES:
        logger.warning("Ignoring invalid %s=%s, using %s", RECORD_SQL_ENV_NAME, raw, default)
        return default
    return value


def load_config(**overrides) -> ShimConfig:
    """
    Build the shim configuration from the ``APPTRACE_SHIM_*`` environment variables.

    Keyword arguments override both the environment and the defaults. Unknown keys are
    ignored with a warning.
    """
    defaults = ShimConfig()
    config = ShimConfig(
        enabled=_read_bool(ENABLED_ENV_NAME, defaults.enabled),
        nest_transactions=_read_bool(NEST_TRANSACTIONS_ENV_NAME, defaults.nest_transactions),
        record_sql=_read_record_sql(defaults.record_sql),
        max_segments=_read_int(MAX_SEGMENTS_ENV_NAME, defaults.max_segments),
        max_diagnostics=_read_int(MAX_DIAGNOSTICS_ENV_NAME, defaults.max_diagnostics),
        log_level=os.environ.get(LOG_LEVEL_ENV_NAME, defaults.log_level),
    )
    known = {field.name for field in fields(ShimConfig)}
    valid_overrides = {}
    for key, value in overrides.items():
        if key in known:
            valid_overrides[key] = value
        else:
            logger.warning("Ignoring unknown config option %s", key)
    return replace(config, **valid_overrides)
