"""
config.py - 环境变量配置

必填：API_HOST / NODE_ID / NODE_KEY
其余均有默认值；SS_* 为本地传输参数，覆盖到 NodeConfig.transport。
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from errors import ConfigError
from models import Mode, TransportOptions

_TRUE = ('1', 'true', 'yes', 'on')
_FALSE = ('0', 'false', 'no', 'off', '')


def _get(env: Mapping[str, str], name: str, default: str = '') -> str:
    return env.get(name, default).strip()


def _int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = _get(env, name).lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _choice(env: Mapping[str, str], name: str, parse: Callable, default):
    raw = _get(env, name)
    if not raw:
        return default
    try:
        return parse(raw.lower())
    except ValueError:
        raise ConfigError(f"invalid {name}: {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    api_host: str
    node_id: int
    node_key: str
    api_timeout: float = 5.0
    sync_interval: Optional[int] = None
    report_interval: Optional[int] = None
    final_report_timeout: float = 5.0
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    retry_max_backoff: float = 30.0
    status_host: str = '127.0.0.1'
    status_port: int = 0
    spool_path: str = ''
    engine: str = 'simulate'
    log_level: str = 'INFO'
    transport: TransportOptions = field(default_factory=TransportOptions)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if env is None else env

        api_host = _get(env, 'API_HOST')
        if not api_host.startswith(('http://', 'https://')):
            raise ConfigError(f"API_HOST must be an http(s) URL, got {api_host!r}")
        node_id = _int(env, 'NODE_ID', None)
        if node_id is None or node_id <= 0:
            raise ConfigError("NODE_ID must be a positive integer")
        node_key = _get(env, 'NODE_KEY')
        if not node_key:
            raise ConfigError("NODE_KEY is required")

        settings = cls(
            api_host=api_host,
            node_id=node_id,
            node_key=node_key,
            api_timeout=_float(env, 'API_TIMEOUT', 5.0),
            sync_interval=_int(env, 'SYNC_INTERVAL', None),
            report_interval=_int(env, 'REPORT_INTERVAL', None),
            final_report_timeout=_float(env, 'FINAL_REPORT_TIMEOUT', 5.0),
            retry_attempts=_int(env, 'RETRY_ATTEMPTS', 3),
            retry_backoff=_float(env, 'RETRY_BACKOFF', 1.0),
            retry_max_backoff=_float(env, 'RETRY_MAX_BACKOFF', 30.0),
            status_host=_get(env, 'STATUS_HOST', '127.0.0.1') or '127.0.0.1',
            status_port=_int(env, 'STATUS_PORT', 0),
            spool_path=_get(env, 'SPOOL_PATH'),
            engine=_get(env, 'ENGINE', 'simulate') or 'simulate',
            log_level=(_get(env, 'LOG_LEVEL', 'INFO') or 'INFO').upper(),
            transport=transport_from_env(env),
        )
        for name in ('sync_interval', 'report_interval'):
            value = getattr(settings, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name.upper()} must be positive")
        if settings.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"invalid LOG_LEVEL: {settings.log_level!r}")
        if settings.retry_attempts < 1:
            raise ConfigError("RETRY_ATTEMPTS must be >= 1")
        return settings


def transport_from_env(env: Mapping[str, str]) -> TransportOptions:
    return TransportOptions(
        mode=_choice(env, 'SS_MODE', Mode, Mode.TCP_AND_UDP),
        timeout=_int(env, 'SS_TIMEOUT', 300),
        udp_timeout=_int(env, 'SS_UDP_TIMEOUT', 300),
        no_delay=_bool(env, 'SS_NO_DELAY'),
        fast_open=_bool(env, 'SS_FAST_OPEN'),
        keep_alive=_int(env, 'SS_KEEP_ALIVE', None),
        mptcp=_bool(env, 'SS_MPTCP'),
        dns=_get(env, 'SS_DNS') or None,
        ipv6_first=_bool(env, 'SS_IPV6_FIRST'),
        udp_max_associations=_int(env, 'SS_UDP_MAX_ASSOCIATIONS', None),
        udp_mtu=_int(env, 'SS_UDP_MTU', 1500),
        timestamp_limit=_int(env, 'SS_TIMESTAMP_LIMIT', 30),
        comply_with_incoming=_bool(env, 'SS_COMPLY_WITH_INCOMING'),
        relay=_get(env, 'SS_RELAY') or None,
    )
