"""
models.py - 数据模型

NodeConfig     面板下发的节点配置 + 本地传输参数覆盖；变更需要重启引擎
UserRecord     单个用户（user_id / secret / 派生密钥）
TrafficDelta   引擎回调产生的一次流量增量
TrafficSnapshot drain() 得到的待上报快照，按 user_id 排序
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional

from errors import ConfigError

# u64 上限，超出即视为非法增量
MAX_COUNTER = (1 << 64) - 1


class Cipher(str, Enum):
    AES_128_GCM = '2022-blake3-aes-128-gcm'
    AES_256_GCM = '2022-blake3-aes-256-gcm'
    CHACHA20_POLY1305 = '2022-blake3-chacha20-poly1305'
    CHACHA8_POLY1305 = '2022-blake3-chacha8-poly1305'

    @property
    def key_length(self) -> int:
        return 16 if self is Cipher.AES_128_GCM else 32

    @classmethod
    def parse(cls, name: Optional[str]) -> 'Cipher':
        if not name:
            raise ConfigError("Cipher not specified in server config")
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise ConfigError(f"Invalid cipher: {name}") from None


class Mode(str, Enum):
    TCP_ONLY = 'tcp_only'
    UDP_ONLY = 'udp_only'
    TCP_AND_UDP = 'tcp_and_udp'

    @property
    def tcp(self) -> bool:
        return self is not Mode.UDP_ONLY

    @property
    def udp(self) -> bool:
        return self is not Mode.TCP_ONLY


@dataclass(frozen=True)
class TransportOptions:
    """本地传输参数（面板不下发，由环境变量覆盖）"""
    mode: Mode = Mode.TCP_AND_UDP
    timeout: int = 300
    udp_timeout: int = 300
    no_delay: bool = False
    fast_open: bool = False
    keep_alive: Optional[int] = None
    mptcp: bool = False
    dns: Optional[str] = None
    ipv6_first: bool = False
    udp_max_associations: Optional[int] = None
    udp_mtu: int = 1500
    timestamp_limit: int = 30
    comply_with_incoming: bool = False
    relay: Optional[str] = None


@dataclass(frozen=True)
class NodeConfig:
    listen_port: int
    cipher: Cipher
    server_key: str
    pull_interval: Optional[int] = None
    push_interval: Optional[int] = None
    transport: TransportOptions = field(default_factory=TransportOptions)

    @classmethod
    def from_panel(cls, data: Dict, transport: Optional[TransportOptions] = None) -> 'NodeConfig':
        """
        解析 UniProxy/config 响应：
          {"server_port": 443, "cipher": "...", "server_key": "...",
           "base_config": {"push_interval": 60, "pull_interval": 60}}
        """
        if not isinstance(data, dict):
            raise ConfigError("node config must be a JSON object")
        try:
            port = int(data.get('server_port') or 0)
        except (TypeError, ValueError):
            raise ConfigError(f"invalid server_port: {data.get('server_port')!r}") from None
        if port <= 0 or port > 65535:
            raise ConfigError("server port must > 0")

        cipher = Cipher.parse(data.get('cipher'))
        server_key = data.get('server_key')
        if not server_key:
            raise ConfigError("Server key not specified in config")

        base = data.get('base_config') or {}
        return cls(
            listen_port=port,
            cipher=cipher,
            server_key=str(server_key),
            pull_interval=_positive_or_none(base.get('pull_interval')),
            push_interval=_positive_or_none(base.get('push_interval')),
            transport=transport or TransportOptions(),
        )

    def requires_restart(self, other: 'NodeConfig') -> bool:
        """端口 / 加密方式 / 服务端密钥 / 传输参数变化都必须重启引擎；轮询间隔变化不需要"""
        return (self.listen_port, self.cipher, self.server_key, self.transport) != \
               (other.listen_port, other.cipher, other.server_key, other.transport)

    def summary(self) -> Dict:
        return {
            'listen_port': self.listen_port,
            'cipher': self.cipher.value,
            'tcp': self.transport.mode.tcp,
            'udp': self.transport.mode.udp,
            'pull_interval': self.pull_interval,
            'push_interval': self.push_interval,
        }


def _positive_or_none(value) -> Optional[int]:
    try:
        value = int(value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    secret: str
    derived_key: bytes = b''

    def with_key(self, key: bytes) -> 'UserRecord':
        return replace(self, derived_key=key)

    def __repr__(self) -> str:
        # 不在日志中暴露 secret / key
        return f"UserRecord(user_id={self.user_id}, keyed={bool(self.derived_key)})"


@dataclass(frozen=True)
class TrafficDelta:
    user_id: int
    upload_bytes: int = 0
    download_bytes: int = 0

    def __post_init__(self):
        for name in ('upload_bytes', 'download_bytes'):
            value = getattr(self, name)
            if value < 0 or value > MAX_COUNTER:
                raise ValueError(f"{name} out of u64 range: {value}")


@dataclass(frozen=True)
class TrafficEntry:
    user_id: int
    upload_bytes: int
    download_bytes: int

    @property
    def total(self) -> int:
        return self.upload_bytes + self.download_bytes


class TrafficSnapshot:
    """drain() 的结果：自上次成功上报以来的流量，按 user_id 升序"""

    def __init__(self, entries: Iterable[TrafficEntry] = ()):
        self._entries: List[TrafficEntry] = sorted(
            (e for e in entries if e.upload_bytes or e.download_bytes),
            key=lambda e: e.user_id,
        )

    @classmethod
    def from_counters(cls, counters: Dict[int, List[int]]) -> 'TrafficSnapshot':
        return cls(TrafficEntry(uid, up, down) for uid, (up, down) in counters.items())

    def __iter__(self) -> Iterator[TrafficEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, TrafficSnapshot):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"TrafficSnapshot(users={len(self)}, up={self.upload_bytes}, down={self.download_bytes})"

    def get(self, user_id: int) -> Optional[TrafficEntry]:
        for entry in self._entries:
            if entry.user_id == user_id:
                return entry
        return None

    @property
    def upload_bytes(self) -> int:
        return sum(e.upload_bytes for e in self._entries)

    @property
    def download_bytes(self) -> int:
        return sum(e.download_bytes for e in self._entries)

    def to_payload(self) -> Dict[str, List[int]]:
        """UniProxy/push 请求体：{"<user_id>": [upload, download]}"""
        return {str(e.user_id): [e.upload_bytes, e.download_bytes] for e in self._entries}
