"""
engine.py - 代理引擎适配层

控制器只通过下面这组能力驱动引擎：
  start(config, users) -> EngineHandle
  stop(handle)
  add_user(handle, user_id, key)
  remove_user(handle, user_id)
  on_traffic(callback)     引擎在自己的线程里调用 callback(TrafficDelta)

真实引擎由 ENGINE="package.module:ClassName" 指定；
内置的 SimulatedEngine 只维护内存注册表，可选地为已注册用户生成演示流量。
"""

import importlib
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional

from errors import ConfigError, EngineError
from keys import encode_key
from models import NodeConfig, TrafficDelta, UserRecord

logger = logging.getLogger('nodesync.engine')

TrafficCallback = Callable[[TrafficDelta], None]


class EngineHandle:
    """一次 start() 的运行实例；配置变更重启后旧 handle 失效"""

    def __init__(self, config: NodeConfig):
        self.config = config
        self.started_at = time.time()
        self.running = True

    def __repr__(self) -> str:
        return f"EngineHandle(port={self.config.listen_port}, running={self.running})"


class ProxyEngine(ABC):

    def __init__(self):
        self._callbacks: List[TrafficCallback] = []

    def on_traffic(self, callback: TrafficCallback):
        self._callbacks.append(callback)

    def emit(self, delta: TrafficDelta):
        for callback in self._callbacks:
            callback(delta)

    @abstractmethod
    def start(self, config: NodeConfig, users: Iterable[UserRecord]) -> EngineHandle:
        ...

    @abstractmethod
    def stop(self, handle: EngineHandle):
        ...

    @abstractmethod
    def add_user(self, handle: EngineHandle, user_id: int, key: bytes):
        ...

    @abstractmethod
    def remove_user(self, handle: EngineHandle, user_id: int):
        ...


class SimulatedEngine(ProxyEngine):
    """无真实引擎时的演示模式：内存注册表 + 随机流量（下行:上行 ≈ 4:1）"""

    def __init__(self, generate_traffic: bool = False, tick: float = 0.05):
        super().__init__()
        self.generate_traffic = generate_traffic
        self.tick = tick
        self._users: Dict[int, bytes] = {}
        self._lock = threading.Lock()
        self._handle: Optional[EngineHandle] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def users(self) -> Dict[int, bytes]:
        with self._lock:
            return dict(self._users)

    def _check(self, handle: EngineHandle):
        if handle is not self._handle or not handle.running:
            raise EngineError(f"stale engine handle: {handle!r}")

    def start(self, config: NodeConfig, users: Iterable[UserRecord]) -> EngineHandle:
        if self._handle is not None and self._handle.running:
            raise EngineError("engine already running")
        handle = EngineHandle(config)
        with self._lock:
            self._users = {u.user_id: u.derived_key for u in users}
        self._handle = handle
        logger.info(f"Simulated engine listening on port {config.listen_port} "
                    f"({config.cipher.value}, {len(self._users)} users)")

        if self.generate_traffic:
            self._stop.clear()
            self._thread = threading.Thread(target=self._simulate, daemon=True, name='sim-traffic')
            self._thread.start()
        return handle

    def stop(self, handle: EngineHandle):
        self._check(handle)
        handle.running = False
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        logger.info("Simulated engine stopped")

    def add_user(self, handle: EngineHandle, user_id: int, key: bytes):
        self._check(handle)
        if len(key) != handle.config.cipher.key_length:
            raise EngineError(f"user {user_id}: key length {len(key)} does not match cipher")
        with self._lock:
            if user_id in self._users:
                raise EngineError(f"user {user_id} already registered")
            self._users[user_id] = key
        logger.debug(f"Added user {user_id} => {encode_key(key)}")

    def remove_user(self, handle: EngineHandle, user_id: int):
        self._check(handle)
        with self._lock:
            if self._users.pop(user_id, None) is None:
                raise EngineError(f"user {user_id} not registered")
        logger.debug(f"Removed user {user_id}")

    def _simulate(self):
        logger.info("Simulation mode: generating fake traffic (down:up ≈ 4:1)")
        while not self._stop.wait(self.tick):
            with self._lock:
                user_ids = list(self._users)
            if not user_ids:
                continue
            size = random.randint(500, 1460)
            if random.choices(['up', 'down'], weights=[1, 4])[0] == 'up':
                delta = TrafficDelta(random.choice(user_ids), upload_bytes=size)
            else:
                delta = TrafficDelta(random.choice(user_ids), download_bytes=size)
            self.emit(delta)


def load_engine(spec: str) -> ProxyEngine:
    """"simulate" / "simulate-traffic" 或 "module:ClassName"（无参构造）"""
    spec = (spec or 'simulate').strip()
    if spec == 'simulate':
        return SimulatedEngine()
    if spec == 'simulate-traffic':
        return SimulatedEngine(generate_traffic=True)

    module_name, _, class_name = spec.partition(':')
    if not module_name or not class_name:
        raise ConfigError(f"ENGINE must be 'simulate' or 'module:ClassName', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
        engine_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"cannot load engine {spec!r}: {e}") from e
    if not isinstance(engine_cls, type) or not issubclass(engine_cls, ProxyEngine):
        raise ConfigError(f"{spec} is not a ProxyEngine")
    try:
        return engine_cls()
    except TypeError as e:
        # 未实现全部抽象方法
        raise ConfigError(f"cannot construct engine {spec!r}: {e}") from e
