"""
controller.py - 节点同步控制器

状态：starting -> running -> stopping -> stopped（致命错误 -> failed）

  starting  拉取节点配置（Transient 退避重试，Rejected 致命）、拉取用户、派生密钥（secret 非法致命）、启动引擎
  running   两个独立周期线程：
              同步周期  刷新配置（变化则重启引擎）-> 拉取用户 -> diff -> 先删后增
              上报周期  drain -> 上报；任何失败都 restore，字节留到下个周期重报
  stopping  取消定时、等待进行中的周期结束、停止引擎、最后一次尽力上报（失败写入暂存库）

applied（已应用用户集合）只由同步周期修改，且始终等于引擎中实际注册的用户集合。
累加器是唯一被多方并发写入的结构，引擎回调只接触累加器，从不访问面板。
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import reconcile
from errors import ConfigError, EngineError, NotModified, RejectedError, TransientError
from keys import derive_key
from models import NodeConfig, TrafficSnapshot, UserRecord
from traffic import TrafficAccumulator

logger = logging.getLogger('nodesync.controller')

DEFAULT_INTERVAL = 60


class State(str, Enum):
    NEW = 'new'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    FAILED = 'failed'


@dataclass(frozen=True)
class RetryPolicy:
    """单个周期内的重试策略；只重试 TransientError"""
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def delays(self) -> Iterable[float]:
        delay = self.base_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier

    def call(self, fn: Callable, stop: Optional[threading.Event] = None, what: str = 'request'):
        delays = iter(self.delays())
        while True:
            try:
                return fn()
            except TransientError as e:
                delay = next(delays, None)
                if delay is None:
                    raise
                logger.warning(f"{what} failed: {e}; retrying in {delay:.1f}s")
                # 等待期间收到停止信号则放弃重试
                if stop is not None:
                    if stop.wait(delay):
                        raise
                elif delay > 0:
                    time.sleep(delay)


@dataclass
class CycleResult:
    ts: float
    ok: bool
    message: str

    def as_dict(self) -> Dict:
        return {'ts': int(self.ts), 'ok': self.ok, 'message': self.message}


class SyncController:

    def __init__(self, client, engine, accumulator: Optional[TrafficAccumulator] = None,
                 retry: Optional[RetryPolicy] = None,
                 sync_interval: Optional[int] = None,
                 report_interval: Optional[int] = None,
                 final_report_timeout: float = 5.0,
                 spool=None):
        self.client = client
        self.engine = engine
        self.accumulator = accumulator or TrafficAccumulator()
        self.retry = retry or RetryPolicy()
        self.spool = spool
        self.final_report_timeout = final_report_timeout
        self._sync_interval = sync_interval
        self._report_interval = report_interval

        self.state = State.NEW
        self.config: Optional[NodeConfig] = None
        self.applied: Dict[int, UserRecord] = {}
        self.fatal_error: Optional[Exception] = None
        self.last_sync: Optional[CycleResult] = None
        self.last_report: Optional[CycleResult] = None
        self.reported_bytes = 0

        self._handle = None
        self._last_fetched: Optional[List[UserRecord]] = None
        self._callback_registered = False
        self._spool_pending = False
        self._stop = threading.Event()
        self._sync_lock = threading.Lock()
        self._report_lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    # ── 周期间隔：本地配置 > 面板 base_config > 默认 60s ─────────────────────

    @property
    def sync_interval(self) -> int:
        if self._sync_interval:
            return self._sync_interval
        if self.config is not None and self.config.pull_interval:
            return self.config.pull_interval
        return DEFAULT_INTERVAL

    @property
    def report_interval(self) -> int:
        if self._report_interval:
            return self._report_interval
        if self.config is not None and self.config.push_interval:
            return self.config.push_interval
        return DEFAULT_INTERVAL

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self):
        self._stop.set()

    def _fail(self, error: Exception):
        self.fatal_error = error
        self.state = State.FAILED
        logger.critical(f"Fatal: {error}")
        self._stop.set()

    # ── 启动 ──────────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """成功进入 running 返回 True；启动期间收到停止信号返回 False。致命错误直接抛出。"""
        self.state = State.STARTING
        self._restore_spool()

        try:
            config = self._fetch_until_ready(self.client.fetch_config, 'fetch node config')
            if config is None:
                return False
            users = self._fetch_until_ready(self.client.fetch_users, 'fetch user list')
            if users is None:
                return False
        except (RejectedError, ConfigError) as e:
            self._fail(e)
            raise

        if not users:
            logger.warning("Panel returned no users; starting with an empty user set")
        try:
            keyed = self._derive_all(users, config, strict=True)
        except ConfigError as e:
            self._fail(e)
            raise

        if not self._callback_registered:
            self.engine.on_traffic(self.accumulator.record)
            self._callback_registered = True
        try:
            self._handle = self.engine.start(config, list(keyed.values()))
        except EngineError as e:
            self._fail(e)
            raise

        self.config = config
        self.applied = keyed
        self._last_fetched = users
        self.state = State.RUNNING
        logger.info(f"Node started: port={config.listen_port}, cipher={config.cipher.value}, "
                    f"users={len(keyed)}, pull={self.sync_interval}s, push={self.report_interval}s")

        self._threads = [
            threading.Thread(target=self._loop, args=('sync', lambda: self.sync_interval, self.sync_once),
                             daemon=True, name='sync'),
            threading.Thread(target=self._loop, args=('report', lambda: self.report_interval, self.report_once),
                             daemon=True, name='report'),
        ]
        for thread in self._threads:
            thread.start()
        return True

    def _restore_spool(self):
        """暂存行保留到第一次上报成功，之后由 _clear_spool 删除"""
        if self.spool is None:
            return
        pending = self.spool.peek()
        if pending:
            self.accumulator.restore(pending)
            self._spool_pending = True
            logger.info(f"Restored spooled traffic for {len(pending)} users "
                        f"(up={pending.upload_bytes}, down={pending.download_bytes})")

    def _clear_spool(self):
        if not self._spool_pending:
            return
        try:
            self.spool.clear()
        except Exception as e:
            logger.error(f"Failed to clear traffic spool, it may be reported again: {e}")
            return
        self._spool_pending = False

    def _fetch_until_ready(self, fn: Callable, what: str):
        while not self._stop.is_set():
            try:
                return self.retry.call(fn, self._stop, what)
            except TransientError as e:
                logger.error(f"Cannot {what} yet: {e}")
                self._stop.wait(max(self.retry.max_delay, 1.0))
        return None

    def _derive_all(self, users: Iterable[UserRecord], config: NodeConfig,
                    strict: bool = False) -> Dict[int, UserRecord]:
        """
        strict=True（启动阶段）：任一 secret 非法直接抛出 InvalidSecret。
        否则跳过该用户（若已应用会在 diff 中被移除），不影响其他用户。
        """
        keyed: Dict[int, UserRecord] = {}
        length = config.cipher.key_length
        for user in users:
            try:
                keyed[user.user_id] = user.with_key(derive_key(user.secret, length))
            except ConfigError as e:
                if strict:
                    raise
                keyed.pop(user.user_id, None)
                logger.warning(f"Skipping user {user.user_id}: {e}")
        return keyed

    # ── 周期线程 ──────────────────────────────────────────────────────────────

    def _loop(self, name: str, interval: Callable[[], int], cycle: Callable):
        while not self._stop.wait(interval()):
            try:
                cycle()
            except RejectedError as e:
                self._fail(e)
                break
            except Exception as e:
                logger.exception(f"{name} cycle error: {e}")

    # ── 同步周期 ──────────────────────────────────────────────────────────────

    def sync_once(self) -> bool:
        """执行一次同步；上一轮仍在进行时跳过。RejectedError 向上抛出（凭证已失效）。"""
        if not self._sync_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running, skipping this tick")
            return False
        try:
            self._refresh_config()
            ok = self._sync_users()
        except RejectedError as e:
            self.last_sync = CycleResult(time.time(), False, str(e))
            raise
        finally:
            self._sync_lock.release()
        return ok

    def _refresh_config(self):
        try:
            config = self.retry.call(self.client.fetch_config, self._stop, 'fetch node config')
        except NotModified:
            logger.debug("Node config not modified")
            return
        except TransientError as e:
            logger.warning(f"Skipping node config refresh: {e}")
            return
        except ConfigError as e:
            logger.error(f"Panel sent an invalid node config, keeping current one: {e}")
            return

        if self.config is not None and not config.requires_restart(self.config):
            self.config = config
            return
        logger.info(f"Node config changed (port={config.listen_port}, cipher={config.cipher.value}); "
                    f"restarting engine")
        current_users = list(self.applied.values())
        self._stop_engine()
        self.config = config
        self._start_engine(self._derive_all(current_users, config))

    def _stop_engine(self):
        if self._handle is None:
            return
        try:
            self.engine.stop(self._handle)
        except EngineError as e:
            logger.error(f"Engine stop failed: {e}")
        self._handle = None
        self.applied = {}

    def _start_engine(self, users: Dict[int, UserRecord]) -> bool:
        try:
            self._handle = self.engine.start(self.config, list(users.values()))
        except EngineError as e:
            logger.error(f"Engine start failed, will retry next cycle: {e}")
            self._handle = None
            self.applied = {}
            return False
        self.applied = dict(users)
        logger.info(f"Engine started with {len(users)} users")
        return True

    def _sync_users(self) -> bool:
        try:
            users = self.retry.call(self.client.fetch_users, self._stop, 'fetch user list')
        except NotModified:
            # 304 时仍与上次列表对比，以便重试上轮失败的增删
            users = self._last_fetched
            if users is None:
                return True
        except (TransientError, ConfigError) as e:
            logger.warning(f"Skipping user sync: {e}")
            self.last_sync = CycleResult(time.time(), False, str(e))
            return False

        if not users:
            logger.warning("Panel returned an empty user list; keeping current users")
            self.last_sync = CycleResult(time.time(), False, 'empty user list')
            return False
        self._last_fetched = users
        fetched = self._derive_all(users, self.config)

        if self._handle is None:
            ok = self._start_engine(fetched)
            self.last_sync = CycleResult(time.time(), ok, 'engine restarted' if ok else 'engine start failed')
            return ok

        diff = reconcile.diff(self.applied, list(fetched.values()))
        if diff.is_empty:
            logger.debug(f"Users unchanged ({len(self.applied)} active)")
            self.last_sync = CycleResult(time.time(), True, 'unchanged')
            return True
        ok = self._apply(diff)
        self.last_sync = CycleResult(time.time(), ok, f"-{len(diff.to_remove)} +{len(diff.to_add)}")
        return ok

    def _apply(self, diff: reconcile.ReconcileDiff) -> bool:
        """先删后增；单个用户失败只记日志，下个周期重试，不影响其余条目"""
        failed_removals = set()
        removed = added = failures = 0

        for user_id in diff.to_remove:
            try:
                self.engine.remove_user(self._handle, user_id)
            except EngineError as e:
                logger.error(f"Failed to remove user {user_id}: {e}")
                failed_removals.add(user_id)
                failures += 1
                continue
            self.applied.pop(user_id, None)
            removed += 1

        for user in diff.to_add:
            if user.user_id in failed_removals:
                # 旧密钥仍在引擎中，不能再注册新密钥
                continue
            try:
                self.engine.add_user(self._handle, user.user_id, user.derived_key)
            except EngineError as e:
                logger.error(f"Failed to add user {user.user_id}: {e}")
                failures += 1
                continue
            self.applied[user.user_id] = user
            added += 1

        logger.info(f"Users synced: -{removed} +{added}, {failures} failed, {len(self.applied)} active")
        return failures == 0

    # ── 上报周期 ──────────────────────────────────────────────────────────────

    def report_once(self, timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None,
                    stop: Optional[threading.Event] = None) -> bool:
        """drain 并上报；未确认送达的快照一律 restore 回累加器"""
        retry = retry or self.retry
        stop = self._stop if stop is None else stop
        with self._report_lock:
            snapshot = self.accumulator.drain()
            if not snapshot:
                logger.debug("No traffic data to push")
                self.last_report = CycleResult(time.time(), True, 'nothing to report')
                return True

            delivered = False
            try:
                retry.call(lambda: self.client.report_traffic(snapshot, timeout=timeout),
                           stop, 'push traffic')
                delivered = True
            except RejectedError as e:
                logger.error(f"Traffic report rejected, keeping {len(snapshot)} entries for retry: {e}")
                self.last_report = CycleResult(time.time(), False, str(e))
            except TransientError as e:
                logger.warning(f"Traffic report failed, keeping {len(snapshot)} entries for retry: {e}")
                self.last_report = CycleResult(time.time(), False, str(e))
            finally:
                if not delivered:
                    self.accumulator.restore(snapshot)
            if not delivered:
                return False

            self._clear_spool()
            total = snapshot.upload_bytes + snapshot.download_bytes
            self.reported_bytes += total
            self.last_report = CycleResult(time.time(), True, f"{len(snapshot)} users, {total} bytes")
            logger.info(f"Traffic pushed for {len(snapshot)} users "
                        f"(up={snapshot.upload_bytes}, down={snapshot.download_bytes})")
            return True

    # ── 停止 ──────────────────────────────────────────────────────────────────

    def shutdown(self):
        if self.state in (State.STOPPING, State.STOPPED):
            return
        failed = self.state is State.FAILED
        self.state = State.STOPPING
        self._stop.set()
        logger.info("Shutting down: waiting for in-flight cycles")
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()
        self._threads = []

        with self._sync_lock:
            self._stop_engine()
        self._final_flush()
        self.state = State.FAILED if failed else State.STOPPED
        logger.info("Shutdown complete")

    def _final_flush(self):
        once = RetryPolicy(max_attempts=1)
        if not self.report_once(timeout=self.final_report_timeout, retry=once, stop=threading.Event()):
            logger.warning("Final traffic report failed")
        leftover = self.accumulator.drain()
        if not leftover:
            return
        if self.spool is not None:
            try:
                self.spool.save(leftover)
                return
            except Exception as e:
                logger.exception(f"Failed to spool unreported traffic: {e}")
        hint = "" if self.spool is not None else "; set SPOOL_PATH to keep it across restarts"
        logger.error(f"Dropping unreported traffic for {len(leftover)} users "
                     f"(up={leftover.upload_bytes}, down={leftover.download_bytes}){hint}")

    def run(self) -> bool:
        """阻塞运行直到 request_stop() 或致命错误；正常停止返回 True"""
        try:
            if self.start():
                while not self._stop.wait(1):
                    pass
        finally:
            self.shutdown()
        return self.fatal_error is None

    # ── 状态查询（供 status API）─────────────────────────────────────────────

    def applied_user_ids(self) -> List[int]:
        return sorted(dict(self.applied))

    def status(self) -> Dict:
        pending: TrafficSnapshot = self.accumulator.peek()
        return {
            'state': self.state.value,
            'config': self.config.summary() if self.config else None,
            'users': len(self.applied),
            'sync_interval': self.sync_interval,
            'report_interval': self.report_interval,
            'last_sync': self.last_sync.as_dict() if self.last_sync else None,
            'last_report': self.last_report.as_dict() if self.last_report else None,
            'reported_bytes': self.reported_bytes,
            'pending': {
                'users': len(pending),
                'up_bytes': pending.upload_bytes,
                'down_bytes': pending.download_bytes,
            },
            'fatal_error': str(self.fatal_error) if self.fatal_error else None,
        }
