"""
traffic.py - 线程安全的按用户流量累加器

写入方：代理引擎的回调线程（数量不定、真正并发）
读取方：上报循环周期性 drain()

按 user_id 分片加锁：不同分片的用户互不阻塞，
drain() 逐个分片整体换出字典，期间到达的增量要么进入本次快照，要么留给下一次，不会丢失。
"""

import logging
import threading
from typing import Dict, List

from models import TrafficDelta, TrafficSnapshot

logger = logging.getLogger('nodesync.traffic')

DEFAULT_SHARDS = 16


class _Shard:
    __slots__ = ('lock', 'counters')

    def __init__(self):
        self.lock = threading.Lock()
        # user_id -> [upload, download]
        self.counters: Dict[int, List[int]] = {}


class TrafficAccumulator:

    def __init__(self, shards: int = DEFAULT_SHARDS):
        if shards <= 0:
            raise ValueError("shards must be positive")
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, user_id: int) -> _Shard:
        return self._shards[hash(user_id) % len(self._shards)]

    def _add(self, user_id: int, up: int, down: int):
        shard = self._shard(user_id)
        with shard.lock:
            counter = shard.counters.get(user_id)
            if counter is None:
                shard.counters[user_id] = [up, down]
            else:
                counter[0] += up
                counter[1] += down

    # ── 引擎回调入口 ──────────────────────────────────────────────────────────

    def record(self, delta: TrafficDelta):
        if not delta.upload_bytes and not delta.download_bytes:
            return
        self._add(delta.user_id, delta.upload_bytes, delta.download_bytes)

    # ── 上报循环 ──────────────────────────────────────────────────────────────

    def drain(self) -> TrafficSnapshot:
        """取出并清零全部计数。已移除用户的残留流量也在这里上报一次后丢弃。"""
        taken: Dict[int, List[int]] = {}
        for shard in self._shards:
            with shard.lock:
                counters, shard.counters = shard.counters, {}
            taken.update(counters)
        return TrafficSnapshot.from_counters(taken)

    def restore(self, snapshot: TrafficSnapshot):
        """上报失败时把快照加回实时计数，下个周期随新增量一起重报"""
        for entry in snapshot:
            self._add(entry.user_id, entry.upload_bytes, entry.download_bytes)
        if snapshot:
            logger.debug(f"Restored {len(snapshot)} traffic entries for retry")

    def peek(self) -> TrafficSnapshot:
        copied: Dict[int, List[int]] = {}
        for shard in self._shards:
            with shard.lock:
                copied.update({uid: list(c) for uid, c in shard.counters.items()})
        return TrafficSnapshot.from_counters(copied)
