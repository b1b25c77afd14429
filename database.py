"""
database.py - SQLite 未上报流量暂存

进程退出时最后一次上报失败，剩余快照写入 pending_traffic（整表替换）；
下次启动时 peek() 读出合并回累加器，行保留到第一次上报成功后才 clear()，
期间进程被强杀也不会丢失。

计数是 u64，超出 SQLite 有符号 INTEGER 范围，按十进制 TEXT 存储。
"""

import logging
import os
import sqlite3
import threading
from datetime import datetime

from models import TrafficEntry, TrafficSnapshot


def _local_now_str() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')

logger = logging.getLogger('nodesync.database')

SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_traffic (
    user_id    INTEGER PRIMARY KEY,
    up_bytes   TEXT NOT NULL DEFAULT '0',
    down_bytes TEXT NOT NULL DEFAULT '0',
    updated_at TEXT
);
"""


class TrafficSpool:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def init_schema(self):
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.executescript(SCHEMA)
            finally:
                conn.close()
        logger.info(f"Traffic spool initialized: {self.db_path}")

    def save(self, snapshot: TrafficSnapshot):
        """用快照替换暂存内容。快照必须已包含启动时恢复的暂存流量。"""
        now_str = _local_now_str()
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM pending_traffic")
                    conn.executemany(
                        "INSERT INTO pending_traffic (user_id, up_bytes, down_bytes, updated_at) "
                        "VALUES (?, ?, ?, ?)",
                        [(e.user_id, str(e.upload_bytes), str(e.download_bytes), now_str)
                         for e in snapshot],
                    )
            finally:
                conn.close()
        logger.info(f"Spooled traffic for {len(snapshot)} users to {self.db_path}")

    def peek(self) -> TrafficSnapshot:
        with self._lock:
            conn = self._get_conn()
            try:
                rows = conn.execute(
                    "SELECT user_id, up_bytes, down_bytes FROM pending_traffic ORDER BY user_id"
                ).fetchall()
            finally:
                conn.close()
        return TrafficSnapshot(
            TrafficEntry(r['user_id'], int(r['up_bytes']), int(r['down_bytes'])) for r in rows
        )

    def clear(self):
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM pending_traffic")
            finally:
                conn.close()
        logger.info("Traffic spool cleared")
