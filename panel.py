"""
panel.py - V2Board UniProxy 面板 API 客户端

  GET  /api/v1/server/UniProxy/config   节点配置
  GET  /api/v1/server/UniProxy/user     用户列表 {"users": [{"id": 1, "uuid": "..."}]}
  POST /api/v1/server/UniProxy/push     流量上报 {"<id>": [upload, download]}

所有请求带 node_id / node_type / token 查询参数。
只负责请求与错误分类，不做重试（重试策略归 SyncController）：
  网络故障 / 超时 / 5xx / 响应无法解析 -> TransientError
  4xx（408、429 除外）                  -> RejectedError
  304                                     -> NotModified（配合 ETag 缓存）
"""

import logging
import threading
from typing import Dict, List, Optional

import requests

from errors import ConfigError, NotModified, RejectedError, TransientError
from models import NodeConfig, TrafficSnapshot, TransportOptions, UserRecord

logger = logging.getLogger('nodesync.panel')

CONFIG_PATH = '/api/v1/server/UniProxy/config'
USERS_PATH = '/api/v1/server/UniProxy/user'
PUSH_PATH = '/api/v1/server/UniProxy/push'

NODE_TYPE = 'shadowsocks'
DEFAULT_TIMEOUT = 5
USER_AGENT = 'nodesync/1.0'

# 这些 4xx 表示“稍后再试”，不是凭证问题
RETRYABLE_CLIENT_STATUS = (408, 429)


class PanelClient:

    def __init__(self, api_host: str, node_id: int, key: str,
                 timeout: float = DEFAULT_TIMEOUT,
                 transport: Optional[TransportOptions] = None,
                 session: Optional[requests.Session] = None):
        self.api_host = api_host.rstrip('/')
        self.node_id = node_id
        self.key = key
        self.timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        self.transport = transport or TransportOptions()
        self.session = session or requests.Session()
        self.session.headers.setdefault('User-Agent', USER_AGENT)
        self._etags: Dict[str, str] = {}
        self._etags_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.api_host}{path}"

    def _params(self) -> Dict[str, str]:
        return {'node_id': str(self.node_id), 'node_type': NODE_TYPE, 'token': self.key}

    # ── 底层请求 ──────────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, etag_name: Optional[str] = None,
                 timeout: Optional[float] = None, **kwargs):
        headers = {}
        if etag_name:
            with self._etags_lock:
                etag = self._etags.get(etag_name)
            if etag:
                headers['If-None-Match'] = etag

        url = self._url(path)
        try:
            response = self.session.request(
                method, url, params=self._params(), headers=headers,
                timeout=timeout or self.timeout, **kwargs
            )
        except requests.Timeout as e:
            raise TransientError(f"request {url} timed out: {e}") from e
        except requests.RequestException as e:
            raise TransientError(f"request {url} failed: {e}") from e

        status = response.status_code
        if status == 304:
            raise NotModified(f"{etag_name or path} not modified")
        if status >= 500 or status in RETRYABLE_CLIENT_STATUS:
            raise TransientError(f"request {url} failed: status {status}, body: {response.text[:200]}")
        if status >= 400:
            raise RejectedError(f"request {url} rejected: status {status}, body: {response.text[:200]}",
                                status=status)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientError(f"request {url} returned invalid JSON: {e}") from e
        return body, response.headers.get('ETag')

    def _remember_etag(self, name: str, etag: Optional[str]):
        if not etag:
            return
        with self._etags_lock:
            self._etags[name] = etag

    # ── 对外接口 ──────────────────────────────────────────────────────────────

    def fetch_config(self) -> NodeConfig:
        body, etag = self._request('GET', CONFIG_PATH, etag_name='node')
        config = NodeConfig.from_panel(body, self.transport)
        # 只有解析成功才缓存 ETag，否则下次 304 会掩盖错误配置
        self._remember_etag('node', etag)
        return config

    def fetch_users(self) -> List[UserRecord]:
        body, etag = self._request('GET', USERS_PATH, etag_name='users')
        raw_users = body.get('users') if isinstance(body, dict) else None
        if raw_users is None:
            raise TransientError("users field not found")
        if not raw_users:
            return []

        users: List[UserRecord] = []
        for item in raw_users:
            try:
                users.append(UserRecord(user_id=int(item['id']), secret=str(item['uuid'])))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed user entry: {item!r}")
        if not users:
            raise ConfigError("no usable user entries in panel response")
        self._remember_etag('users', etag)
        return users

    def report_traffic(self, snapshot: TrafficSnapshot, timeout: Optional[float] = None):
        self._request('POST', PUSH_PATH, json=snapshot.to_payload(), timeout=timeout)

    def close(self):
        self.session.close()
