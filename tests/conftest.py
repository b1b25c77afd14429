from typing import List

import pytest

from controller import RetryPolicy
from engine import SimulatedEngine
from errors import EngineError
from models import Cipher, NodeConfig, UserRecord

SECRET_A = 'a' * 36
SECRET_B = 'b' * 36
SECRET_C = 'c' * 36


def make_config(**overrides) -> NodeConfig:
    values = dict(listen_port=8388, cipher=Cipher.AES_256_GCM, server_key='c2VydmVyLWtleQ==')
    values.update(overrides)
    return NodeConfig(**values)


def user(user_id: int, secret: str) -> UserRecord:
    return UserRecord(user_id=user_id, secret=secret)


class FakePanel:
    """按顺序返回预设结果；元素为异常实例时抛出"""

    def __init__(self, configs=None, users=None, reports=None):
        self.configs = list(configs or [make_config()])
        self.users = list(users or [])
        self.reports = list(reports or [])
        self.reported: List = []
        self.report_timeouts: List = []

    @staticmethod
    def _next(queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def fetch_config(self):
        return self._next(self.configs)

    def fetch_users(self):
        return list(self._next(self.users))

    def report_traffic(self, snapshot, timeout=None):
        self.report_timeouts.append(timeout)
        if self.reports:
            outcome = self.reports.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
        self.reported.append(snapshot)

    def close(self):
        pass


class RecordingEngine(SimulatedEngine):

    def __init__(self, fail_add=(), fail_remove=()):
        super().__init__()
        self.calls: List = []
        self.fail_add = set(fail_add)
        self.fail_remove = set(fail_remove)

    def start(self, config, users):
        users = list(users)
        self.calls.append(('start', config.listen_port, sorted(u.user_id for u in users)))
        return super().start(config, users)

    def stop(self, handle):
        self.calls.append(('stop',))
        super().stop(handle)

    def add_user(self, handle, user_id, key):
        self.calls.append(('add', user_id, key))
        if user_id in self.fail_add:
            raise EngineError(f"add {user_id} refused")
        super().add_user(handle, user_id, key)

    def remove_user(self, handle, user_id):
        self.calls.append(('remove', user_id))
        if user_id in self.fail_remove:
            raise EngineError(f"remove {user_id} refused")
        super().remove_user(handle, user_id)


@pytest.fixture
def no_backoff():
    return RetryPolicy(max_attempts=1, base_delay=0, max_delay=0)


@pytest.fixture
def engine():
    return RecordingEngine()
