"""
errors.py - 错误分类

  TransientError  网络故障 / 5xx / 超时，下个周期重试
  RejectedError   4xx / 鉴权失败，重试无意义
  EngineError     代理引擎增删用户失败，下个同步周期重试该用户
  ConfigError     配置或密钥非法（InvalidSecret 为其子类）
  NotModified     面板返回 304，资源未变化
"""


class NodeSyncError(Exception):
    """Base class for every error raised by this package."""


class TransientError(NodeSyncError):
    pass


class RejectedError(NodeSyncError):

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class EngineError(NodeSyncError):
    pass


class ConfigError(NodeSyncError):
    pass


class InvalidSecret(ConfigError):
    pass


class NotModified(NodeSyncError):
    pass
