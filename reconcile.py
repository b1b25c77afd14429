"""
reconcile.py - 用户集合差异计算

current: 已应用到引擎的 user_id -> UserRecord
fetched: 面板最新下发的用户列表（有序）

  current 有、fetched 无          -> 删除
  fetched 有、current 无          -> 新增
  两边都有但 secret 变化          -> 先删除再新增（引擎按单一密钥注册，无法原地更新）

应用顺序：全部删除先于全部新增。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from models import UserRecord


@dataclass
class ReconcileDiff:
    to_remove: List[int] = field(default_factory=list)
    to_add: List[UserRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_remove and not self.to_add


def diff(current: Mapping[int, UserRecord], fetched: Sequence[UserRecord]) -> ReconcileDiff:
    # 重复 id 以最后一次出现为准，保持首次出现的顺序
    latest: Dict[int, UserRecord] = {}
    for user in fetched:
        latest[user.user_id] = user

    result = ReconcileDiff()
    result.to_remove = sorted(uid for uid in current if uid not in latest)

    for user_id, user in latest.items():
        applied = current.get(user_id)
        if applied is None:
            result.to_add.append(user)
        elif applied.secret != user.secret:
            result.to_remove.append(user_id)
            result.to_add.append(user)
    return result
