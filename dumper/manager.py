#!/usr/bin/env python3
"""
任务管理模块
保存所有导出任务，负责排序和并发安全的取任务
"""
import enum
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from dumper.errors import DuplicateIntentError
from dumper.intents import Intent, IntentState

logger = logging.getLogger(__name__)


class FinalizePolicy(enum.Enum):
    # 按发现顺序，单线程时使用，保证结果可复现
    LEGACY = 'legacy'
    # 文档数多的集合先导出，缩短多线程下的总耗时
    LONGEST_TASK_FIRST = 'longest_task_first'


_SLOTS = ('oplog', 'users', 'roles', 'auth_version')


class IntentManager:
    """任务管理器，普通集合进入队列，特殊数据放在固定的槽位里"""

    def __init__(self):
        self._lock = threading.Lock()
        self._intents: List[Intent] = []
        self._keys = set()
        self._queue: Optional[Deque[Intent]] = None
        self._finished: List[Intent] = []
        self._slots: Dict[str, Optional[Intent]] = {name: None for name in _SLOTS}
        self._system_indexes: Dict[str, Intent] = {}

    def put(self, intent: Intent) -> None:
        """
        添加任务
        :param intent: 导出任务
        :raises DuplicateIntentError: 同一个集合已经存在
        """
        with self._lock:
            if self._queue is not None:
                raise RuntimeError("任务队列已经确定顺序，不能再添加任务")
            if intent.key in self._keys:
                raise DuplicateIntentError(f"重复的导出任务: {intent.namespace}")
            self._keys.add(intent.key)

            if intent.is_system_indexes:
                self._system_indexes[intent.db] = intent
            elif intent.is_oplog:
                self._slots['oplog'] = intent
            elif intent.is_users:
                self._slots['users'] = intent
            elif intent.is_roles:
                self._slots['roles'] = intent
            elif intent.is_auth_version:
                self._slots['auth_version'] = intent
            else:
                self._intents.append(intent)

    def finalize(self, policy: FinalizePolicy) -> None:
        """确定出队顺序，只能调用一次，必须在pop之前"""
        with self._lock:
            if self._queue is not None:
                raise RuntimeError("任务队列已经确定顺序")
            if policy == FinalizePolicy.LONGEST_TASK_FIRST:
                # sorted是稳定排序，大小相同的保持发现顺序
                ordered = sorted(self._intents, key=lambda it: it.size, reverse=True)
            else:
                ordered = list(self._intents)
            self._queue = deque(ordered)
            logger.debug(f"任务队列确定顺序: policy={policy.value}, 共{len(ordered)}个任务")

    def pop(self) -> Optional[Intent]:
        """取出下一个任务，没有任务时返回None"""
        with self._lock:
            if self._queue is None:
                raise RuntimeError("必须先调用finalize确定顺序")
            if not self._queue:
                return None
            intent = self._queue.popleft()
            intent.state = IntentState.IN_PROGRESS
            return intent

    def finish(self, intent: Intent) -> None:
        """记录任务完成，不会重新入队"""
        with self._lock:
            if intent.state == IntentState.DONE:
                raise RuntimeError(f"任务已经完成: {intent.namespace}")
            intent.state = IntentState.DONE
            self._finished.append(intent)

    def peek(self) -> Optional[Intent]:
        """返回一个任务用于探测服务器能力，不修改队列"""
        with self._lock:
            if self._queue is not None:
                return self._queue[0] if self._queue else None
            return self._intents[0] if self._intents else None

    def intents(self) -> List[Intent]:
        """所有普通任务，按发现顺序"""
        with self._lock:
            return list(self._intents)

    def finished(self) -> List[Intent]:
        with self._lock:
            return list(self._finished)

    def oplog(self) -> Optional[Intent]:
        return self._slots['oplog']

    def users(self) -> Optional[Intent]:
        return self._slots['users']

    def roles(self) -> Optional[Intent]:
        return self._slots['roles']

    def auth_version(self) -> Optional[Intent]:
        return self._slots['auth_version']

    def system_indexes(self, db: str) -> Optional[Intent]:
        return self._system_indexes.get(db)

    def system_index_dbs(self) -> List[str]:
        return list(self._system_indexes)

    def __len__(self):
        with self._lock:
            return len(self._keys)
