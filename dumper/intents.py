"""
导出任务（intent）定义
一个intent对应一个需要导出的集合，或者oplog、用户、角色等特殊数据
"""
import enum
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator

from dumper.base import STDOUT_PATH

BSON_EXT = '.bson'
METADATA_EXT = '.metadata.json'

SYSTEM_INDEXES = 'system.indexes'
OPLOG_NAME = 'oplog'

# 按数据库导出用户和角色时使用的文件名
DB_USERS = '$admin.system.users'
DB_ROLES = '$admin.system.roles'
DB_AUTH_VERSION = '$admin.system.version'


class IntentState(enum.Enum):
    QUEUED = 'queued'
    IN_PROGRESS = 'in_progress'
    DONE = 'done'


@dataclass(eq=False)
class Intent:
    db: str
    collection: str
    bson_path: str = ''
    metadata_path: str = ''
    # 估算的文档数量，只用于调度
    size: int = 0
    state: IntentState = field(default=IntentState.QUEUED, compare=False)

    @property
    def namespace(self) -> str:
        return f"{self.db}.{self.collection}"

    @property
    def key(self):
        return self.db, self.collection

    @property
    def is_system_indexes(self) -> bool:
        return self.collection == SYSTEM_INDEXES

    @property
    def is_oplog(self) -> bool:
        return self.db == '' and self.collection == OPLOG_NAME

    @property
    def is_users(self) -> bool:
        return self.collection == DB_USERS or (self.db == 'admin' and self.collection == 'system.users')

    @property
    def is_roles(self) -> bool:
        return self.collection == DB_ROLES or (self.db == 'admin' and self.collection == 'system.roles')

    @property
    def is_auth_version(self) -> bool:
        return self.collection == DB_AUTH_VERSION or (self.db == 'admin' and self.collection == 'system.version')

    @property
    def is_special(self) -> bool:
        """特殊intent不进入普通队列，单独存放"""
        return (self.is_system_indexes or self.is_oplog or self.is_users
                or self.is_roles or self.is_auth_version)

    @contextmanager
    def open_bson(self) -> Iterator[BinaryIO]:
        """导出前才打开数据文件，结束后无论成功失败都关闭"""
        with _open_output(self.bson_path) as f:
            yield f

    @contextmanager
    def open_metadata(self) -> Iterator[BinaryIO]:
        with _open_output(self.metadata_path) as f:
            yield f

    def __repr__(self):
        return f"Intent({self.namespace}, size={self.size}, state={self.state.value})"


@contextmanager
def _open_output(path: str) -> Iterator[BinaryIO]:
    if not path:
        raise ValueError("intent没有对应的输出路径")
    if path == STDOUT_PATH:
        # 标准输出不能关闭
        stdout = sys.stdout.buffer
        try:
            yield stdout
        finally:
            stdout.flush()
        return
    with open(path, 'wb') as f:
        yield f


def output_path(out: str, db: str, name: str) -> str:
    """集合的输出路径（不含扩展名）"""
    return os.path.join(out, db, name)
