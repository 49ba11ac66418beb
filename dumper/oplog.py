#!/usr/bin/env python3
"""
oplog一致性快照

导出开始前记录oplog最新的时间戳，普通集合导出完成后复制这之后的所有oplog，
复制前后各检查一次oplog是否已经被覆盖
"""
import enum
import logging
from typing import BinaryIO, Optional

from bson.timestamp import Timestamp
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from dumper.base import MyMongo
from dumper.errors import NotPrimaryError, OplogError, OplogOverflowError
from dumper.pipeline import dump_iter_to_writer
from dumper.progress import Counter

logger = logging.getLogger(__name__)

REPLICA_SET_OPLOG = 'oplog.rs'
MASTER_SLAVE_OPLOG = 'oplog.$main'


def timestamp_to_int(ts: Timestamp) -> int:
    """BSON时间戳转为整数，高32位是秒，低32位是秒内序号"""
    return (ts.time << 32) + ts.inc


def int_to_timestamp(value: int) -> Timestamp:
    return Timestamp(value >> 32, value & 0xFFFFFFFF)


class OplogState(enum.Enum):
    IDLE = 'idle'
    DETERMINED = 'determined'
    CAPTURED = 'captured'
    VERIFIED1 = 'verified1'
    COPIED = 'copied'
    VERIFIED2 = 'verified2'
    DONE = 'done'


class OplogCapture:
    """
    oplog抓取流程：
    determine -> capture -> (导出普通集合) -> verify -> copy -> verify -> finish
    """

    def __init__(self, session: MyMongo):
        self.session = session
        self.state = OplogState.IDLE
        self.collection: Optional[str] = None
        self.start: Optional[int] = None

    def _transition(self, expected: OplogState, new: OplogState) -> None:
        if self.state != expected:
            raise RuntimeError(f"oplog状态错误: 当前 {self.state.value}，需要 {expected.value}")
        self.state = new

    @property
    def namespace(self) -> str:
        return f"local.{self.collection}"

    def determine(self) -> str:
        """根据isMaster的结果确定oplog所在的集合"""
        master_doc = self.session.run_command('isMaster')
        if 'hosts' in master_doc:
            logger.debug("检测到副本集，oplog位于 local.oplog.rs")
            collection = REPLICA_SET_OPLOG
        elif not master_doc.get('ismaster'):
            logger.info("⚠️ 当前连接的不是主节点")
            raise NotPrimaryError("没有连接到主节点，无法抓取oplog")
        else:
            logger.debug("不是副本集，按主从模式处理，oplog位于 local.oplog.$main")
            collection = MASTER_SLAVE_OPLOG
        self._transition(OplogState.IDLE, OplogState.DETERMINED)
        self.collection = collection
        return collection

    def _entry_timestamp(self, newest: bool) -> int:
        sort = [('$natural', DESCENDING if newest else ASCENDING)]
        try:
            entry = self.session.find_one('local', self.collection, sort=sort)
        except PyMongoError as e:
            raise OplogError(f"读取oplog失败: {e}") from e
        if entry is None:
            raise OplogError(f"oplog为空: {self.namespace}")
        return timestamp_to_int(entry['ts'])

    def capture(self) -> int:
        """记录最新一条oplog的时间戳作为快照起点"""
        start = self._entry_timestamp(newest=True)
        self._transition(OplogState.DETERMINED, OplogState.CAPTURED)
        self.start = start
        logger.info(f"⏱️ oplog起始时间戳: {int_to_timestamp(start)}")
        return start

    def verify(self) -> None:
        """
        检查起始时间戳之后的oplog是否仍然完整
        :raises OplogOverflowError: 最早的oplog记录晚于起始时间戳
        """
        if self.state == OplogState.CAPTURED:
            new_state = OplogState.VERIFIED1
        elif self.state == OplogState.COPIED:
            new_state = OplogState.VERIFIED2
        else:
            raise RuntimeError(f"oplog状态错误: 当前 {self.state.value}，不能检查溢出")

        logger.debug(f"检查oplog记录 {int_to_timestamp(self.start)} 是否仍然存在")
        oldest = self._entry_timestamp(newest=False)
        logger.debug(f"最早的oplog记录时间戳 {int_to_timestamp(oldest)}")
        if oldest > self.start:
            raise OplogOverflowError(oldest, self.start)
        self.state = new_state

    def count(self) -> int:
        try:
            return self.session.count('local', self.collection,
                                      {'ts': {'$gt': int_to_timestamp(self.start)}})
        except PyMongoError as e:
            raise OplogError(f"统计oplog数量失败: {e}") from e

    def copy(self, writer: BinaryIO, counter: Counter) -> None:
        """复制起始时间戳之后的全部oplog，按自然顺序"""
        if self.state != OplogState.VERIFIED1:
            raise RuntimeError(f"oplog状态错误: 当前 {self.state.value}，需要 {OplogState.VERIFIED1.value}")
        try:
            cursor = self.session.oplog_cursor(self.collection, int_to_timestamp(self.start))
        except PyMongoError as e:
            raise OplogError(f"读取oplog失败: {e}") from e
        dump_iter_to_writer(cursor, writer, counter)
        self.state = OplogState.COPIED

    def finish(self) -> None:
        self._transition(OplogState.VERIFIED2, OplogState.DONE)
