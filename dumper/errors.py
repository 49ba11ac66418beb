"""
导出过程中的异常定义
"""


class DumpError(Exception):
    """导出失败的基类，任何子类都会让整个导出以非零状态退出"""


class ConfigError(DumpError):
    """参数组合冲突，在连接数据库之前检测"""


class MongoConnectError(DumpError):
    """会话、认证或命令执行失败"""


class NotPrimaryError(MongoConnectError):
    """需要抓取oplog但连接的不是主节点"""


class CollectionDumpError(DumpError):
    """单个集合的计数、读取或写入失败"""


class DuplicateIntentError(DumpError):
    """同一个 (db, collection) 被重复加入任务队列"""


class OplogError(DumpError):
    """读取oplog失败"""


class ConsistencyError(DumpError):
    """
    导出结果无法作为一致性快照使用

    已经写出的文件仍然保留在磁盘上，但不能当作某一时间点的快照来恢复
    """


class OplogOverflowError(ConsistencyError):
    """oplog中最早的记录晚于导出开始时记录的时间戳，中间的操作已经丢失"""

    def __init__(self, oldest: int, start: int):
        self.oldest = oldest
        self.start = start
        super().__init__(
            f"oplog溢出: 最早的oplog记录 {oldest} 晚于开始时间戳 {start}，"
            f"导出期间的oplog未能完整捕获"
        )
