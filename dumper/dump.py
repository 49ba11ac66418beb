#!/usr/bin/env python3
"""
数据库导出类 - 支持多线程并发导出集合
导出分三个阶段：
  1. 元数据、system.indexes、用户和角色
  2. 普通集合（线程池并发）
  3. oplog（可选）
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, BinaryIO, Dict, Iterable, Optional

from bson import json_util
from pymongo.errors import PyMongoError

from dumper.base import STDOUT_PATH, GlobalConfig, MyMongo
from dumper.errors import CollectionDumpError, ConfigError, DumpError
from dumper.intents import Intent
from dumper.manager import FinalizePolicy, IntentManager
from dumper.oplog import OplogCapture
from dumper.pipeline import dump_iter_to_writer
from dumper.prepare import IntentPreparer
from dumper.progress import Counter, ProgressManager

logger = logging.getLogger(__name__)

MIN_AUTH_VERSION_FOR_DB_USERS = 3


class MyDump(IntentPreparer):
    """
    导出整个实例、单个数据库或单个集合
    """

    def __init__(self, config: GlobalConfig, session: MyMongo,
                 progress_manager: Optional[ProgressManager] = None):
        self.config = config
        self.session = session
        self.manager = IntentManager()
        self.oplog_capture = OplogCapture(session)
        self.progress_manager = progress_manager or ProgressManager()

        # 运行状态，只在本对象内部使用
        self.is_mongos = False
        self.auth_version = 0
        self._abort = threading.Event()

    def init(self) -> None:
        """检查参数并探测服务器类型"""
        self.config.validate()
        self.is_mongos = self.session.is_mongos()
        if self.config.repair and self.is_mongos:
            raise ConfigError("--repair 不能用于 mongos")

    def dump(self) -> Dict[str, Any]:
        """
        执行导出
        :return: 导出统计信息
        """
        start_time = time.time()
        config = self.config

        if config.dump_db_users_and_roles:
            self.auth_version = self.session.auth_version()
            logger.debug(f"认证schema版本: {self.auth_version}")
            if self.auth_version < MIN_AUTH_VERSION_FOR_DB_USERS:
                raise DumpError(f"按数据库导出用户和角色需要认证schema版本 >= 3，当前为: {self.auth_version}")

        if not config.db and not config.collection:
            self.create_all_intents()
        elif config.db and not config.collection:
            self.create_intents_for_database(config.db)
        else:
            self.create_intent_for_collection(config.db, config.collection)

        if config.oplog:
            self.create_oplog_intent()

        if config.dump_db_users_and_roles and config.db != 'admin':
            self.create_users_roles_version_intents_for_db(config.db)

        if config.repair:
            self._check_repair_supported()

        # 在复制任何数据之前记录oplog起点
        if config.oplog:
            logger.info("⏱️ 获取最新的oplog时间戳")
            self.oplog_capture.capture()

        # 阶段一：元数据、索引、用户和角色
        logger.debug("导出阶段一: 元数据、system.indexes、用户和角色")
        try:
            self.dump_metadata()
        except DumpError as e:
            logger.error(f"❌ 导出元数据失败: {e}")
            raise

        self.dump_system_indexes()

        if config.db in ('admin', ''):
            self.dump_users_and_roles()

        if config.dump_db_users_and_roles:
            logger.info(f"👤 导出数据库 {config.db} 的用户和角色")
            if config.db == 'admin':
                logger.info("⏭️ admin数据库已经导出过用户和角色，跳过")
            else:
                self.dump_users_and_roles_for_db(config.db)

        # 阶段二：普通集合
        logger.debug("导出阶段二: 普通集合")
        self.progress_manager.start()
        try:
            self.dump_intents()
        finally:
            self.progress_manager.stop()

        # 阶段三：oplog
        if config.oplog:
            logger.debug("导出阶段三: oplog")
            self.dump_oplog()

        duration = time.time() - start_time
        logger.info(f"🎉 导出完成 (耗时: {duration:.2f}秒)")
        return {
            'collections': len(self.manager.finished()),
            'oplog': config.oplog,
            'duration': duration,
        }

    def _check_repair_supported(self) -> None:
        logger.debug("检查服务器是否支持repairCursor")
        if self.is_mongos:
            raise ConfigError("--repair 不能用于 mongos")
        example = self.manager.peek()
        if example is None:
            return
        supported, reason = self.session.supports_repair_cursor(example.db, example.collection)
        if not supported:
            raise ConfigError(reason)

    def dump_intents(self) -> None:
        """
        用固定数量的线程导出队列中的全部集合
        第一个失败的线程决定结果，但会等所有线程结束后才返回
        """
        jobs = max(self.config.num_parallel_collections, 1)
        if jobs > 1:
            self.manager.finalize(FinalizePolicy.LONGEST_TASK_FIRST)
        else:
            self.manager.finalize(FinalizePolicy.LEGACY)

        logger.info(f"🚀 使用 {jobs} 个线程导出")

        first_error = None
        with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix='dump') as executor:
            futures = [executor.submit(self._dump_worker, worker_id) for worker_id in range(jobs)]
            for future in as_completed(futures):
                error = future.exception()
                if error is not None and first_error is None:
                    first_error = error

        if first_error is not None:
            raise first_error

    def _dump_worker(self, worker_id: int) -> None:
        logger.debug(f"启动导出线程 id={worker_id}")
        while not self._abort.is_set():
            intent = self.manager.pop()
            if intent is None:
                logger.debug(f"导出线程 id={worker_id} 结束，没有更多任务")
                return
            try:
                self.dump_intent(intent)
            except Exception as e:
                # 其他线程不再领取新任务，正在导出的继续完成
                self._abort.set()
                logger.error(f"❌ 导出集合 {intent.namespace} 失败: {e}")
                raise
            self.manager.finish(intent)
        logger.debug(f"导出线程 id={worker_id} 因其他线程出错而停止")

    def _find(self, intent: Intent):
        if self.config.query is not None:
            return self.session.find(intent.db, intent.collection, self.config.query)
        if self.config.force_table_scan:
            # 全表扫描，不走快照
            return self.session.find(intent.db, intent.collection)
        return self.session.find(intent.db, intent.collection, snapshot=True)

    def dump_intent(self, intent: Intent) -> None:
        """导出单个集合到对应的文件"""
        try:
            with intent.open_bson() as out:
                if self.config.use_stdout:
                    logger.info(f"📤 导出 {intent.namespace} 到标准输出")
                    self._dump_query(intent, out)
                elif not self.config.repair:
                    logger.info(f"📦 导出 {intent.namespace} 到 {intent.bson_path}")
                    self._dump_query(intent, out)
                else:
                    # repair无法预先计数
                    logger.info(f"🔧 修复导出 {intent.namespace} 到 {intent.bson_path}")
                    cursor = self.session.repair_cursor(intent.db, intent.collection)
                    repair_counter = Counter()
                    try:
                        dump_iter_to_writer(cursor, out, repair_counter)
                    except CollectionDumpError as e:
                        raise CollectionDumpError(f"修复导出出错: {e}") from e
                    logger.info(f"\trepair游标在 {intent.namespace} 中找到 {repair_counter}条文档")
        except OSError as e:
            raise CollectionDumpError(f"打开文件 {intent.bson_path} 失败: {e}") from e
        except PyMongoError as e:
            raise CollectionDumpError(f"读取 {intent.namespace} 失败: {e}") from e

        logger.info(f"✅ 完成导出 {intent.namespace}")

    def _dump_query(self, intent: Intent, out: BinaryIO) -> None:
        total = self.session.count(intent.db, intent.collection, self.config.query)
        self.dump_query_to_writer(intent.namespace, self._find(intent), out, total)

    def dump_query_to_writer(self, name: str, cursor: Iterable, writer: BinaryIO, total: int) -> Counter:
        """
        执行查询并把原始BSON写入writer
        :param name: 进度显示名称
        :param cursor: 查询游标
        :param writer: 输出流
        :param total: 预计文档数量
        """
        logger.info(f"\t{total:,}条文档")
        counter = Counter(total)
        self.progress_manager.attach(name, counter)
        try:
            dump_iter_to_writer(cursor, writer, counter)
        finally:
            self.progress_manager.detach(name)
        return counter

    def dump_metadata(self) -> None:
        """为每个普通集合写出 metadata.json（集合参数和索引）"""
        for intent in self.manager.intents():
            if not intent.metadata_path or intent.metadata_path == STDOUT_PATH:
                continue
            try:
                metadata = self.session.collection_metadata(intent.db, intent.collection)
                with intent.open_metadata() as out:
                    out.write(json_util.dumps(metadata).encode('utf-8'))
            except (OSError, PyMongoError) as e:
                raise CollectionDumpError(f"导出 {intent.namespace} 元数据失败: {e}") from e

    def dump_system_indexes(self) -> None:
        for db_name in self.manager.system_index_dbs():
            self.dump_intent(self.manager.system_indexes(db_name))

    def dump_users_and_roles(self) -> None:
        """导出admin库中的用户、角色和认证版本"""
        for intent in (self.manager.users(), self.manager.roles(), self.manager.auth_version()):
            if intent is not None:
                self.dump_intent(intent)

    def dump_users_and_roles_for_db(self, db_name: str) -> None:
        """
        导出属于指定数据库的用户和角色，要求认证schema版本 >= 3
        :param db_name: 数据库名
        """
        db_query = {'db': db_name}
        tasks = (
            (self.manager.users(), 'system.users', db_query),
            (self.manager.roles(), 'system.roles', db_query),
            (self.manager.auth_version(), 'system.version', None),
        )
        for intent, collection, query in tasks:
            try:
                with intent.open_bson() as out:
                    total = self.session.count('admin', collection, query)
                    cursor = self.session.find('admin', collection, query)
                    self.dump_query_to_writer(f"admin.{collection}", cursor, out, total)
            except (OSError, PyMongoError) as e:
                raise CollectionDumpError(f"导出数据库 {db_name} 的 {collection} 失败: {e}") from e

    def dump_oplog(self) -> None:
        """
        复制导出期间产生的oplog
        复制前后各检查一次oplog是否被覆盖
        """
        intent = self.manager.oplog()
        capture = self.oplog_capture

        capture.verify()
        logger.info(f"📝 写入oplog到 {intent.bson_path}")
        try:
            with intent.open_bson() as out:
                counter = Counter(capture.count())
                self.progress_manager.attach(capture.namespace, counter)
                try:
                    capture.copy(out, counter)
                finally:
                    self.progress_manager.detach(capture.namespace)
        except OSError as e:
            raise CollectionDumpError(f"写入oplog失败: {e}") from e

        # 复制过程中oplog也可能被覆盖，再检查一次
        capture.verify()
        capture.finish()
        logger.info(f"✅ oplog共 {counter}条记录")
