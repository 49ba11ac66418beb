"""
创建导出任务
"""
import logging
import os

from pymongo.errors import PyMongoError

from dumper.base import STDOUT_PATH
from dumper.errors import CollectionDumpError, DumpError
from dumper.intents import (BSON_EXT, DB_AUTH_VERSION, DB_ROLES, DB_USERS, METADATA_EXT, OPLOG_NAME,
                            Intent, output_path)

logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS = 0o755


class IntentPreparer:
    """
    根据配置枚举数据库和集合，生成导出任务放入任务管理器
    使用方需要提供 self.config / self.session / self.manager / self.oplog_capture
    """

    def should_skip_collection(self, collection_name: str) -> bool:
        """集合名在排除列表中，或以排除前缀开头"""
        if collection_name in self.config.exclude_collections:
            return True
        for prefix in self.config.exclude_collection_prefixes:
            if collection_name.startswith(prefix):
                return True
        return False

    def create_intent_for_collection(self, db_name: str, collection_name: str) -> None:
        if self.should_skip_collection(collection_name):
            logger.debug(f"🚫 跳过被排除的集合 {db_name}.{collection_name}")
            return

        base_path = output_path(self.config.out, db_name, collection_name)
        intent = Intent(db=db_name, collection=collection_name, bson_path=base_path + BSON_EXT)
        if not intent.is_system_indexes:
            intent.metadata_path = base_path + METADATA_EXT

        if self.config.use_stdout:
            intent.bson_path = STDOUT_PATH
            intent.metadata_path = STDOUT_PATH
        else:
            try:
                os.makedirs(os.path.dirname(base_path), mode=DEFAULT_PERMISSIONS, exist_ok=True)
            except OSError as e:
                raise CollectionDumpError(f"创建目录 {os.path.dirname(base_path)} 失败: {e}") from e

        # 文档数只用于调度
        try:
            intent.size = self.session.count(db_name, collection_name)
        except PyMongoError as e:
            raise CollectionDumpError(f"统计 {intent.namespace} 文档数失败: {e}") from e
        self.manager.put(intent)

        logger.debug(f"📥 加入导出队列: {intent.namespace} ({intent.size:,}条文档)")

    def create_intents_for_database(self, db_name: str) -> None:
        # 空数据库也要创建目录
        db_folder = os.path.join(self.config.out, db_name)
        try:
            os.makedirs(db_folder, mode=DEFAULT_PERMISSIONS, exist_ok=True)
        except OSError as e:
            raise CollectionDumpError(f"创建目录 {db_folder} 失败: {e}") from e

        collections = self.session.collection_names(db_name)
        logger.debug(f"数据库 {db_name} 包含集合: {', '.join(collections)}")
        for collection_name in collections:
            self.create_intent_for_collection(db_name, collection_name)

    def create_all_intents(self) -> None:
        databases = self.session.database_names()
        logger.debug(f"发现数据库: {', '.join(databases)}")
        for db_name in databases:
            if db_name == 'local':
                # local只能显式导出
                continue
            self.create_intents_for_database(db_name)

    def create_oplog_intent(self) -> None:
        os.makedirs(self.config.out, mode=DEFAULT_PERMISSIONS, exist_ok=True)
        # 在导出任何数据之前确认能找到oplog
        self.oplog_capture.determine()
        intent = Intent(db='', collection=OPLOG_NAME,
                        bson_path=os.path.join(self.config.out, OPLOG_NAME + BSON_EXT))
        self.manager.put(intent)

    def create_users_roles_version_intents_for_db(self, db_name: str) -> None:
        out_dir = os.path.join(self.config.out, db_name)
        try:
            os.makedirs(out_dir, mode=DEFAULT_PERMISSIONS, exist_ok=True)
        except OSError as e:
            raise DumpError(f"创建目录 {out_dir} 失败: {e}") from e

        for name in (DB_USERS, DB_ROLES, DB_AUTH_VERSION):
            self.manager.put(Intent(db=db_name, collection=name,
                                    bson_path=os.path.join(out_dir, name + BSON_EXT)))
