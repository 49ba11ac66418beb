import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import quote_plus

from bson.codec_options import CodecOptions
from bson.raw_bson import RawBSONDocument
from bson.timestamp import Timestamp
from pymongo import ASCENDING, MongoClient
from pymongo.command_cursor import CommandCursor
from pymongo.errors import OperationFailure, PyMongoError

from dumper.errors import ConfigError, MongoConnectError

logger = logging.getLogger(__name__)

# 游标直接返回原始BSON，不做解码
RAW_CODEC_OPTIONS = CodecOptions(document_class=RawBSONDocument)

STDOUT_PATH = '-'


class MongoConfig:
    __slots__ = ['host', 'port', 'username', 'password', 'auth_database']

    def __init__(self, db_host, db_port, db_user, db_pass, auth_database='admin'):
        self.host = db_host
        self.port = db_port
        self.username = db_user
        self.password = db_pass
        self.auth_database = auth_database

    def uri(self) -> str:
        if self.username and self.password:
            return (f"mongodb://{quote_plus(self.username)}:{quote_plus(self.password)}"
                    f"@{self.host}:{self.port}/{self.auth_database}")
        return f"mongodb://{self.host}:{self.port}/"


@dataclass(frozen=True)
class GlobalConfig:
    """导出配置，创建后不再修改"""
    out: str = 'dumps'
    db: str = ''
    collection: str = ''
    query: Optional[Dict[str, Any]] = None
    exclude_collections: Tuple[str, ...] = ()
    exclude_collection_prefixes: Tuple[str, ...] = ()
    oplog: bool = False
    force_table_scan: bool = False
    repair: bool = False
    dump_db_users_and_roles: bool = False
    num_parallel_collections: int = 1

    @property
    def use_stdout(self) -> bool:
        return self.out == STDOUT_PATH

    def validate(self) -> None:
        """
        检查互相冲突的参数组合，必须在连接数据库之前调用
        :raises ConfigError: 参数冲突
        """
        if self.use_stdout and not self.collection:
            raise ConfigError("只能将单个集合导出到标准输出")
        if not self.db and self.collection:
            raise ConfigError("导出集合时必须指定数据库")
        if self.query is not None and not self.collection:
            raise ConfigError("使用查询条件时必须指定集合")
        if self.dump_db_users_and_roles and not self.db:
            raise ConfigError("dumpDbUsersAndRoles 需要指定数据库")
        if self.dump_db_users_and_roles and self.collection:
            raise ConfigError("dumpDbUsersAndRoles 不能指定集合")
        if self.oplog and self.db:
            raise ConfigError("oplog 模式只支持全量导出")
        if self.exclude_collections and self.collection:
            raise ConfigError("指定 excludeCollection 时不能再指定集合")
        if self.exclude_collection_prefixes and self.collection:
            raise ConfigError("指定 excludeCollectionsWithPrefix 时不能再指定集合")
        if self.exclude_collections and not self.db:
            raise ConfigError("指定 excludeCollection 时必须指定数据库")
        if self.exclude_collection_prefixes and not self.db:
            raise ConfigError("指定 excludeCollectionsWithPrefix 时必须指定数据库")
        if self.repair and self.query is not None:
            raise ConfigError("repair 模式下不能使用查询条件")
        if self.num_parallel_collections < 1:
            raise ConfigError("numParallelCollections 必须大于0")


class MyMongo(object):
    """
    源数据库会话，导出流程中所有对MongoDB的访问都经过这里
    """

    def __init__(self, mongo: MongoConfig):
        self.mongo = mongo
        self.client = None
        self._init_client()

    def _init_client(self):
        """初始化MongoDB客户端"""
        try:
            # 长时间的全表扫描不能有socket超时
            self.client = MongoClient(
                self.mongo.uri(),
                socketTimeoutMS=None,
                serverSelectionTimeoutMS=30_000,
                readPreference='primaryPreferred',
            )
        except PyMongoError as e:
            raise MongoConnectError(f"❌ MongoDB连接失败: {e}") from e

    def _raw_collection(self, database: str, collection: str):
        return self.client[database].get_collection(collection, codec_options=RAW_CODEC_OPTIONS)

    def database_names(self) -> List[str]:
        try:
            return self.client.list_database_names()
        except PyMongoError as e:
            raise MongoConnectError(f"获取数据库列表失败: {e}") from e

    def collection_names(self, database: str) -> List[str]:
        try:
            return self.client[database].list_collection_names()
        except PyMongoError as e:
            raise MongoConnectError(f"获取数据库 {database} 集合列表失败: {e}") from e

    def count(self, database: str, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        """返回文档数量，没有查询条件时使用集合统计信息快速估算"""
        coll = self.client[database][collection]
        if query:
            return coll.count_documents(query)
        return coll.estimated_document_count()

    def _supports_id_hint(self, database: str, collection: str) -> bool:
        """视图和没有_id索引的集合（如capped集合）不能按_id做快照遍历"""
        info = next(self.client[database].list_collections(filter={'name': collection}), None)
        if info is None or info.get('type') == 'view':
            return False
        return '_id_' in self.client[database][collection].index_information()

    def find(self, database: str, collection: str, query: Optional[Dict[str, Any]] = None,
             snapshot: bool = False):
        """
        返回原始BSON游标
        :param query: 查询条件，None表示全部文档
        :param snapshot: 按_id索引遍历，避免文档移动导致重复或遗漏
        """
        cursor = self._raw_collection(database, collection).find(query or {}, no_cursor_timeout=True)
        if snapshot and self._supports_id_hint(database, collection):
            cursor = cursor.hint([('_id', ASCENDING)])
        return cursor

    def repair_cursor(self, database: str, collection: str):
        """repairCursor跳过损坏的记录，返回能读出的全部文档"""
        result = self.client[database].command({'repairCursor': collection},
                                               codec_options=RAW_CODEC_OPTIONS)
        return CommandCursor(self._raw_collection(database, collection), result['cursor'],
                             self.client.address)

    def supports_repair_cursor(self, database: str, collection: str) -> Tuple[bool, Optional[str]]:
        """
        探测服务器是否支持repairCursor
        只识别明确表示不支持的错误，其他错误留到真正导出时再报告
        :return: (是否支持, 不支持的原因)
        """
        try:
            next(iter(self.repair_cursor(database, collection)), None)
        except OperationFailure as e:
            message = str(e)
            if 'no such cmd' in message or 'no such command' in message:
                return False, "当前MongoDB版本不支持 --repair"
            if 'repair iterator not supported' in message:
                return False, "--repair 只支持 mmapv1 存储引擎"
        return True, None

    def find_one(self, database: str, collection: str,
                 sort: Optional[List[Tuple[str, int]]] = None) -> Optional[Dict[str, Any]]:
        return self.client[database][collection].find_one({}, sort=sort)

    def oplog_cursor(self, collection: str, after: Timestamp):
        """返回 ts 大于 after 的oplog记录，按自然顺序"""
        return self._raw_collection('local', collection).find(
            {'ts': {'$gt': after}}, oplog_replay=True, no_cursor_timeout=True)

    def run_command(self, command: str, database: str = 'admin') -> Dict[str, Any]:
        try:
            return self.client[database].command(command)
        except PyMongoError as e:
            raise MongoConnectError(f"执行命令 {command} 失败: {e}") from e

    def is_mongos(self) -> bool:
        return self.run_command('isMaster').get('msg') == 'isdbgrid'

    def auth_version(self) -> int:
        """获取认证schema版本"""
        try:
            result = self.client.admin.command({'getParameter': 1, 'authSchemaVersion': 1})
        except PyMongoError as e:
            raise MongoConnectError(f"获取认证schema版本失败: {e}") from e
        return int(result.get('authSchemaVersion', 1))

    def collection_metadata(self, database: str, collection: str) -> Dict[str, Any]:
        """
        获取集合的创建参数和索引信息

        Args:
            database: 数据库名称
            collection: 集合名称

        Returns:
            {'options': {...}, 'indexes': [...]}
        """
        db = self.client[database]
        info = next(db.list_collections(filter={'name': collection}), None) or {}
        metadata = {'options': info.get('options', {}), 'indexes': []}
        if info.get('type') == 'view':
            return metadata
        for index in db[collection].list_indexes():
            metadata['indexes'].append(dict(index))
        return metadata

    def close(self):
        """断开MongoDB连接"""
        if self.client:
            self.client.close()
            self.client = None
