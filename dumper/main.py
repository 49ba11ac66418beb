#!/usr/bin/env python3
"""
MongoDB 导出工具入口

使用方法:
    mongo-dumper [--config CONFIG_PATH] [--db DB] [--collection COLL] [--oplog] ...

参数:
    --config: 配置文件路径 (默认: config.ini)
    其余参数覆盖配置文件 [global] 中的同名配置
"""
import argparse
import logging
import sys
from configparser import ConfigParser
from pathlib import Path
from typing import List, Optional, Tuple

from bson import json_util

from dumper.base import GlobalConfig, MongoConfig, MyMongo
from dumper.dump import MyDump
from dumper.errors import ConfigError, ConsistencyError, DumpError

logger = logging.getLogger('dumper')

HANDLER = None

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BAD_OPTIONS = 2
EXIT_INCONSISTENT = 3


def setup_logger(verbosity: int = 0) -> logging.Logger:
    """日志输出到stderr，stdout可能用来输出BSON"""
    global HANDLER
    level = logging.DEBUG if verbosity > 0 else logging.INFO
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if HANDLER is not None:
        logger.removeHandler(HANDLER)
    HANDLER = logging.StreamHandler(sys.stderr)
    HANDLER.setLevel(level)
    HANDLER.setFormatter(formatter)
    logger.setLevel(level)
    logger.addHandler(HANDLER)
    return logger


def _split(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(',') if item.strip())


def _parse_query(query: str):
    try:
        parsed = json_util.loads(query)
    except ValueError as e:
        raise ConfigError(f"查询条件不是合法的JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ConfigError("查询条件格式错误")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='MongoDB 导出工具')
    parser.add_argument('--config', default='config.ini', help='配置文件路径')
    parser.add_argument('--out', help='输出目录，- 表示标准输出')
    parser.add_argument('--db', help='数据库名')
    parser.add_argument('--collection', help='集合名')
    parser.add_argument('--query', help='查询条件 (extended JSON)')
    parser.add_argument('--excludeCollection', action='append', dest='exclude_collections',
                        help='排除的集合，可以多次指定')
    parser.add_argument('--excludeCollectionsWithPrefix', action='append', dest='exclude_prefixes',
                        help='排除指定前缀的集合，可以多次指定')
    parser.add_argument('--oplog', action='store_true', default=None, help='抓取oplog生成一致性快照')
    parser.add_argument('--forceTableScan', action='store_true', default=None, dest='force_table_scan',
                        help='全表扫描，不使用快照')
    parser.add_argument('--repair', action='store_true', default=None, help='跳过损坏的记录')
    parser.add_argument('--dumpDbUsersAndRoles', action='store_true', default=None,
                        dest='dump_db_users_and_roles', help='导出数据库的用户和角色')
    parser.add_argument('--numParallelCollections', '-j', type=int, dest='num_parallel_collections',
                        help='并发导出的集合数')
    parser.add_argument('--verbose', '-v', action='count', default=0, help='显示详细日志')
    return parser


def load_config(args: argparse.Namespace) -> Tuple[MongoConfig, GlobalConfig]:
    """读取配置文件，命令行参数优先"""
    config = ConfigParser()
    config_path = Path(args.config)
    if config_path.exists():
        config.read(config_path)
    elif args.config != 'config.ini':
        raise ConfigError(f"配置文件不存在: {config_path}")

    source_config = MongoConfig(
        config.get('source', 'host', fallback='127.0.0.1'),
        config.getint('source', 'port', fallback=27017),
        config.get('source', 'username', fallback=''),
        config.get('source', 'password', fallback=''),
        config.get('source', 'authenticationDatabase', fallback='admin'),
    )

    def pick(value, key, getter=config.get, fallback=None):
        if value is not None:
            return value
        return getter('global', key, fallback=fallback)

    query_str = pick(args.query, 'query', fallback='')
    exclude_collections = (tuple(args.exclude_collections) if args.exclude_collections
                           else _split(config.get('global', 'excludeCollections', fallback='')))
    exclude_prefixes = (tuple(args.exclude_prefixes) if args.exclude_prefixes
                        else _split(config.get('global', 'excludeCollectionsWithPrefix', fallback='')))

    global_config = GlobalConfig(
        out=pick(args.out, 'out', fallback='dumps'),
        db=pick(args.db, 'db', fallback=''),
        collection=pick(args.collection, 'collection', fallback=''),
        query=_parse_query(query_str) if query_str else None,
        exclude_collections=exclude_collections,
        exclude_collection_prefixes=exclude_prefixes,
        oplog=pick(args.oplog, 'oplog', config.getboolean, False),
        force_table_scan=pick(args.force_table_scan, 'forceTableScan', config.getboolean, False),
        repair=pick(args.repair, 'repair', config.getboolean, False),
        dump_db_users_and_roles=pick(args.dump_db_users_and_roles, 'dumpDbUsersAndRoles',
                                     config.getboolean, False),
        num_parallel_collections=pick(args.num_parallel_collections, 'numParallelCollections',
                                      config.getint, 1),
    )
    return source_config, global_config


def run(source_config: MongoConfig, global_config: GlobalConfig) -> int:
    """执行导出，返回进程退出码"""
    # 参数冲突必须在连接数据库之前发现
    try:
        global_config.validate()
    except ConfigError as e:
        logger.error(f"❌ 参数错误: {e}")
        return EXIT_BAD_OPTIONS

    session = None
    try:
        session = MyMongo(source_config)
        mydump = MyDump(global_config, session)
        mydump.init()
        result = mydump.dump()
    except ConfigError as e:
        logger.error(f"❌ 参数错误: {e}")
        return EXIT_BAD_OPTIONS
    except ConsistencyError as e:
        logger.error(f"💥 {e}")
        logger.error("⚠️ 已导出的数据不能作为一致性快照使用")
        return EXIT_INCONSISTENT
    except DumpError as e:
        logger.error(f"❌ 导出失败: {e}")
        return EXIT_ERROR
    finally:
        if session is not None:
            session.close()

    logger.info(f"📈 导出完成统计: 集合 {result['collections']}个, 耗时 {result['duration']:.2f}秒")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logger(args.verbose)
    try:
        source_config, global_config = load_config(args)
    except (ConfigError, ValueError) as e:
        logger.error(f"❌ 参数错误: {e}")
        return EXIT_BAD_OPTIONS

    logger.info(f"⚙️ 导出配置: 输出={global_config.out}, 数据库={global_config.db or '全部'}, "
                f"集合={global_config.collection or '全部'}, 并发数={global_config.num_parallel_collections}, "
                f"oplog={global_config.oplog}")
    if global_config.exclude_collections or global_config.exclude_collection_prefixes:
        logger.info(f"🚫 排除集合: {list(global_config.exclude_collections)}, "
                    f"排除前缀: {list(global_config.exclude_collection_prefixes)}")

    return run(source_config, global_config)


if __name__ == "__main__":
    sys.exit(main())
