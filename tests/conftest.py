"""
Shared test fixtures

- FakeMongo: in-memory stand-in for dumper.base.MyMongo
- Helpers to build raw BSON payloads
"""
from typing import Any, Callable, Dict, List, Optional

import bson
import pytest
from bson.raw_bson import RawBSONDocument
from bson.timestamp import Timestamp
from pymongo.errors import OperationFailure

from dumper.base import GlobalConfig


def encode_all(docs: List[Dict[str, Any]]) -> bytes:
    return b''.join(bson.encode(doc) for doc in docs)


def _matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, cond in (query or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict) and '$gt' in cond:
            if value is None or not value > cond['$gt']:
                return False
        elif value != cond:
            return False
    return True


class FakeMongo:
    """
    Mirrors the MyMongo surface used by the dump core.

    data: {db: {collection: [documents in natural order]}}
    fail_on: {"db.coll": number of documents yielded before the cursor fails}
    on_find: called with (db, collection) every time a data cursor is opened
    on_oplog_cursor: called before the oplog cursor is built
    """

    def __init__(self, data: Optional[Dict[str, Dict[str, List[dict]]]] = None,
                 master_doc: Optional[Dict[str, Any]] = None,
                 auth_version: int = 5,
                 repair_supported: bool = True,
                 fail_on: Optional[Dict[str, int]] = None,
                 on_find: Optional[Callable[[str, str], None]] = None,
                 on_oplog_cursor: Optional[Callable[[], None]] = None):
        self.data = data if data is not None else {}
        self.master_doc = master_doc if master_doc is not None else {'ismaster': True, 'hosts': ['h1:27017']}
        self._auth_version = auth_version
        self.repair_supported = repair_supported
        self.fail_on = fail_on or {}
        self.on_find = on_find
        self.on_oplog_cursor = on_oplog_cursor
        self.find_calls = []
        self.repair_calls = []
        self.closed = False

    def _docs(self, database: str, collection: str) -> List[dict]:
        return self.data.get(database, {}).get(collection, [])

    def _cursor(self, namespace: str, docs: List[dict]):
        fail_after = self.fail_on.get(namespace)
        for i, doc in enumerate(list(docs)):
            if fail_after is not None and i >= fail_after:
                raise OperationFailure(f"cursor killed on {namespace}")
            yield RawBSONDocument(bson.encode(doc))
        if fail_after is not None and fail_after >= len(docs):
            raise OperationFailure(f"cursor killed on {namespace}")

    def database_names(self):
        return list(self.data)

    def collection_names(self, database):
        return list(self.data.get(database, {}))

    def count(self, database, collection, query=None):
        return sum(1 for doc in self._docs(database, collection) if _matches(doc, query))

    def find(self, database, collection, query=None, snapshot=False):
        self.find_calls.append((database, collection, query, snapshot))
        if self.on_find is not None:
            self.on_find(database, collection)
        docs = [doc for doc in self._docs(database, collection) if _matches(doc, query)]
        return self._cursor(f"{database}.{collection}", docs)

    def repair_cursor(self, database, collection):
        self.repair_calls.append((database, collection))
        return self._cursor(f"{database}.{collection}", self._docs(database, collection))

    def supports_repair_cursor(self, database, collection):
        if self.repair_supported:
            return True, None
        return False, "--repair 只支持 mmapv1 存储引擎"

    def find_one(self, database, collection, sort=None):
        docs = self._docs(database, collection)
        if not docs:
            return None
        if sort and sort[0][1] < 0:
            return docs[-1]
        return docs[0]

    def oplog_cursor(self, collection, after: Timestamp):
        if self.on_oplog_cursor is not None:
            self.on_oplog_cursor()
        docs = [doc for doc in self._docs('local', collection) if doc['ts'] > after]
        return self._cursor(f"local.{collection}", docs)

    def run_command(self, command, database='admin'):
        if command == 'isMaster':
            return dict(self.master_doc)
        raise OperationFailure(f"no such command: {command}")

    def is_mongos(self):
        return self.master_doc.get('msg') == 'isdbgrid'

    def auth_version(self):
        return self._auth_version

    def collection_metadata(self, database, collection):
        return {'options': {}, 'indexes': [{'v': 2, 'key': {'_id': 1}, 'name': '_id_'}]}

    def close(self):
        self.closed = True


def oplog_entry(seconds: int, inc: int, **fields) -> Dict[str, Any]:
    entry = {'ts': Timestamp(seconds, inc), 'op': 'i', 'ns': 'test.foo', 'o': {}}
    entry.update(fields)
    return entry


@pytest.fixture
def fake_mongo():
    return FakeMongo()


@pytest.fixture
def make_config(tmp_path):
    """GlobalConfig writing into a temporary directory"""

    def _make(**kwargs) -> GlobalConfig:
        kwargs.setdefault('out', str(tmp_path / 'dump'))
        return GlobalConfig(**kwargs)

    return _make
