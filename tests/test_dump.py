import io
import json
import os
import sys
import time

import pytest

from dumper.dump import MyDump
from dumper.errors import CollectionDumpError, ConfigError, DumpError, OplogOverflowError
from dumper.intents import IntentState
from dumper.oplog import OplogState

from conftest import FakeMongo, encode_all, oplog_entry


def _run(session, config):
    mydump = MyDump(config, session)
    mydump.init()
    result = mydump.dump()
    return mydump, result


def _bson_files(root):
    found = []
    for dirpath, _, filenames in os.walk(root):
        found.extend(os.path.join(dirpath, f) for f in filenames if f.endswith('.bson'))
    return found


def _read(path):
    with open(path, 'rb') as f:
        return f.read()


def test_empty_database(make_config):
    """ Empty database, no oplog: directory exists, no data files, success. """
    config = make_config(db='empty')
    _, result = _run(FakeMongo(data={'empty': {}}), config)
    assert os.path.isdir(os.path.join(config.out, 'empty'))
    assert _bson_files(config.out) == []
    assert result['collections'] == 0


def test_single_collection_three_documents(make_config):
    docs = [{'_id': 1, 'a': 'x'}, {'_id': 2, 'a': 'y'}, {'_id': 3, 'a': 'z'}]
    config = make_config(db='test', num_parallel_collections=1)
    session = FakeMongo(data={'test': {'foo': docs}})
    _run(session, config)

    assert _read(os.path.join(config.out, 'test', 'foo.bson')) == encode_all(docs)
    metadata_path = os.path.join(config.out, 'test', 'foo.metadata.json')
    with open(metadata_path) as f:
        metadata = json.load(f)
    assert metadata['indexes'][0]['name'] == '_id_'
    # default mode walks the _id index
    assert session.find_calls == [('test', 'foo', None, True)]


def test_prefix_exclusion(make_config):
    config = make_config(db='test', exclude_collection_prefixes=('system.',))
    session = FakeMongo(data={'test': {'system.js': [{'_id': 'f'}], 'bar': [{'_id': 1}]}})
    _run(session, config)
    assert _bson_files(config.out) == [os.path.join(config.out, 'test', 'bar.bson')]


def test_repeat_runs_are_byte_identical(make_config, tmp_path):
    data = {'db1': {f"c{i}": [{'_id': j, 'v': i * j} for j in range(20 + i)] for i in range(6)}}
    first = make_config(out=str(tmp_path / 'one'), num_parallel_collections=3)
    second = make_config(out=str(tmp_path / 'two'), num_parallel_collections=3)
    _run(FakeMongo(data=data), first)
    _run(FakeMongo(data=data), second)

    for i in range(6):
        a = _read(os.path.join(first.out, 'db1', f"c{i}.bson"))
        b = _read(os.path.join(second.out, 'db1', f"c{i}.bson"))
        assert a == b == encode_all(data['db1'][f"c{i}"])


@pytest.mark.parametrize('jobs', [1, 2, 4, 16])
def test_parallel_dump_copies_every_collection_once(make_config, jobs):
    data = {'db': {f"c{i}": [{'_id': j} for j in range(i)] for i in range(12)}}
    config = make_config(num_parallel_collections=jobs)
    mydump, result = _run(FakeMongo(data=data), config)

    assert result['collections'] == 12
    assert all(it.state == IntentState.DONE for it in mydump.manager.intents())
    for name, docs in data['db'].items():
        assert _read(os.path.join(config.out, 'db', f"{name}.bson")) == encode_all(docs)


def test_first_error_fails_run_after_workers_finish(make_config):
    """ A failing worker fails the run, but in-flight copies still complete. """
    big_docs = [{'_id': i} for i in range(50)]
    data = {'db': {
        'big': big_docs,
        'bad': [{'_id': i} for i in range(10)],
        'small': [{'_id': 1}],
    }}

    def slow_big(database, collection):
        if collection == 'big':
            time.sleep(0.2)

    session = FakeMongo(data=data, fail_on={'db.bad': 2}, on_find=slow_big)
    config = make_config(num_parallel_collections=2)
    mydump = MyDump(config, session)
    mydump.init()

    with pytest.raises(CollectionDumpError) as exc_info:
        mydump.dump()

    assert 'db.bad' in str(exc_info.value)
    assert _read(os.path.join(config.out, 'db', 'big.bson')) == encode_all(big_docs)
    big = next(it for it in mydump.manager.intents() if it.collection == 'big')
    assert big.state == IntentState.DONE
    bad = next(it for it in mydump.manager.intents() if it.collection == 'bad')
    assert bad.state == IntentState.IN_PROGRESS


def test_count_failure_is_fatal(make_config):
    class BrokenCount(FakeMongo):
        def count(self, database, collection, query=None):
            from pymongo.errors import OperationFailure
            raise OperationFailure("not authorized")

    with pytest.raises(CollectionDumpError):
        _run(BrokenCount(data={'db': {'c': [{}]}}), make_config(db='db'))


def test_query_and_table_scan_modes(make_config):
    docs = [{'_id': 1, 'kind': 'a'}, {'_id': 2, 'kind': 'b'}, {'_id': 3, 'kind': 'a'}]
    session = FakeMongo(data={'db': {'c': docs}})
    config = make_config(db='db', collection='c', query={'kind': 'a'})
    _run(session, config)
    assert _read(os.path.join(config.out, 'db', 'c.bson')) == encode_all([docs[0], docs[2]])
    assert session.find_calls == [('db', 'c', {'kind': 'a'}, False)]

    session = FakeMongo(data={'db': {'c': docs}})
    _run(session, make_config(db='db', force_table_scan=True))
    assert session.find_calls == [('db', 'c', None, False)]


def test_repair_mode(make_config):
    docs = [{'_id': i} for i in range(4)]
    session = FakeMongo(data={'db': {'c': docs}})
    config = make_config(db='db', repair=True)
    _run(session, config)
    assert session.repair_calls == [('db', 'c')]
    assert session.find_calls == []
    assert _read(os.path.join(config.out, 'db', 'c.bson')) == encode_all(docs)


def test_repair_not_supported(make_config):
    session = FakeMongo(data={'db': {'c': [{}]}}, repair_supported=False)
    with pytest.raises(ConfigError):
        _run(session, make_config(db='db', repair=True))


def test_repair_on_mongos(make_config):
    session = FakeMongo(master_doc={'ismaster': True, 'msg': 'isdbgrid'})
    mydump = MyDump(make_config(db='db', repair=True), session)
    with pytest.raises(ConfigError):
        mydump.init()


def test_stdout_mode(make_config, monkeypatch):
    class FakeStdout:
        buffer = io.BytesIO()

    monkeypatch.setattr(sys, 'stdout', FakeStdout())
    docs = [{'_id': 1}, {'_id': 2}]
    config = make_config(out='-', db='db', collection='c')
    _run(FakeMongo(data={'db': {'c': docs}}), config)
    assert FakeStdout.buffer.getvalue() == encode_all(docs)
    assert not os.path.exists('-')


def test_whole_instance_dumps_admin_users_and_roles(make_config):
    users = [{'_id': 'shop.alice', 'user': 'alice', 'db': 'shop'}]
    roles = [{'_id': 'shop.reader', 'role': 'reader', 'db': 'shop'}]
    version = [{'_id': 'authSchema', 'currentVersion': 5}]
    session = FakeMongo(data={
        'admin': {'system.users': users, 'system.roles': roles, 'system.version': version},
        'shop': {'orders': [{'_id': 1}]},
    })
    config = make_config()
    mydump, _ = _run(session, config)

    admin_dir = os.path.join(config.out, 'admin')
    assert _read(os.path.join(admin_dir, 'system.users.bson')) == encode_all(users)
    assert _read(os.path.join(admin_dir, 'system.roles.bson')) == encode_all(roles)
    assert _read(os.path.join(admin_dir, 'system.version.bson')) == encode_all(version)
    assert [it.namespace for it in mydump.manager.intents()] == ['shop.orders']


def test_dump_db_users_and_roles(make_config):
    users = [{'_id': 'shop.alice', 'db': 'shop'}, {'_id': 'other.bob', 'db': 'other'}]
    roles = [{'_id': 'shop.reader', 'db': 'shop'}]
    version = [{'_id': 'authSchema', 'currentVersion': 5}]
    session = FakeMongo(data={
        'admin': {'system.users': users, 'system.roles': roles, 'system.version': version},
        'shop': {'orders': [{'_id': 1}]},
    })
    config = make_config(db='shop', dump_db_users_and_roles=True)
    _run(session, config)

    shop_dir = os.path.join(config.out, 'shop')
    assert _read(os.path.join(shop_dir, '$admin.system.users.bson')) == encode_all(users[:1])
    assert _read(os.path.join(shop_dir, '$admin.system.roles.bson')) == encode_all(roles)
    assert _read(os.path.join(shop_dir, '$admin.system.version.bson')) == encode_all(version)


def test_dump_db_users_and_roles_needs_auth_schema_3(make_config):
    session = FakeMongo(data={'shop': {}}, auth_version=1)
    with pytest.raises(DumpError):
        _run(session, make_config(db='shop', dump_db_users_and_roles=True))


def test_oplog_captures_writes_during_dump(make_config):
    """ One write after the start timestamp ends up alone in oplog.bson. """
    entries = [oplog_entry(100, 1), oplog_entry(100, 2)]
    write = oplog_entry(105, 1, o={'_id': 'new'})

    def write_during_copy(database, collection):
        if (database, collection) == ('test', 'foo'):
            entries.append(write)

    session = FakeMongo(data={
        'local': {'oplog.rs': entries},
        'test': {'foo': [{'_id': 1}]},
    }, on_find=write_during_copy)
    config = make_config(oplog=True)
    mydump, result = _run(session, config)

    assert _read(os.path.join(config.out, 'oplog.bson')) == encode_all([write])
    assert mydump.oplog_capture.state == OplogState.DONE
    assert result['oplog'] is True


def test_oplog_overflow_before_copy(make_config):
    entries = [oplog_entry(100, 1), oplog_entry(100, 2)]

    def roll_over(database, collection):
        if database == 'test':
            del entries[:]
            entries.append(oplog_entry(200, 1))

    session = FakeMongo(data={'local': {'oplog.rs': entries}, 'test': {'foo': [{}]}},
                        on_find=roll_over)
    config = make_config(oplog=True)
    with pytest.raises(OplogOverflowError):
        _run(session, config)
    assert not os.path.exists(os.path.join(config.out, 'oplog.bson'))


def test_oplog_overflow_during_copy(make_config):
    entries = [oplog_entry(100, 1), oplog_entry(100, 2)]

    def roll_over():
        entries.append(oplog_entry(150, 1))
        del entries[:2]

    session = FakeMongo(data={'local': {'oplog.rs': entries}, 'test': {'foo': [{}]}},
                        on_oplog_cursor=roll_over)
    mydump = MyDump(make_config(oplog=True), session)
    mydump.init()
    with pytest.raises(OplogOverflowError):
        mydump.dump()
    assert mydump.oplog_capture.state == OplogState.COPIED
