"""
单个集合的流式导出

读和写分别在两个线程里进行，中间只有一个文档的缓冲：
数据库读取下一批数据的同时写磁盘，写得慢时读线程会阻塞，内存占用有上限
"""
import logging
import queue
import threading
from typing import BinaryIO, Iterable, List

from dumper.errors import CollectionDumpError
from dumper.progress import Counter

logger = logging.getLogger(__name__)

WRITE_BUFFER_SIZE = 32 * 1024

_END = object()


def _raw_bytes(doc) -> bytes:
    raw = getattr(doc, 'raw', doc)
    # 复制一份，驱动可以立即复用自己的缓冲区
    return bytes(raw)


def dump_iter_to_writer(cursor: Iterable, writer: BinaryIO, counter: Counter) -> None:
    """
    将游标中的原始BSON文档按顺序写入writer
    :param cursor: 返回原始BSON文档的游标
    :param writer: 输出流
    :param counter: 每写一个文档加一
    :raises CollectionDumpError: 读取或写入失败
    """
    handoff = queue.Queue(maxsize=1)
    stop = threading.Event()
    read_errors: List[BaseException] = []

    def read():
        try:
            for doc in cursor:
                if stop.is_set():
                    break
                handoff.put(_raw_bytes(doc))
        except Exception as e:
            read_errors.append(e)
        finally:
            handoff.put(_END)

    reader = threading.Thread(target=read, name='dump-reader', daemon=True)
    reader.start()

    buffer = bytearray()
    drained = False
    try:
        try:
            while True:
                item = handoff.get()
                if item is _END:
                    drained = True
                    break
                buffer += item
                if len(buffer) >= WRITE_BUFFER_SIZE:
                    writer.write(buffer)
                    buffer.clear()
                counter.inc(1)
            if buffer:
                writer.write(buffer)
                buffer.clear()
        except OSError as e:
            raise CollectionDumpError(f"写入文件出错: {e}") from e
        finally:
            try:
                writer.flush()
            except OSError as e:
                raise CollectionDumpError(f"刷新文件出错: {e}") from e
    finally:
        if not drained:
            # 写入失败时让读线程退出，并取走队列里的数据避免它阻塞
            stop.set()
            while handoff.get() is not _END:
                pass
        reader.join()

    if read_errors:
        raise CollectionDumpError(f"读取集合出错: {read_errors[0]}") from read_errors[0]
