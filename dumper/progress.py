"""
导出进度统计
"""
import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

PROGRESS_WAIT_TIME = 3.0


class Counter:
    """线程安全的计数器，多个导出线程会同时累加"""

    def __init__(self, total: int = 0):
        self._lock = threading.Lock()
        self._current = 0
        self.total = total

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._current += amount

    @property
    def current(self) -> int:
        with self._lock:
            return self._current

    def progress(self) -> str:
        current = self.current
        if self.total <= 0:
            return f"{current:,}"
        return f"[{current:,}/{self.total:,}] {current * 100.0 / self.total:.1f}%"

    def __str__(self):
        return str(self.current)


class ProgressManager:
    """后台线程定时打印所有正在导出的集合的进度"""

    def __init__(self, wait_time: float = PROGRESS_WAIT_TIME):
        self.wait_time = wait_time
        self._lock = threading.Lock()
        self._bars: Dict[str, Counter] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def attach(self, name: str, counter: Counter) -> None:
        with self._lock:
            self._bars[name] = counter

    def detach(self, name: str) -> None:
        with self._lock:
            self._bars.pop(name, None)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='dump-progress', daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None

    def _run(self):
        while not self._stop.wait(self.wait_time):
            self.report()

    def report(self) -> None:
        with self._lock:
            bars = list(self._bars.items())
        for name, counter in bars:
            logger.info(f"📊 {name}  {counter.progress()}")
