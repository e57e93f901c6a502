from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ContractLocks:
    """One ReadWriteLock per contract id; different contracts never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, ReadWriteLock] = {}

    def for_contract(self, contract_id: str) -> ReadWriteLock:
        with self._guard:
            lock = self._locks.get(contract_id)
            if lock is None:
                lock = self._locks[contract_id] = ReadWriteLock()
            return lock

    @contextmanager
    def read(self, contract_id: str) -> Iterator[None]:
        with self.for_contract(contract_id).read():
            yield

    @contextmanager
    def write_many(self, contract_ids: Iterable[str]) -> Iterator[None]:
        """Write-lock several contracts, always in sorted order to avoid deadlock."""
        with ExitStack() as stack:
            for cid in sorted(set(contract_ids)):
                stack.enter_context(self.for_contract(cid).write())
            yield
