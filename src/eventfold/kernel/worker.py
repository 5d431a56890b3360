"""
Partition workers - one blocking pull loop per log partition

A worker reads its partition from the last committed checkpoint and hands
each entry to a handler, strictly in offset order. The handler does the
work and commits the checkpoint; the worker only tracks where to read
next. Partitions run in parallel threads since ordering only matters
within a resource, and a resource never spans partitions.

Shutdown is cooperative: stop() sets an event that is checked between
entries and while waiting for new ones, so an in-flight unit always
finishes and commits before the thread exits.
"""

import threading
from collections.abc import Callable
from typing import Any

from eventfold.kernel.envelopes import LogEntry
from eventfold.kernel.log_store import SQLitePartitionedLog
from eventfold.kernel.logging import get_logger
from eventfold.kernel.metrics import consumer_lag
from eventfold.kernel.read_store import SQLiteReadStore
from eventfold.kernel.retry import retry_on_transient_error

logger = get_logger(__name__)

EntryHandler = Callable[[LogEntry], Any]


class PartitionWorker:
    """
    Sequential consumer of a single partition

    Args:
        name: Worker name for logs ("validator", "materializer")
        log: Log to consume
        partition: Partition number
        handler: Processes one entry and commits its checkpoint
        checkpoints: Store holding the committed offsets
        stop_event: Shared cancellation flag
        poll_interval: Seconds to wait when the partition is drained
        batch_size: Entries fetched per poll
    """

    def __init__(
        self,
        name: str,
        log: SQLitePartitionedLog,
        partition: int,
        handler: EntryHandler,
        checkpoints: SQLiteReadStore,
        stop_event: threading.Event,
        poll_interval: float = 0.2,
        batch_size: int = 100,
    ) -> None:
        self.name = name
        self.log = log
        self.partition = partition
        self.handler = handler
        self.checkpoints = checkpoints
        self.stop_event = stop_event
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.processed = 0
        self.error: BaseException | None = None

    @retry_on_transient_error()
    def _fetch(self, offset: int) -> list[LogEntry]:
        return self.log.read(self.partition, offset, self.batch_size)

    def run_once(self) -> int:
        """
        Drain whatever is available right now, then return

        Returns:
            Number of entries handled
        """
        handled = 0
        offset = self.checkpoints.load_checkpoint(self.log.log_name, self.partition).offset
        while not self.stop_event.is_set():
            batch = self._fetch(offset)
            if not batch:
                break
            for entry in batch:
                if self.stop_event.is_set():
                    break
                self.handler(entry)
                offset = entry.offset + 1
                handled += 1
        self.processed += handled
        consumer_lag.labels(log_name=self.log.log_name, partition=str(self.partition)).set(
            self.log.head(self.partition) - offset
        )
        return handled

    def run(self) -> None:
        """Loop until stopped; waits poll_interval whenever the partition is drained"""
        logger.info(
            "Partition worker started",
            worker=self.name,
            log_name=self.log.log_name,
            partition=self.partition,
        )
        try:
            while not self.stop_event.is_set():
                if self.run_once() == 0:
                    self.stop_event.wait(self.poll_interval)
        except Exception as e:
            self.error = e
            logger.error(
                "Partition worker failed",
                worker=self.name,
                log_name=self.log.log_name,
                partition=self.partition,
                error=str(e),
                exc_info=True,
            )
            raise
        finally:
            logger.info(
                "Partition worker stopped",
                worker=self.name,
                partition=self.partition,
                processed=self.processed,
            )


class WorkerGroup:
    """
    One PartitionWorker thread per partition of a log

    Example:
        group = WorkerGroup("validator", command_log, validator.handle_entry, store)
        group.start()
        ...
        group.stop()
    """

    def __init__(
        self,
        name: str,
        log: SQLitePartitionedLog,
        handler: EntryHandler,
        checkpoints: SQLiteReadStore,
        poll_interval: float = 0.2,
        batch_size: int = 100,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.name = name
        self.stop_event = stop_event or threading.Event()
        self.workers = [
            PartitionWorker(
                name,
                log,
                partition,
                handler,
                checkpoints,
                self.stop_event,
                poll_interval=poll_interval,
                batch_size=batch_size,
            )
            for partition in range(log.partitions)
        ]
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            raise RuntimeError(f"{self.name} workers already started")
        for worker in self.workers:
            thread = threading.Thread(
                target=worker.run,
                name=f"{self.name}-p{worker.partition}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def run_once(self) -> int:
        """Drain every partition once in the calling thread"""
        return sum(worker.run_once() for worker in self.workers)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Signal all workers and wait for their in-flight units to finish"""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    @property
    def failed(self) -> list[PartitionWorker]:
        return [worker for worker in self.workers if worker.error is not None]

    def is_alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)
