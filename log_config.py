# log_config.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from datetime import datetime, timezone
from typing import List, Any, Optional

AUDIT_HEADER = ["timestamp", "event", "failure_count", "locked", "down", "detail"]


class _DropDebugFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno > logging.DEBUG


def setup_console_logger(level: str = "INFO", environment: str = "development"):
    """
    Sets up the root logger for console output.
    DEBUG output is suppressed in production regardless of the level.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    if not any(getattr(h, "_poolwatch", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler._poolwatch = True
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        if environment == "production":
            handler.addFilter(_DropDebugFilter())
        logger.addHandler(handler)

    return logger


class AsyncAuditLogger:
    """
    Non-blocking CSV audit trail for health transitions and manual resets.
    Decouples disk I/O from the polling loop using an asyncio Queue.
    """
    def __init__(self, filepath: str):
        self.filepath = filepath
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Initializes the audit file (writes the header if new) and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0:
            async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(AUDIT_HEADER)
        self._worker_task = asyncio.create_task(self._writer_worker())

    def record(self, event: str, failure_count: int, locked: bool, down: bool, detail: str = ""):
        """
        Queues one audit row. Safe to call from synchronous code on the event loop.
        """
        row = [datetime.now(timezone.utc).isoformat(), event, failure_count, locked, down, detail]
        self._queue.put_nowait(row)

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            row = await self._queue.get()
            try:
                await self._write_row(row)
            except Exception as e:
                # Fall back to stderr if disk I/O fails
                print(f"AUDIT LOGGING FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()

    async def _write_row(self, row: List[Any]):
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            writer = AsyncWriter(f, dialect='unix')
            await writer.writerow(row)

    async def flush(self):
        if self._worker_task is not None:
            await self._queue.join()

    async def stop(self):
        await self.flush()
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
