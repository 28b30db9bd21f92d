"""
Per-queue job logs kept in Redis.

Each worker logs through a `job.{queue}` logger. Records go to the console
and to a capped Redis list, so recent activity for a queue can be read back
without shell access to the worker hosts.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from config import JOB_LOG_MAX_ENTRIES, JOB_LOG_TTL

logger = logging.getLogger(__name__)

JOB_RECORD_FIELDS = ("job_id", "attempt")


def job_log_key(queue_name: str) -> str:
    return f"job:logs:{queue_name}"


def _decode_entry(raw) -> Optional[Dict]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


class RedisJobLogHandler(logging.Handler):
    """
    Logging handler that pushes JSON entries onto `job:logs:{queue}`.

    Algorithm:
        1. Build an entry from the record (level, message, source location,
           plus job_id/attempt when the caller passed them as `extra`)
        2. Schedule LPUSH + LTRIM + EXPIRE on the running event loop
        3. Track the write task so callers can await pending writes
    """

    def __init__(self, redis_client, queue_name: str, max_logs: int = JOB_LOG_MAX_ENTRIES, ttl: int = JOB_LOG_TTL):
        super().__init__()
        self.redis_client = redis_client
        self.queue_name = queue_name
        self.key = job_log_key(queue_name)
        self.max_logs = max_logs
        self.ttl = ttl
        self._writes = set()

    def _entry(self, record: logging.LogRecord) -> Dict:
        entry = {
            "timestamp": record.created,
            "logged_at": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": self.format(record),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
            "queue": self.queue_name,
        }
        entry.update({name: getattr(record, name) for name in JOB_RECORD_FIELDS if hasattr(record, name)})
        return entry

    def emit(self, record):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop, console only
            return

        try:
            task = loop.create_task(self._push(json.dumps(self._entry(record), default=str)))
        except Exception:
            self.handleError(record)
            return
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _push(self, payload: str):
        try:
            await self.redis_client.lpush(self.key, payload)
            await self.redis_client.ltrim(self.key, 0, self.max_logs - 1)
            await self.redis_client.expire(self.key, self.ttl)
        except Exception as e:
            logger.warning(f"Could not store log line for queue {self.queue_name}: {e}")

    async def flush_pending(self):
        """Wait for scheduled Redis writes to finish."""
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)


def get_job_logger(queue_name: str, redis_client, level: str = "INFO") -> logging.Logger:
    """
    Logger `job.{queue_name}` writing to Redis and the console.

    Calling it again for the same queue replaces the handlers, so a rebuilt
    pipeline does not duplicate output.
    """
    numeric_level = getattr(logging, level)
    job_logger = logging.getLogger(f"job.{queue_name}")
    job_logger.handlers.clear()
    job_logger.setLevel(numeric_level)
    job_logger.propagate = False

    redis_handler = RedisJobLogHandler(redis_client, queue_name)
    redis_handler.setFormatter(logging.Formatter("%(message)s"))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(asctime)s - JOB[%(name)s] - %(levelname)s - %(message)s"))

    for handler in (redis_handler, console_handler):
        handler.setLevel(numeric_level)
        job_logger.addHandler(handler)

    return job_logger


async def get_job_logs(redis_client, queue_name: str, limit: int = 100) -> List[Dict]:
    """Recent entries for a queue, newest first. Unparseable entries are skipped."""
    raw_entries = await redis_client.lrange(job_log_key(queue_name), 0, limit - 1)
    return [entry for entry in map(_decode_entry, raw_entries) if entry is not None]


async def clear_job_logs(redis_client, queue_name: str) -> bool:
    return bool(await redis_client.delete(job_log_key(queue_name)))


async def get_job_log_stats(redis_client, queue_name: str) -> Dict:
    key = job_log_key(queue_name)
    total = await redis_client.llen(key)
    ttl = await redis_client.ttl(key)
    latest = _decode_entry(await redis_client.lindex(key, 0)) if total else None

    return {
        "queue": queue_name,
        "total_logs": total,
        "ttl_seconds": ttl,
        "ttl_hours": round(ttl / 3600, 2) if ttl > 0 else 0,
        "most_recent_log": latest.get("logged_at") if latest else None,
        "most_recent_message": latest.get("message") if latest else None,
    }
