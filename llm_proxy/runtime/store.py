from __future__ import annotations

import asyncio
import logging
import math
import random
import re
import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from llm_proxy.errors import StoreValidationError
from llm_proxy.runtime.bounded_log import BoundedLog
from llm_proxy.utils.persistence import YamlKeyStore
from llm_proxy.utils.url_utils import strip_trailing_slash

MAX_LOG_ENTRIES = 1000
DEFAULT_LOGS_LIMIT = 50
CONFIG_KEY = "config"
LOGS_KEY = "logs"
CONFIG_FIELDS = ("targetApiUrl", "adminPassword")

_ID_ALPHABET = string.digits + string.ascii_lowercase
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class OperationalStats:
    total_requests: int
    success_rate: int
    avg_response_time: int
    current_target: str | None
    last_updated: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successRate": self.success_rate,
            "avgResponseTime": self.avg_response_time,
            "currentTarget": self.current_target,
            "lastUpdated": self.last_updated,
        }


class OperationalStore(Protocol):
    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def get_config(self) -> dict[str, Any]: ...

    async def set_config(self, partial: Any) -> dict[str, Any]: ...

    async def append_log(self, entry: Any) -> dict[str, Any]: ...

    async def get_logs(self, limit: Any = None) -> list[dict[str, Any]]: ...

    async def clear_logs(self) -> None: ...

    async def get_stats(self) -> OperationalStats: ...


def utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ID_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_log_id() -> str:
    # Time prefix plus a short random suffix; collisions are tolerated.
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return f"{_to_base36(int(time.time() * 1000))}{suffix}"


def parse_logs_limit(raw: Any) -> int:
    if raw is None or isinstance(raw, bool):
        return DEFAULT_LOGS_LIMIT
    # Leading integer only, so "3.5" reads as 3 and "10abc" as 10.
    match = _LEADING_INT.match(str(raw))
    if match is None:
        return DEFAULT_LOGS_LIMIT
    limit = int(match.group(1))
    return limit if limit > 0 else DEFAULT_LOGS_LIMIT


def _normalize_config(config: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(config)
    target = normalized.get("targetApiUrl")
    if isinstance(target, str):
        normalized["targetApiUrl"] = strip_trailing_slash(target)
    return normalized


def merge_config(existing: dict[str, Any], partial: Any) -> dict[str, Any]:
    if not isinstance(partial, dict):
        raise StoreValidationError("Invalid config payload")
    for field in CONFIG_FIELDS:
        value = partial.get(field)
        if value is not None and not isinstance(value, str):
            raise StoreValidationError(f"Invalid {field}")

    merged = dict(existing)
    for field in CONFIG_FIELDS:
        if field not in partial:
            continue
        value = partial[field]
        if value is None:
            merged.pop(field, None)
        else:
            merged[field] = value
    merged["updatedAt"] = utc_timestamp()
    return _normalize_config(merged)


def build_log_entry(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise StoreValidationError("Missing required fields")
    if not payload.get("endpoint") or not payload.get("timestamp"):
        raise StoreValidationError("Missing required fields")
    fields = {
        key: value
        for key, value in payload.items()
        if key not in {"id", "timestamp"}
    }
    return {"id": generate_log_id(), **fields, "timestamp": utc_timestamp()}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _is_success_status(status: Any) -> bool:
    if isinstance(status, bool) or not isinstance(status, (int, float)):
        return False
    return 200 <= status < 300


def _duration_of(entry: dict[str, Any]) -> float:
    duration = entry.get("duration")
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        return 0.0
    return float(duration)


def compute_stats(
    config: dict[str, Any], logs: list[dict[str, Any]]
) -> OperationalStats:
    total = len(logs)
    if total:
        successful = sum(1 for entry in logs if _is_success_status(entry.get("status")))
        success_rate = _round_half_up(successful / total * 100)
        avg_response_time = _round_half_up(
            sum(_duration_of(entry) for entry in logs) / total
        )
    else:
        success_rate = 0
        avg_response_time = 0
    return OperationalStats(
        total_requests=total,
        success_rate=success_rate,
        avg_response_time=avg_response_time,
        current_target=config.get("targetApiUrl") or None,
        last_updated=config.get("updatedAt") or None,
    )


class _StoreState:
    """Config record plus bounded log; callers provide the serialization."""

    def __init__(
        self,
        *,
        capacity: int,
        config: dict[str, Any] | None = None,
        logs: list[dict[str, Any]] | None = None,
    ) -> None:
        self.config: dict[str, Any] = _normalize_config(config or {})
        self.logs: BoundedLog[dict[str, Any]] = BoundedLog(capacity, logs or [])

    def get_config(self) -> dict[str, Any]:
        return dict(self.config)

    def set_config(self, partial: Any) -> dict[str, Any]:
        self.config = merge_config(self.config, partial)
        return dict(self.config)

    def append_log(self, entry: Any) -> dict[str, Any]:
        record = build_log_entry(entry)
        self.logs.append(record)
        return dict(record)

    def get_logs(self, limit: Any) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self.logs.tail(parse_logs_limit(limit))]

    def clear_logs(self) -> None:
        self.logs.clear()

    def get_stats(self) -> OperationalStats:
        return compute_stats(self.config, self.logs.to_list())


class InMemoryOperationalStore:
    """Process-scoped store; state is lost when the process restarts."""

    def __init__(self, *, capacity: int = MAX_LOG_ENTRIES) -> None:
        self._lock = asyncio.Lock()
        self._state = _StoreState(capacity=capacity)

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get_config(self) -> dict[str, Any]:
        async with self._lock:
            return self._state.get_config()

    async def set_config(self, partial: Any) -> dict[str, Any]:
        async with self._lock:
            return self._state.set_config(partial)

    async def append_log(self, entry: Any) -> dict[str, Any]:
        async with self._lock:
            return self._state.append_log(entry)

    async def get_logs(self, limit: Any = None) -> list[dict[str, Any]]:
        async with self._lock:
            return self._state.get_logs(limit)

    async def clear_logs(self) -> None:
        async with self._lock:
            self._state.clear_logs()

    async def get_stats(self) -> OperationalStats:
        async with self._lock:
            return self._state.get_stats()


@dataclass(slots=True)
class _StoreCommand:
    operation: str
    argument: Any
    future: asyncio.Future[Any]


class DurableOperationalStore:
    """File-backed store owned by a single worker task.

    Every operation is queued and applied by the worker one at a time, so an
    append and the eviction it triggers can never interleave with another
    writer. Config changes are written before the caller is answered. Log
    changes are coalesced: the worker rewrites the log document once its queue
    drains, and `close()` flushes anything still pending.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        capacity: int = MAX_LOG_ENTRIES,
        queue_size: int = 4096,
    ) -> None:
        self._kv = YamlKeyStore(directory)
        self._capacity = max(1, int(capacity))
        self._queue: asyncio.Queue[_StoreCommand | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._worker_task: asyncio.Task[None] | None = None
        self._state: _StoreState | None = None
        self._handlers: dict[str, Callable[[_StoreState, Any], Any]] = {
            "get_config": lambda state, _: state.get_config(),
            "set_config": lambda state, partial: state.set_config(partial),
            "append_log": lambda state, entry: state.append_log(entry),
            "get_logs": lambda state, limit: state.get_logs(limit),
            "clear_logs": lambda state, _: state.clear_logs(),
            "get_stats": lambda state, _: state.get_stats(),
        }
        self._write_through_keys: dict[str, str] = {"set_config": CONFIG_KEY}
        self._deferred_keys: dict[str, str] = {
            "append_log": LOGS_KEY,
            "clear_logs": LOGS_KEY,
        }
        self._pending_keys: set[str] = set()

    @property
    def directory(self) -> Path:
        return self._kv.directory

    async def start(self) -> None:
        if self._worker_task is not None:
            return
        self._state = await asyncio.to_thread(self._load_state)
        self._worker_task = asyncio.create_task(
            self._run(), name="operational-store-writer"
        )
        logger.info(
            "store_started backend=durable path=%s logs=%d",
            self._kv.directory,
            len(self._state.logs),
        )

    async def close(self) -> None:
        if self._worker_task is None:
            return
        await self._queue.put(None)
        await self._worker_task
        self._worker_task = None

    async def get_config(self) -> dict[str, Any]:
        return await self._submit("get_config")

    async def set_config(self, partial: Any) -> dict[str, Any]:
        return await self._submit("set_config", partial)

    async def append_log(self, entry: Any) -> dict[str, Any]:
        return await self._submit("append_log", entry)

    async def get_logs(self, limit: Any = None) -> list[dict[str, Any]]:
        return await self._submit("get_logs", limit)

    async def clear_logs(self) -> None:
        await self._submit("clear_logs")

    async def get_stats(self) -> OperationalStats:
        return await self._submit("get_stats")

    async def _submit(self, operation: str, argument: Any = None) -> Any:
        if self._worker_task is None:
            msg = "Durable store is not running; call start() first."
            raise RuntimeError(msg)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._queue.put(_StoreCommand(operation, argument, future))
        return await future

    async def _run(self) -> None:
        while True:
            command = await self._queue.get()
            if command is None:
                self._queue.task_done()
                break
            try:
                result = await self._apply(command)
            except Exception as exc:
                if not command.future.done():
                    command.future.set_exception(exc)
            else:
                if not command.future.done():
                    command.future.set_result(result)
            finally:
                self._queue.task_done()
            if self._pending_keys and self._queue.empty():
                await self._flush_pending()
        await self._flush_pending()

    async def _flush_pending(self) -> None:
        state = self._state
        if state is None:
            return
        for key in sorted(self._pending_keys):
            document = self._document(state, key)
            try:
                await asyncio.to_thread(self._kv.write, key, document)
            except Exception as exc:
                # Left pending; the next drained queue or close() retries it.
                logger.warning(
                    "store_flush_failed key=%s path=%s error=%s",
                    key,
                    self._kv.path_for(key),
                    exc,
                )
                continue
            self._pending_keys.discard(key)

    async def _apply(self, command: _StoreCommand) -> Any:
        state = self._state
        if state is None:
            msg = "Durable store state was not loaded."
            raise RuntimeError(msg)
        handler = self._handlers[command.operation]
        deferred = self._deferred_keys.get(command.operation)
        if deferred is not None:
            result = handler(state, command.argument)
            self._pending_keys.add(deferred)
            return result

        key = self._write_through_keys.get(command.operation)
        if key is None:
            return handler(state, command.argument)

        previous_config = dict(state.config)
        result = handler(state, command.argument)
        try:
            await asyncio.to_thread(self._kv.write, key, self._document(state, key))
        except Exception:
            state.config = previous_config
            raise
        return result

    @staticmethod
    def _document(state: _StoreState, key: str) -> Any:
        if key == CONFIG_KEY:
            return dict(state.config)
        return state.logs.to_list()

    def _load_state(self) -> _StoreState:
        config = self._kv.load(CONFIG_KEY, default={})
        if not isinstance(config, dict):
            logger.warning(
                "store_document_invalid key=%s path=%s",
                CONFIG_KEY,
                self._kv.path_for(CONFIG_KEY),
            )
            config = {}
        logs = self._kv.load(LOGS_KEY, default=[])
        if not isinstance(logs, list):
            logger.warning(
                "store_document_invalid key=%s path=%s",
                LOGS_KEY,
                self._kv.path_for(LOGS_KEY),
            )
            logs = []
        return _StoreState(
            capacity=self._capacity,
            config=config,
            logs=[entry for entry in logs if isinstance(entry, dict)],
        )


def build_operational_store(
    *,
    backend: str,
    path: str | Path,
    name: str,
    capacity: int = MAX_LOG_ENTRIES,
) -> OperationalStore:
    if backend == "memory":
        logger.info("store_selected backend=memory capacity=%d", capacity)
        return InMemoryOperationalStore(capacity=capacity)
    return DurableOperationalStore(Path(path) / name, capacity=capacity)
