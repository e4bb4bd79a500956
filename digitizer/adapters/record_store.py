# User value: This file keeps each digitization record durable and its status moving only forward.
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
import redis.asyncio as aioredis

from digitizer.contract import RECORD_STATUSES
from digitizer.errors import ConflictError, NotFoundError, ValidationError
from digitizer.models import WorkRecord
from digitizer.status_machine import is_allowed_transition, is_terminal
from digitizer.utils.retry_policy import REDIS_POLICY, RetryPolicy, run_with_retry

logger = logging.getLogger("digitizer.adapters.record_store")

_TRANSIENT = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


def _encode_fields(fields: Dict[str, Any]) -> Tuple[Dict[str, str], List[str]]:
    mapping: Dict[str, str] = {}
    removed: List[str] = []
    for key, value in fields.items():
        if value is None:
            removed.append(key)
        elif isinstance(value, bool):
            mapping[key] = "1" if value else "0"
        elif isinstance(value, (list, tuple)):
            mapping[key] = json.dumps(list(value), ensure_ascii=False)
        else:
            mapping[key] = str(value)
    return mapping, removed


class WorkRecordStore:
    """
    Work records in Redis.

    digitization:<id>              HASH  the record
    digitizations:index            ZSET  id -> created_at, all records
    digitizations:status:<status>  ZSET  id -> created_at, per status

    Status changes go through the status machine inside a WATCH/MULTI
    transaction, so a terminal record is never moved again.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        *,
        retry_policy: RetryPolicy = REDIS_POLICY,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.retry_policy = retry_policy
        self.clock = clock

    @staticmethod
    def key(record_id: str) -> str:
        return f"digitization:{record_id}"

    INDEX_KEY = "digitizations:index"

    @staticmethod
    def status_key(status: str) -> str:
        return f"digitizations:status:{status}"

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def _with_retry(self, operation: str, record_id: str, fn):
        def _on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "record_store_retry op=%s record_id=%s attempt=%s/%s error=%s",
                operation,
                record_id,
                attempt,
                self.retry_policy.max_retries,
                exc,
            )

        return await run_with_retry(
            operation=operation,
            target=record_id,
            fn=fn,
            retryable=_TRANSIENT,
            policy=self.retry_policy,
            on_retry=_on_retry,
        )

    # ------------------------------------------------------------------
    # CREATE / READ
    # ------------------------------------------------------------------

    async def create(self, record: WorkRecord) -> WorkRecord:
        now = self._now_ms()
        record.created_at = now
        record.updated_at = now
        key = self.key(record.id)

        async def _create(pipe):
            if await pipe.exists(key):
                raise ConflictError(f"Work record '{record.id}' already exists.")
            pipe.multi()
            pipe.hset(key, mapping=record.to_redis())
            pipe.zadd(self.INDEX_KEY, {record.id: record.created_at})
            pipe.zadd(self.status_key(record.status), {record.id: record.created_at})

        await self._with_retry("create", record.id, lambda: self.redis.transaction(_create, key))
        logger.info("record_created record_id=%s status=%s", record.id, record.status)
        return record

    async def get(self, record_id: str) -> Optional[WorkRecord]:
        raw = await self.redis.hgetall(self.key(record_id))
        if not raw:
            return None
        return WorkRecord.from_redis(raw)

    async def require(self, record_id: str) -> WorkRecord:
        record = await self.get(record_id)
        if record is None:
            raise NotFoundError("Digitization", record_id)
        return record

    # ------------------------------------------------------------------
    # UPDATE
    # ------------------------------------------------------------------

    async def transition(self, record_id: str, status: str, *, context: str = "RECORD_STORE", **fields) -> bool:
        """
        Move a record to `status` and write `fields` in the same transaction.

        Returns False (and writes nothing) when the status machine refuses
        the move.
        """
        key = self.key(record_id)
        mapping, removed = _encode_fields(fields)

        async def _transition(pipe):
            raw = await pipe.hgetall(key)
            if not raw:
                raise NotFoundError("Digitization", record_id)
            current = raw.get("status")
            if not is_allowed_transition(current, status):
                return False, current

            created_at = int(raw.get("created_at") or 0)
            pipe.multi()
            pipe.hset(key, mapping={**mapping, "status": status, "updated_at": str(self._now_ms())})
            if removed:
                pipe.hdel(key, *removed)
            if current != status:
                pipe.zrem(self.status_key(current), record_id)
                pipe.zadd(self.status_key(status), {record_id: created_at})
            return True, current

        ok, previous = await self._with_retry(
            "transition",
            record_id,
            lambda: self.redis.transaction(_transition, key, value_from_callable=True),
        )
        if ok:
            logger.info("record_status_changed context=%s record_id=%s from=%s to=%s", context, record_id, previous, status)
        else:
            logger.warning(
                "record_status_transition_blocked context=%s record_id=%s current=%s target=%s",
                context,
                record_id,
                previous,
                status,
            )
        return ok

    async def update_fields(self, record_id: str, *, context: str = "RECORD_STORE", **fields) -> bool:
        """Write non-status fields; refused once the record is terminal."""
        if "status" in fields:
            raise ValueError("use transition() to change status")
        key = self.key(record_id)
        mapping, removed = _encode_fields(fields)

        async def _update(pipe):
            current = await pipe.hget(key, "status")
            if current is None:
                raise NotFoundError("Digitization", record_id)
            if is_terminal(current):
                return False
            pipe.multi()
            pipe.hset(key, mapping={**mapping, "updated_at": str(self._now_ms())})
            if removed:
                pipe.hdel(key, *removed)
            return True

        ok = await self._with_retry(
            "update_fields",
            record_id,
            lambda: self.redis.transaction(_update, key, value_from_callable=True),
        )
        if not ok:
            logger.warning("record_update_blocked_terminal context=%s record_id=%s", context, record_id)
        return ok

    # ------------------------------------------------------------------
    # DELETE / LIST
    # ------------------------------------------------------------------

    async def delete(self, record_id: str) -> bool:
        key = self.key(record_id)

        async def _delete(pipe):
            status = await pipe.hget(key, "status")
            if status is None:
                return False
            pipe.multi()
            pipe.delete(key)
            pipe.zrem(self.INDEX_KEY, record_id)
            pipe.zrem(self.status_key(status), record_id)
            return True

        deleted = await self._with_retry(
            "delete",
            record_id,
            lambda: self.redis.transaction(_delete, key, value_from_callable=True),
        )
        if deleted:
            logger.info("record_deleted record_id=%s", record_id)
        return deleted

    async def list_records(self, *, status: Optional[str] = None, offset: int = 0, limit: int = 10) -> Tuple[List[WorkRecord], int]:
        """Records newest first, optionally filtered by status, with the total count."""
        if status is not None and status not in RECORD_STATUSES:
            raise ValidationError(f"Unknown status filter '{status}'.")
        index = self.status_key(status) if status else self.INDEX_KEY
        offset = max(0, int(offset))
        limit = max(1, int(limit))

        total = await self.redis.zcard(index)
        ids = await self.redis.zrevrange(index, offset, offset + limit - 1)
        records = []
        for record_id in ids:
            record = await self.get(record_id)
            if record is not None:
                records.append(record)
        return records, total
