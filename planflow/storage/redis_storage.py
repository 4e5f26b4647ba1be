# planflow/storage/redis_storage.py
import logging
from datetime import datetime, UTC
from typing import Optional, List, Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from .base import JobStorage
from ..common.job import Job
from ..common.states import (
    ALL_STATES,
    ALLOWED_TRANSITIONS,
    BaseState,
    ActiveState,
    DelayedState,
    PendingState,
    StalledState,
)
from ..serialization.base import BaseSerializer
from ..serialization.json_serializer import JsonSerializer

logger = logging.getLogger(__name__)

# Higher priority first, FIFO within a priority (seq is a per-queue counter).
_PENDING_ZADD = """
local function push_pending(prefix, job_key, job_id)
    local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0')
    local seq = redis.call('INCR', prefix .. 'seq')
    redis.call('ZADD', prefix .. 'pending', -priority * 10000000000 + seq, job_id)
end
"""

_ADD_SCRIPT = _PENDING_ZADD + """
local job_key = KEYS[1]
local prefix = KEYS[2]
local job_id = ARGV[1]
local delayed_score = ARGV[2]

if redis.call('EXISTS', job_key) == 1 then
    return 0
end
for i = 3, #ARGV, 2 do
    redis.call('HSET', job_key, ARGV[i], ARGV[i + 1])
end
if redis.call('HGET', job_key, 'status') == 'delayed' then
    redis.call('ZADD', prefix .. 'delayed', delayed_score, job_id)
else
    push_pending(prefix, job_key, job_id)
end
return 1
"""

_DEQUEUE_SCRIPT = """
local prefix = KEYS[1]
local now_ms = ARGV[1]

if redis.call('EXISTS', prefix .. 'paused') == 1 then
    return false
end
local popped = redis.call('ZPOPMIN', prefix .. 'pending')
if #popped == 0 then
    return false
end
local job_id = popped[1]
local job_key = prefix .. 'job:' .. job_id
for i = 2, #ARGV, 2 do
    redis.call('HSET', job_key, ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', prefix .. 'active', now_ms, job_id)
return job_id
"""

_SET_STATE_SCRIPT = _PENDING_ZADD + """
local job_key = KEYS[1]
local prefix = KEYS[2]
local job_id = ARGV[1]
local new_state = ARGV[2]
local expected_old_state = ARGV[3]
local score = ARGV[4]
local allowed_old_states = ',' .. ARGV[5] .. ','
local lock_token = ARGV[6]

local current_state = redis.call('HGET', job_key, 'status')
if not current_state then
    return 0
end
if expected_old_state ~= '' and current_state ~= expected_old_state then
    return 0
end
if not string.find(allowed_old_states, ',' .. current_state .. ',', 1, true) then
    return 0
end
if lock_token ~= '' and redis.call('HGET', job_key, 'lock_token') ~= lock_token then
    return 0
end

redis.call('ZREM', prefix .. current_state, job_id)
redis.call('HSET', job_key, 'status', new_state)
for i = 7, #ARGV, 2 do
    redis.call('HSET', job_key, ARGV[i], ARGV[i + 1])
end
if new_state == 'pending' then
    push_pending(prefix, job_key, job_id)
elseif score ~= '' then
    redis.call('ZADD', prefix .. new_state, score, job_id)
end
return 1
"""

_PROMOTE_SCRIPT = _PENDING_ZADD + """
local prefix = KEYS[1]
local now_ms = ARGV[1]
local state_data = ARGV[2]

local due = redis.call('ZRANGEBYSCORE', prefix .. 'delayed', '-inf', now_ms)
for _, job_id in ipairs(due) do
    local job_key = prefix .. 'job:' .. job_id
    redis.call('ZREM', prefix .. 'delayed', job_id)
    redis.call('HSET', job_key, 'status', 'pending', 'state_data', state_data)
    push_pending(prefix, job_key, job_id)
end
return due
"""

_UPDATE_FIELD_SCRIPT = """
local job_key = KEYS[1]
local lock_token = ARGV[1]

if redis.call('EXISTS', job_key) == 0 then
    return 0
end
if lock_token ~= '' and redis.call('HGET', job_key, 'lock_token') ~= lock_token then
    return 0
end
redis.call('HSET', job_key, ARGV[2], ARGV[3])
return 1
"""

_CANCEL_SCRIPT = """
local job_key = KEYS[1]
local prefix = KEYS[2]
local job_id = ARGV[1]
local score = ARGV[2]

local current_state = redis.call('HGET', job_key, 'status')
if current_state ~= 'pending' and current_state ~= 'delayed' then
    return 0
end
redis.call('ZREM', prefix .. current_state, job_id)
redis.call('HSET', job_key, 'status', 'cancelled')
for i = 3, #ARGV, 2 do
    redis.call('HSET', job_key, ARGV[i], ARGV[i + 1])
end
redis.call('ZADD', prefix .. 'cancelled', score, job_id)
return 1
"""

_INT_FIELDS = {"priority", "attempts", "max_attempts", "backoff_ms", "stalled_count", "progress"}
_OPTIONAL_INT_FIELDS = {"timeout_ms"}
_DATETIME_FIELDS = {"created_at", "started_at", "finished_at", "heartbeat_at"}
_VALUE_FIELDS = {"payload", "result", "state_data"}
# States that live in a sorted set; "stalled" is transient and has none.
_INDEXED_STATES = [s for s in ALL_STATES if s != StalledState.NAME]


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisStorage(JobStorage):
    def __init__(
        self,
        queue_name: str = "default",
        url: Optional[str] = None,
        connection_pool=None,
        redis_client=None,
        serializer: Optional[BaseSerializer] = None,
    ):
        if redis_client is not None:
            self.redis_client = redis_client
        elif connection_pool is not None:
            self.redis_client = redis.Redis(
                connection_pool=connection_pool, decode_responses=True
            )
        elif url:
            self.redis_client = redis.Redis.from_url(url, decode_responses=True)
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        self.queue_name = queue_name
        self.prefix = f"planflow:{queue_name}:"
        self.serializer = serializer or JsonSerializer()

        self._add_script = self.redis_client.register_script(_ADD_SCRIPT)
        self._dequeue_script = self.redis_client.register_script(_DEQUEUE_SCRIPT)
        self._set_state_script = self.redis_client.register_script(_SET_STATE_SCRIPT)
        self._promote_script = self.redis_client.register_script(_PROMOTE_SCRIPT)
        self._cancel_script = self.redis_client.register_script(_CANCEL_SCRIPT)
        self._update_field_script = self.redis_client.register_script(_UPDATE_FIELD_SCRIPT)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    def _state_key(self, state_name: str) -> str:
        return f"{self.prefix}{state_name}"

    # --- Hash (de)serialization ---

    def _serialize_field(self, name: str, value: Any) -> str:
        if name in _VALUE_FIELDS:
            return self.serializer.serialize_value(value)
        if value is None:
            return ""
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    def _serialize_job_for_storage(self, job: Job) -> Dict[str, str]:
        return {key: self._serialize_field(key, value) for key, value in job.__dict__.items()}

    def _deserialize_job_from_storage(self, job_data: Dict[str, str]) -> Job:
        job_dict: Dict[str, Any] = {}
        for key, value in job_data.items():
            if isinstance(key, bytes): key = key.decode("utf-8")
            if isinstance(value, bytes): value = value.decode("utf-8")
            if key in _VALUE_FIELDS:
                job_dict[key] = self.serializer.deserialize_value(value)
            elif key in _INT_FIELDS:
                job_dict[key] = int(value or 0)
            elif key in _OPTIONAL_INT_FIELDS:
                job_dict[key] = int(value) if value else None
            elif key in _DATETIME_FIELDS:
                job_dict[key] = datetime.fromisoformat(value) if value else None
            elif key in ("failure_reason", "lock_token"):
                job_dict[key] = value or None
            else:
                job_dict[key] = value
        if job_dict.get("state_data") is None:
            job_dict["state_data"] = {}
        return Job(**job_dict)

    def _state_args(self, state: BaseState) -> List[str]:
        args = ["state_data", self.serializer.serialize_value(state.serialize_data())]
        for name, value in state.job_fields().items():
            args.extend([name, self._serialize_field(name, value)])
        return args

    # --- JobStorage ---

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def add(self, job: Job) -> bool:
        delayed_score = ""
        if job.status == DelayedState.NAME:
            delayed_score = str(_ms(datetime.fromisoformat(job.state_data["enqueue_at"])))
        args = [job.id, delayed_score]
        for key, value in self._serialize_job_for_storage(job).items():
            args.extend([key, value])
        result = await self._add_script(keys=[self._job_key(job.id), self.prefix], args=args)
        return result == 1

    async def dequeue(self, server_id: str, worker_id: str) -> Optional[Job]:
        state = ActiveState(server_id, worker_id)
        args = [str(_ms(state.created_at)), "status", state.name] + self._state_args(state)
        job_id = await self._dequeue_script(keys=[self.prefix], args=args)
        if not job_id:
            return None
        return await self.get_job_data(job_id)

    async def set_job_state(
        self,
        job_id: str,
        state: BaseState,
        expected_old_state: Optional[str] = None,
        lock_token: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        allowed = [old for old, new in ALLOWED_TRANSITIONS.items() if state.name in new]
        if isinstance(state, DelayedState):
            score = str(_ms(state.enqueue_at))
        elif isinstance(state, StalledState):
            score = ""
        else:
            score = str(_ms(state.created_at))
        args = [job_id, state.name, expected_old_state or "", score, ",".join(allowed), lock_token or ""]
        args += self._state_args(state)
        for name, value in (fields or {}).items():
            args.extend([name, self._serialize_field(name, value)])
        result = await self._set_state_script(keys=[self._job_key(job_id), self.prefix], args=args)
        return result == 1

    async def get_job_data(self, job_id: str) -> Optional[Job]:
        job_data = await self.redis_client.hgetall(self._job_key(job_id))
        if not job_data:
            return None
        return self._deserialize_job_from_storage(job_data)

    async def update_job_field(
        self, job_id: str, field_name: str, value: Any, lock_token: Optional[str] = None
    ) -> bool:
        result = await self._update_field_script(
            keys=[self._job_key(job_id)],
            args=[lock_token or "", field_name, self._serialize_field(field_name, value)],
        )
        return result == 1

    async def heartbeat(self, job_id: str, lock_token: Optional[str] = None) -> None:
        now = datetime.now(UTC)
        active_key = self._state_key(ActiveState.NAME)
        if await self.redis_client.zscore(active_key, job_id) is None:
            return
        if lock_token and await self.redis_client.hget(self._job_key(job_id), "lock_token") != lock_token:
            return
        async with self.redis_client.pipeline() as pipe:
            pipe.zadd(active_key, {job_id: _ms(now)}, xx=True)
            pipe.hset(self._job_key(job_id), "heartbeat_at", now.isoformat())
            await pipe.execute()

    async def promote_delayed(self, now: Optional[datetime] = None) -> List[str]:
        now = now or datetime.now(UTC)
        state = PendingState(reason="Delay elapsed", created_at=now)
        promoted = await self._promote_script(
            keys=[self.prefix],
            args=[str(_ms(now)), self.serializer.serialize_value(state.serialize_data())],
        )
        return list(promoted or [])

    async def get_stalled_jobs(self, heartbeat_before: datetime) -> List[Job]:
        job_ids = await self.redis_client.zrangebyscore(
            self._state_key(ActiveState.NAME), "-inf", _ms(heartbeat_before)
        )
        jobs = []
        for job_id in job_ids:
            job = await self.get_job_data(job_id)
            if job:
                jobs.append(job)
        return jobs

    async def cancel(self, job_id: str, state: BaseState) -> bool:
        result = await self._cancel_script(
            keys=[self._job_key(job_id), self.prefix],
            args=[job_id, str(_ms(state.created_at))] + self._state_args(state),
        )
        return result == 1

    async def get_state_counts(self) -> Dict[str, int]:
        async with self.redis_client.pipeline(transaction=False) as pipe:
            for state_name in _INDEXED_STATES:
                pipe.zcard(self._state_key(state_name))
            results = await pipe.execute()
        counts = {state: 0 for state in ALL_STATES}
        counts.update({state: int(count) for state, count in zip(_INDEXED_STATES, results)})
        return counts

    async def _remove(self, state_name: str, job_ids: List[str]) -> int:
        if not job_ids:
            return 0
        async with self.redis_client.pipeline() as pipe:
            for job_id in job_ids:
                pipe.delete(self._job_key(job_id))
            pipe.zrem(self._state_key(state_name), *job_ids)
            await pipe.execute()
        return len(job_ids)

    async def trim(self, state_name: str, keep: int) -> int:
        # Scores are finish times, so the oldest records come first.
        job_ids = await self.redis_client.zrange(self._state_key(state_name), 0, -(keep + 1))
        return await self._remove(state_name, job_ids)

    async def clean(self, state_name: str, finished_before: datetime) -> int:
        job_ids = await self.redis_client.zrangebyscore(
            self._state_key(state_name), "-inf", _ms(finished_before)
        )
        return await self._remove(state_name, job_ids)

    async def pause(self) -> None:
        await self.redis_client.set(f"{self.prefix}paused", "1")

    async def resume(self) -> None:
        await self.redis_client.delete(f"{self.prefix}paused")

    async def is_paused(self) -> bool:
        return bool(await self.redis_client.exists(f"{self.prefix}paused"))

    async def close(self) -> None:
        await self.redis_client.aclose()
