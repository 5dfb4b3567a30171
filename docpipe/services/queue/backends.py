from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from redis.asyncio import Redis

from docpipe.services.queue.models import ClaimResult, Job, JobStatus
from docpipe.services.store import store_errors


class QueueBackend(Protocol):
    async def add(self, job: Job) -> None:
        ...

    async def claim(
        self,
        queue_name: str,
        *,
        now_ms: int,
        concurrency: int,
        rate_max: int,
        rate_window_ms: int,
        lease_ms: int,
    ) -> ClaimResult:
        ...

    async def get(self, queue_name: str, job_id: str) -> Job | None:
        ...

    async def set_progress(self, queue_name: str, job_id: str, progress: int) -> bool:
        ...

    async def finish(self, job: Job, *, retention_s: int) -> None:
        ...

    async def reschedule(self, job: Job) -> None:
        ...

    async def counts(self, queue_name: str) -> dict[str, int]:
        ...

    async def recover_stalled(
        self, queue_name: str, *, now_ms: int, failed_retention_s: int
    ) -> tuple[list[str], list[str]]:
        # Returns (requeued ids, ids failed for exhausting max_attempts).
        ...

    async def prune(self, queue_name: str, *, status: JobStatus, older_than_ms: int) -> int:
        ...

    async def touch_heartbeat(self, name: str, *, now_ms: int, ttl_s: int) -> None:
        ...

    async def read_heartbeat(self, name: str) -> int | None:
        ...


@dataclass(frozen=True)
class _QueueKeys:
    waiting: str
    delayed: str
    active: str
    completed: str
    failed: str
    admitted: str
    seq: str
    job_prefix: str

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def finished(self, status: JobStatus) -> str:
        return self.completed if status == JobStatus.COMPLETED else self.failed


# Promote due delayed jobs, then hand out the best waiting job if the concurrency
# and throughput limits allow it. Everything happens in one script so two workers
# never claim the same job or overshoot either limit.
_CLAIM_LUA = r"""
local waiting = KEYS[1]
local delayed = KEYS[2]
local active = KEYS[3]
local admitted = KEYS[4]
local now_ms = tonumber(ARGV[1])
local concurrency = tonumber(ARGV[2])
local rate_max = tonumber(ARGV[3])
local rate_window_ms = tonumber(ARGV[4])
local job_prefix = ARGV[5]
local lease_ms = tonumber(ARGV[6])

local due = redis.call("ZRANGEBYSCORE", delayed, "-inf", ARGV[1])
for _, job_id in ipairs(due) do
  redis.call("ZREM", delayed, job_id)
  local fields = redis.call("HMGET", job_prefix .. job_id, "priority", "seq")
  if fields[1] then
    local rank = tonumber(fields[1]) * 1e15 + tonumber(fields[2] or 0)
    redis.call("ZADD", waiting, string.format("%.0f", rank), job_id)
    redis.call("HSET", job_prefix .. job_id, "status", "waiting")
  end
end

if redis.call("ZCARD", active) >= concurrency then
  return {0, "concurrency", 0}
end

if rate_max > 0 then
  redis.call("ZREMRANGEBYSCORE", admitted, "-inf", string.format("%.0f", now_ms - rate_window_ms))
  if redis.call("ZCARD", admitted) >= rate_max then
    local oldest = redis.call("ZRANGE", admitted, 0, 0, "WITHSCORES")
    local wait_ms = tonumber(oldest[2]) + rate_window_ms - now_ms
    return {0, "rate_limited", string.format("%.0f", wait_ms)}
  end
end

local popped = redis.call("ZPOPMIN", waiting)
if #popped == 0 then
  return {0, "empty", 0}
end
local job_id = popped[1]
local job_key = job_prefix .. job_id
if redis.call("EXISTS", job_key) == 0 then
  return {0, "empty", 0}
end

redis.call("ZADD", active, string.format("%.0f", now_ms + lease_ms), job_id)
if rate_max > 0 then
  redis.call("ZADD", admitted, ARGV[1], job_id .. ":" .. ARGV[1])
  redis.call("PEXPIRE", admitted, rate_window_ms)
end
redis.call("HINCRBY", job_key, "attempts", 1)
redis.call("HSET", job_key, "status", "active", "started_at_ms", ARGV[1])
return {1, job_id, 0}
"""

# Active jobs whose lease expired belong to a crashed worker. Jobs with attempts left go
# back in line; jobs that already used their last attempt become terminal failures.
_RECOVER_STALLED_LUA = r"""
local waiting = KEYS[1]
local active = KEYS[2]
local failed = KEYS[3]
local now_ms = ARGV[1]
local job_prefix = ARGV[2]
local retention_s = tonumber(ARGV[3])
local requeued = {}
local exhausted = {}
local expired = redis.call("ZRANGEBYSCORE", active, "-inf", now_ms)
for _, job_id in ipairs(expired) do
  redis.call("ZREM", active, job_id)
  local job_key = job_prefix .. job_id
  local fields = redis.call("HMGET", job_key, "priority", "seq", "attempts", "max_attempts")
  if fields[1] then
    if tonumber(fields[3] or 0) >= tonumber(fields[4] or 1) then
      redis.call("HSET", job_key, "status", "failed", "error", "stalled", "finished_at_ms", now_ms)
      redis.call("ZADD", failed, now_ms, job_id)
      redis.call("EXPIRE", job_key, retention_s)
      table.insert(exhausted, job_id)
    else
      local rank = tonumber(fields[1]) * 1e15 + tonumber(fields[2] or 0)
      redis.call("ZADD", waiting, string.format("%.0f", rank), job_id)
      redis.call("HSET", job_key, "status", "waiting")
      table.insert(requeued, job_id)
    end
  end
end
return {requeued, exhausted}
"""


class RedisQueueBackend:
    """Redis layout per queue: a hash per job plus sorted sets per status."""

    def __init__(self, redis_factory: Callable[[], Awaitable[Redis]], *, prefix: str) -> None:
        self._redis_factory = redis_factory
        self._prefix = prefix

    def _keys(self, queue_name: str) -> _QueueKeys:
        base = f"{self._prefix}:{queue_name}"
        return _QueueKeys(
            waiting=f"{base}:waiting",
            delayed=f"{base}:delayed",
            active=f"{base}:active",
            completed=f"{base}:completed",
            failed=f"{base}:failed",
            admitted=f"{base}:admitted",
            seq=f"{base}:seq",
            job_prefix=f"{base}:job:",
        )

    async def add(self, job: Job) -> None:
        redis = await self._redis_factory()
        keys = self._keys(job.queue_name)
        with store_errors("queue.add"):
            job.seq = int(await redis.incr(keys.seq))
            async with redis.pipeline(transaction=True) as pipe:
                pipe.hset(keys.job(job.id), mapping=job.to_hash())
                if job.status == JobStatus.DELAYED:
                    pipe.zadd(keys.delayed, {job.id: job.next_run_at_ms})
                else:
                    pipe.zadd(keys.waiting, {job.id: job.rank})
                await pipe.execute()

    async def claim(
        self,
        queue_name: str,
        *,
        now_ms: int,
        concurrency: int,
        rate_max: int,
        rate_window_ms: int,
        lease_ms: int,
    ) -> ClaimResult:
        redis = await self._redis_factory()
        keys = self._keys(queue_name)
        with store_errors("queue.claim"):
            result = await redis.eval(
                _CLAIM_LUA,
                4,
                keys.waiting,
                keys.delayed,
                keys.active,
                keys.admitted,
                now_ms,
                concurrency,
                rate_max,
                rate_window_ms,
                keys.job_prefix,
                lease_ms,
            )
        if int(result[0]) != 1:
            return ClaimResult(reason=str(result[1]), retry_after_ms=int(float(result[2] or 0)))
        job = await self.get(queue_name, str(result[1]))
        return ClaimResult(job=job, reason=None if job else "empty")

    async def get(self, queue_name: str, job_id: str) -> Job | None:
        redis = await self._redis_factory()
        data = await redis.hgetall(self._keys(queue_name).job(job_id))
        if not data:
            return None
        return Job.from_hash(data)

    async def set_progress(self, queue_name: str, job_id: str, progress: int) -> bool:
        redis = await self._redis_factory()
        job_key = self._keys(queue_name).job(job_id)
        if not await redis.exists(job_key):
            return False
        await redis.hset(job_key, "progress", str(int(progress)))
        return True

    async def finish(self, job: Job, *, retention_s: int) -> None:
        redis = await self._redis_factory()
        keys = self._keys(job.queue_name)
        with store_errors("queue.finish"):
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(keys.active, job.id)
                pipe.hset(keys.job(job.id), mapping=job.to_hash())
                pipe.zadd(keys.finished(job.status), {job.id: job.finished_at_ms or job.next_run_at_ms})
                # Finished jobs stay queryable for the retention window, then expire.
                pipe.expire(keys.job(job.id), max(1, int(retention_s)))
                await pipe.execute()

    async def reschedule(self, job: Job) -> None:
        redis = await self._redis_factory()
        keys = self._keys(job.queue_name)
        with store_errors("queue.reschedule"):
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(keys.active, job.id)
                pipe.hset(keys.job(job.id), mapping=job.to_hash())
                pipe.zadd(keys.delayed, {job.id: job.next_run_at_ms})
                await pipe.execute()

    async def counts(self, queue_name: str) -> dict[str, int]:
        redis = await self._redis_factory()
        keys = self._keys(queue_name)
        async with redis.pipeline(transaction=False) as pipe:
            pipe.zcard(keys.waiting)
            pipe.zcard(keys.active)
            pipe.zcard(keys.delayed)
            pipe.zcard(keys.completed)
            pipe.zcard(keys.failed)
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": int(waiting),
            "active": int(active),
            "delayed": int(delayed),
            "completed": int(completed),
            "failed": int(failed),
        }

    async def recover_stalled(
        self, queue_name: str, *, now_ms: int, failed_retention_s: int
    ) -> tuple[list[str], list[str]]:
        redis = await self._redis_factory()
        keys = self._keys(queue_name)
        with store_errors("queue.recover_stalled"):
            requeued, exhausted = await redis.eval(
                _RECOVER_STALLED_LUA,
                3,
                keys.waiting,
                keys.active,
                keys.failed,
                now_ms,
                keys.job_prefix,
                max(1, int(failed_retention_s)),
            )
        return [str(job_id) for job_id in requeued or []], [str(job_id) for job_id in exhausted or []]

    async def prune(self, queue_name: str, *, status: JobStatus, older_than_ms: int) -> int:
        redis = await self._redis_factory()
        keys = self._keys(queue_name)
        zset = keys.finished(status)
        stale = await redis.zrangebyscore(zset, "-inf", older_than_ms)
        if not stale:
            return 0
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(zset, *stale)
            pipe.delete(*[keys.job(job_id) for job_id in stale])
            await pipe.execute()
        return len(stale)

    async def touch_heartbeat(self, name: str, *, now_ms: int, ttl_s: int) -> None:
        redis = await self._redis_factory()
        await redis.set(f"{self._prefix}:heartbeat:{name}", str(now_ms), ex=max(1, ttl_s))

    async def read_heartbeat(self, name: str) -> int | None:
        redis = await self._redis_factory()
        raw = await redis.get(f"{self._prefix}:heartbeat:{name}")
        return int(raw) if raw else None


class InMemoryQueueBackend:
    """Process-local queue with the same ordering and limits as the Redis backend."""

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Job]] = {}
        self._waiting: dict[str, set[str]] = {}
        self._delayed: dict[str, set[str]] = {}
        self._active: dict[str, dict[str, int]] = {}
        self._finished: dict[str, dict[JobStatus, dict[str, int]]] = {}
        self._admitted: dict[str, list[int]] = {}
        self._seq: dict[str, int] = {}
        self._heartbeats: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _ensure(self, queue_name: str) -> None:
        self._jobs.setdefault(queue_name, {})
        self._waiting.setdefault(queue_name, set())
        self._delayed.setdefault(queue_name, set())
        self._active.setdefault(queue_name, {})
        self._finished.setdefault(
            queue_name, {JobStatus.COMPLETED: {}, JobStatus.FAILED: {}}
        )
        self._admitted.setdefault(queue_name, [])

    async def add(self, job: Job) -> None:
        async with self._lock:
            self._ensure(job.queue_name)
            self._seq[job.queue_name] = self._seq.get(job.queue_name, 0) + 1
            job.seq = self._seq[job.queue_name]
            self._jobs[job.queue_name][job.id] = job.model_copy(deep=True)
            if job.status == JobStatus.DELAYED:
                self._delayed[job.queue_name].add(job.id)
            else:
                self._waiting[job.queue_name].add(job.id)

    async def claim(
        self,
        queue_name: str,
        *,
        now_ms: int,
        concurrency: int,
        rate_max: int,
        rate_window_ms: int,
        lease_ms: int,
    ) -> ClaimResult:
        async with self._lock:
            self._ensure(queue_name)
            jobs = self._jobs[queue_name]
            for job_id in [jid for jid in self._delayed[queue_name] if jobs[jid].next_run_at_ms <= now_ms]:
                self._delayed[queue_name].discard(job_id)
                self._waiting[queue_name].add(job_id)
                jobs[job_id].status = JobStatus.WAITING

            if len(self._active[queue_name]) >= concurrency:
                return ClaimResult(reason="concurrency")
            if rate_max > 0:
                cutoff = now_ms - rate_window_ms
                admitted = [ts for ts in self._admitted[queue_name] if ts > cutoff]
                self._admitted[queue_name] = admitted
                if len(admitted) >= rate_max:
                    return ClaimResult(
                        reason="rate_limited", retry_after_ms=min(admitted) + rate_window_ms - now_ms
                    )
            if not self._waiting[queue_name]:
                return ClaimResult(reason="empty")

            job_id = min(self._waiting[queue_name], key=lambda jid: jobs[jid].rank)
            self._waiting[queue_name].discard(job_id)
            self._active[queue_name][job_id] = now_ms + lease_ms
            if rate_max > 0:
                self._admitted[queue_name].append(now_ms)
            job = jobs[job_id]
            job.attempts += 1
            job.status = JobStatus.ACTIVE
            job.started_at_ms = now_ms
            return ClaimResult(job=job.model_copy(deep=True))

    async def get(self, queue_name: str, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(queue_name, {}).get(job_id)
            return job.model_copy(deep=True) if job else None

    async def set_progress(self, queue_name: str, job_id: str, progress: int) -> bool:
        async with self._lock:
            job = self._jobs.get(queue_name, {}).get(job_id)
            if job is None:
                return False
            job.progress = int(progress)
            return True

    async def finish(self, job: Job, *, retention_s: int) -> None:
        async with self._lock:
            self._ensure(job.queue_name)
            self._active[job.queue_name].pop(job.id, None)
            self._jobs[job.queue_name][job.id] = job.model_copy(deep=True)
            self._finished[job.queue_name][job.status][job.id] = job.finished_at_ms or job.next_run_at_ms

    async def reschedule(self, job: Job) -> None:
        async with self._lock:
            self._ensure(job.queue_name)
            self._active[job.queue_name].pop(job.id, None)
            self._jobs[job.queue_name][job.id] = job.model_copy(deep=True)
            self._delayed[job.queue_name].add(job.id)

    async def counts(self, queue_name: str) -> dict[str, int]:
        async with self._lock:
            self._ensure(queue_name)
            return {
                "waiting": len(self._waiting[queue_name]),
                "active": len(self._active[queue_name]),
                "delayed": len(self._delayed[queue_name]),
                "completed": len(self._finished[queue_name][JobStatus.COMPLETED]),
                "failed": len(self._finished[queue_name][JobStatus.FAILED]),
            }

    async def recover_stalled(
        self, queue_name: str, *, now_ms: int, failed_retention_s: int
    ) -> tuple[list[str], list[str]]:
        async with self._lock:
            self._ensure(queue_name)
            requeued: list[str] = []
            exhausted: list[str] = []
            expired = [jid for jid, deadline in self._active[queue_name].items() if deadline <= now_ms]
            for job_id in expired:
                self._active[queue_name].pop(job_id, None)
                job = self._jobs[queue_name][job_id]
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED
                    job.error = "stalled"
                    job.finished_at_ms = now_ms
                    self._finished[queue_name][JobStatus.FAILED][job_id] = now_ms
                    exhausted.append(job_id)
                else:
                    job.status = JobStatus.WAITING
                    self._waiting[queue_name].add(job_id)
                    requeued.append(job_id)
            return requeued, exhausted

    async def prune(self, queue_name: str, *, status: JobStatus, older_than_ms: int) -> int:
        async with self._lock:
            self._ensure(queue_name)
            finished = self._finished[queue_name][status]
            stale = [jid for jid, finished_at in finished.items() if finished_at <= older_than_ms]
            for job_id in stale:
                finished.pop(job_id, None)
                self._jobs[queue_name].pop(job_id, None)
            return len(stale)

    async def touch_heartbeat(self, name: str, *, now_ms: int, ttl_s: int) -> None:
        self._heartbeats[name] = now_ms

    async def read_heartbeat(self, name: str) -> int | None:
        return self._heartbeats.get(name)
