from __future__ import annotations

import json
from typing import AsyncGenerator

import redis.asyncio as redis

COMPLETE_MARKER = "__complete__"


class LogStore:
    """Redis-backed live output of running jobs.

    Each output chunk is appended to a per-job list and published on a
    per-job channel together with its position in the list, so a reader can
    replay the backlog and then follow new chunks without gaps or repeats.
    This is a live view only; the job record keeps the final output.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 24 * 3600) -> None:
        self.redis = client
        self.ttl_seconds = ttl_seconds
        self._complete_key = "log:complete:"
        self._list_key = "log:list:"
        self._channel_key = "log:channel:"

    def _list(self, job_id: str) -> str:
        return f"{self._list_key}{job_id}"

    def _complete(self, job_id: str) -> str:
        return f"{self._complete_key}{job_id}"

    def _channel(self, job_id: str) -> str:
        return f"{self._channel_key}{job_id}"

    async def register(self, job_id: str) -> None:
        await self.redis.delete(self._list(job_id), self._complete(job_id))

    async def append(self, job_id: str, text: str) -> None:
        seq = await self.redis.rpush(self._list(job_id), text)  # type: ignore[misc]
        await self.redis.expire(self._list(job_id), self.ttl_seconds)
        event = json.dumps({"seq": seq, "text": text})
        await self.redis.publish(self._channel(job_id), event)  # type: ignore[misc]

    async def mark_complete(self, job_id: str) -> None:
        await self.redis.set(self._complete(job_id), "1", ex=self.ttl_seconds)
        await self.redis.publish(self._channel(job_id), COMPLETE_MARKER)

    async def is_complete(self, job_id: str) -> bool:
        return bool(await self.redis.exists(self._complete(job_id)))

    async def tail(self, job_id: str) -> list[str]:
        raw = await self.redis.lrange(self._list(job_id), 0, -1)  # type: ignore[misc]
        return [self._decode(item) for item in raw]

    async def stream(self, job_id: str, start_at: int = 0) -> AsyncGenerator[str, None]:
        pubsub = self.redis.pubsub()
        # Subscribe before reading the backlog so nothing published in
        # between is lost.
        await pubsub.subscribe(self._channel(job_id))
        try:
            # Output is appended before the completion marker is set, so a
            # job already complete here has its whole output in the list.
            complete = await self.is_complete(job_id)
            seen = start_at
            buffer = await self.redis.lrange(self._list(job_id), start_at, -1)  # type: ignore[misc]
            for line in buffer:
                yield self._decode(line)
                seen += 1

            if complete:
                return

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = self._decode(message["data"])
                if data == COMPLETE_MARKER:
                    return
                event = json.loads(data)
                if event["seq"] <= seen:
                    continue
                seen = event["seq"]
                yield str(event["text"])
        finally:
            await pubsub.unsubscribe(self._channel(job_id))
            await pubsub.aclose()

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return str(value)
