"""
Topic/subscription transport with at-least-once delivery.

A message published to a topic is copied to every subscription bound to that
topic. Within a subscription each message goes to exactly one puller at a
time, leased for `visibility_timeout` seconds. A message that is neither
acked nor nacked before its lease runs out is put back at the head of the
queue, so consumers must treat every delivery as a possible redelivery.
"""
import base64, json, logging, threading, time, uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Optional

from redis import Redis
from redis.exceptions import RedisError

from .errors import PublishError, TransportError
from .utils import utc_now_iso, sleep_s

logger = logging.getLogger(__name__)


class Delivery:
    """One leased message. ack() and nack() settle it; settling twice is a no-op."""

    def __init__(self, message_id: str, data: bytes, attempt: int,
                 on_ack: Callable[[], None], on_nack: Callable[[], None]):
        self.message_id = message_id
        self.data = data
        self.attempt = attempt
        self._on_ack = on_ack
        self._on_nack = on_nack
        self.settled = False

    def json(self):
        return json.loads(self.data.decode("utf-8"))

    def ack(self):
        if self.settled:
            return
        self.settled = True
        self._on_ack()

    def nack(self):
        if self.settled:
            return
        self.settled = True
        self._on_nack()


def _encode(message_id: str, data: bytes) -> str:
    return json.dumps({
        "id": message_id,
        "data": base64.b64encode(data).decode("ascii"),
        "publishedAt": utc_now_iso(),
    }, sort_keys=True)


def _decode(raw) -> tuple:
    env = json.loads(raw)
    return env["id"], base64.b64decode(env["data"])


class Transport(ABC):
    def __init__(self, visibility_timeout: float = 600.0, poll_interval: float = 1.0):
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval

    @abstractmethod
    def ensure_subscription(self, topic: str, subscription: str):
        """Bind `subscription` to `topic` if it is not bound yet."""

    @abstractmethod
    def publish(self, topic: str, data: bytes) -> str:
        """Publish raw bytes; returns the message id."""

    @abstractmethod
    def _pull_once(self, subscription: str) -> Optional[Delivery]:
        ...

    @abstractmethod
    def reclaim_expired(self, subscription: str) -> int:
        """Requeue messages whose lease ran out; returns how many."""

    def publish_json(self, topic: str, obj) -> str:
        return self.publish(topic, json.dumps(obj).encode("utf-8"))

    def pull(self, subscription: str, timeout: float = 0.0) -> Optional[Delivery]:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            self.reclaim_expired(subscription)
            delivery = self._pull_once(subscription)
            if delivery is not None:
                return delivery
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            sleep_s(min(self.poll_interval, remaining))


# Each script runs atomically on the server: a message is either in ready or
# in inflight+leases, never in neither.
_PULL_LUA = """
local raw = redis.call('RPOP', KEYS[1])
if not raw then
  return nil
end
redis.call('HSET', KEYS[2], ARGV[1], raw)
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[1])
local attempt = redis.call('HINCRBY', KEYS[4], raw, 1)
return {raw, attempt}
"""

_SETTLE_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
local raw = redis.call('HGET', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if raw then
  if ARGV[2] == '1' then
    redis.call('RPUSH', KEYS[3], raw)
  else
    redis.call('HDEL', KEYS[4], raw)
  end
end
return 1
"""

_RECLAIM_LUA = """
local tokens = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local count = 0
for _, token in ipairs(tokens) do
  redis.call('ZREM', KEYS[1], token)
  local raw = redis.call('HGET', KEYS[2], token)
  redis.call('HDEL', KEYS[2], token)
  if raw then
    redis.call('RPUSH', KEYS[3], raw)
    count = count + 1
  end
end
return count
"""


class RedisTransport(Transport):
    """
    Keys per subscription: ready (list), inflight (hash lease token -> envelope),
    leases (zset lease token -> deadline) and attempts (hash envelope -> count).
    """

    def __init__(self, redis: Redis, prefix: str = "forgeworks",
                 visibility_timeout: float = 600.0, poll_interval: float = 1.0):
        super().__init__(visibility_timeout, poll_interval)
        self.redis = redis
        self.prefix = prefix
        self._pull_script = redis.register_script(_PULL_LUA)
        self._settle_script = redis.register_script(_SETTLE_LUA)
        self._reclaim_script = redis.register_script(_RECLAIM_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisTransport":
        return cls(Redis.from_url(url), **kwargs)

    def _subs_key(self, topic: str) -> str:
        return f"{self.prefix}:topic:{topic}:subs"

    def _key(self, subscription: str, part: str) -> str:
        return f"{self.prefix}:sub:{subscription}:{part}"

    def ensure_subscription(self, topic: str, subscription: str):
        try:
            if self.redis.sadd(self._subs_key(topic), subscription):
                logger.info("Subscription %s created on topic %s", subscription, topic)
        except RedisError as e:
            raise TransportError(f"Could not bind {subscription} to {topic}: {e}") from e

    def publish(self, topic: str, data: bytes) -> str:
        message_id = uuid.uuid4().hex
        raw = _encode(message_id, data)
        try:
            subs = self.redis.smembers(self._subs_key(topic))
            if not subs:
                logger.warning("Topic %s has no subscriptions; message %s is dropped", topic, message_id)
            pipe = self.redis.pipeline()
            for sub in subs:
                name = sub.decode("utf-8") if isinstance(sub, bytes) else sub
                pipe.lpush(self._key(name, "ready"), raw)
            pipe.execute()
        except RedisError as e:
            raise PublishError(f"Publish to {topic} failed: {e}") from e
        logger.debug("Message %s published to %s", message_id, topic)
        return message_id

    def _pull_once(self, subscription: str) -> Optional[Delivery]:
        # leases are per pull, so a late ack from an expired holder
        # cannot settle the lease of the next one
        token = uuid.uuid4().hex
        try:
            res = self._pull_script(
                keys=[self._key(subscription, "ready"), self._key(subscription, "inflight"),
                      self._key(subscription, "leases"), self._key(subscription, "attempts")],
                args=[token, time.time() + self.visibility_timeout],
            )
        except RedisError as e:
            raise TransportError(f"Pull from {subscription} failed: {e}") from e
        if not res:
            return None
        raw, attempt = res
        message_id, data = _decode(raw)
        return Delivery(
            message_id, data, int(attempt),
            on_ack=lambda: self._settle(subscription, message_id, token, requeue=False),
            on_nack=lambda: self._settle(subscription, message_id, token, requeue=True),
        )

    def _settle(self, subscription: str, message_id: str, token: str, requeue: bool):
        try:
            settled = self._settle_script(
                keys=[self._key(subscription, "leases"), self._key(subscription, "inflight"),
                      self._key(subscription, "ready"), self._key(subscription, "attempts")],
                args=[token, "1" if requeue else "0"],
            )
        except RedisError as e:
            raise TransportError(f"Could not settle message {message_id}: {e}") from e
        if not settled:
            # lease already expired and the message was requeued
            logger.warning("Late settle for message %s on %s ignored", message_id, subscription)

    def reclaim_expired(self, subscription: str) -> int:
        try:
            count = int(self._reclaim_script(
                keys=[self._key(subscription, "leases"), self._key(subscription, "inflight"),
                      self._key(subscription, "ready")],
                args=[time.time()],
            ))
        except RedisError as e:
            raise TransportError(f"Reclaim on {subscription} failed: {e}") from e
        if count:
            logger.warning("Requeued %d expired message(s) on %s", count, subscription)
        return count


class InMemoryTransport(Transport):
    """Same contract as RedisTransport, for one process (tests, local runs)."""

    def __init__(self, visibility_timeout: float = 600.0, poll_interval: float = 0.05,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(visibility_timeout, poll_interval)
        self.clock = clock
        self._lock = threading.Lock()
        self._topics = {}
        self._ready = {}
        self._inflight = {}
        self._attempts = {}

    def ensure_subscription(self, topic: str, subscription: str):
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscription)
            self._ready.setdefault(subscription, deque())
            self._inflight.setdefault(subscription, {})

    def publish(self, topic: str, data: bytes) -> str:
        message_id = uuid.uuid4().hex
        with self._lock:
            subs = self._topics.get(topic, set())
            if not subs:
                logger.warning("Topic %s has no subscriptions; message %s is dropped", topic, message_id)
            for sub in subs:
                self._ready[sub].appendleft((message_id, data))
        return message_id

    def pending(self, subscription: str) -> int:
        with self._lock:
            return len(self._ready.get(subscription, ())) + len(self._inflight.get(subscription, {}))

    def _pull_once(self, subscription: str) -> Optional[Delivery]:
        with self._lock:
            ready = self._ready.get(subscription)
            if not ready:
                return None
            message_id, data = ready.pop()
            token = uuid.uuid4().hex
            self._inflight[subscription][token] = (message_id, data, self.clock() + self.visibility_timeout)
            attempt = self._attempts[message_id] = self._attempts.get(message_id, 0) + 1
        return Delivery(
            message_id, data, attempt,
            on_ack=lambda: self._settle(subscription, token, requeue=False),
            on_nack=lambda: self._settle(subscription, token, requeue=True),
        )

    def _settle(self, subscription: str, token: str, requeue: bool):
        with self._lock:
            entry = self._inflight[subscription].pop(token, None)
            if entry is None:
                logger.warning("Late settle on %s ignored", subscription)
                return
            message_id, data, _ = entry
            if requeue:
                self._ready[subscription].append((message_id, data))
            else:
                self._attempts.pop(message_id, None)

    def reclaim_expired(self, subscription: str) -> int:
        now = self.clock()
        with self._lock:
            inflight = self._inflight.get(subscription, {})
            expired = [t for t, (_, _, deadline) in inflight.items() if deadline <= now]
            for token in expired:
                message_id, data, _ = inflight.pop(token)
                self._ready[subscription].append((message_id, data))
        return len(expired)
