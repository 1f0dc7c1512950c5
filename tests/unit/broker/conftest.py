"""
Fixtures for broker client unit tests.

FakeServer holds stream state shared by every FakeRedis connection, so a
reconnect (new connection object) sees the same streams and groups.
"""

import asyncio
from dataclasses import replace

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tweet_pipeline.broker import BrokerClient, BrokerConfig
from tweet_pipeline.coordinator import RetryPolicy


def _seq(msg_id: str) -> int:
    return int(str(msg_id).split("-")[0])


class FakeServer:
    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        # (stream, group) -> {"last": int, "pending": {msg_id: consumer}}
        self.groups: dict[tuple[str, str], dict] = {}
        self.down = False
        self.connections = 0
        self._seq = 0

    def next_id(self) -> str:
        self._seq += 1
        return f"{self._seq}-0"

    def bodies(self, stream: str) -> list[dict]:
        return [fields for _, fields in self.streams.get(stream, [])]

    def pending(self, stream: str, group: str = "tweet-pipeline") -> list[str]:
        return list(self.groups[(stream, group)]["pending"])


class FakeRedis:
    """Subset of redis.asyncio.Redis used by BrokerClient (RESP2 replies)."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.closed = False
        server.connections += 1

    def _check(self) -> None:
        if self.server.down or self.closed:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def ping(self) -> bool:
        self._check()
        return True

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self._check()
        msg_id = self.server.next_id()
        self.server.streams.setdefault(name, []).append(
            (msg_id, {k: str(v) for k, v in fields.items()})
        )
        return msg_id

    async def xack(self, name, groupname, *ids):
        self._check()
        pending = self.server.groups[(name, groupname)]["pending"]
        return sum(1 for i in ids if pending.pop(i, None) is not None)

    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        self._check()
        if (name, groupname) in self.server.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        if mkstream:
            self.server.streams.setdefault(name, [])
        self.server.groups[(name, groupname)] = {"last": 0, "pending": {}}
        return True

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (block or 0) / 1000
        while True:
            self._check()
            out = []
            for name, cursor in streams.items():
                msgs = self._read(name, groupname, consumername, cursor, count)
                if msgs or cursor != ">":
                    out.append([name, msgs])
            if any(msgs for _, msgs in out) or block is None or loop.time() >= deadline:
                return out
            await asyncio.sleep(0.001)

    def _read(self, name, groupname, consumername, cursor, count):
        group = self.server.groups[(name, groupname)]
        entries = self.server.streams.get(name, [])
        if cursor == ">":
            fresh = [(i, f) for i, f in entries if _seq(i) > group["last"]][: count or None]
            for i, _ in fresh:
                group["pending"][i] = consumername
                group["last"] = _seq(i)
            return fresh
        by_id = dict(entries)
        mine = [
            i
            for i, owner in group["pending"].items()
            if owner == consumername and _seq(i) > _seq(cursor)
        ]
        return [(i, by_id.get(i)) for i in sorted(mine, key=_seq)][: count or None]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def config():
    return BrokerConfig(
        url="redis://fake:6379/0",
        reconnect_policy=RetryPolicy(initial_backoff_ms=1, max_backoff_ms=5),
        block_ms=10,
    )


@pytest.fixture
async def make_client(server, config):
    clients = []

    def _make(**overrides) -> BrokerClient:
        c = BrokerClient(replace(config, **overrides), redis_factory=lambda url: FakeRedis(server))
        clients.append(c)
        return c

    yield _make
    for c in clients:
        await c.close()
