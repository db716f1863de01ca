"""Shared test fixtures."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

import crowdmesh.main as main_module
from crowdmesh.config import AppConfig
from crowdmesh.core.processor import EventProcessor
from crowdmesh.core.stats import NodeStats
from crowdmesh.queue.asyncio_queue import AsyncioEventQueue
from crowdmesh.transport.memory import InMemoryMedium, InMemoryTransport


class Mesh:
    """Several nodes sharing one in-memory medium, driven without background tasks."""

    def __init__(self) -> None:
        self.medium = InMemoryMedium()
        self.nodes: dict[str, EventProcessor] = {}
        self.stats: dict[str, NodeStats] = {}

    def make(self, peer_id: str, config: AppConfig | None = None, clock=None) -> EventProcessor:
        config = config or AppConfig()
        stats = NodeStats()
        kwargs = {"clock": clock} if clock is not None else {}
        node = EventProcessor(
            transport=InMemoryTransport(self.medium, peer_id),
            queue=AsyncioEventQueue(max_size=config.queue.max_size),
            stats=stats,
            config=config,
            **kwargs,
        )
        self.nodes[peer_id] = node
        self.stats[peer_id] = stats
        return node

    async def settle(self, max_rounds: int = 50) -> None:
        """Drain every node's queue until no node has anything left."""
        for _ in range(max_rounds):
            handled = 0
            for node in self.nodes.values():
                handled += await node.drain()
            if handled == 0:
                return
        raise AssertionError("mesh did not settle")

    async def room(
        self, code: str = "1234", joiners: tuple[str, ...] = ("join-a",), clock=None,
    ) -> EventProcessor:
        """Host ``host-1`` with ``code`` and let every joiner in."""
        host = self.make("host-1", clock=clock)
        await host.host_event(code, name="Host")
        for peer_id in joiners:
            node = self.make(peer_id)
            await node.start_discovery(name=peer_id)
            await self.settle()
            await node.join_host("host-1", code)
            await self.settle()
        return host

    async def close(self) -> None:
        for node in self.nodes.values():
            await node.close()
        await self.settle()


@pytest.fixture(autouse=True)
def _init_node():
    """Initialize node singletons for every test."""
    config = AppConfig()
    config.logging.level = "warning"

    stats = NodeStats(active_window_seconds=config.limits.active_window_seconds)
    queue = AsyncioEventQueue(max_size=config.queue.max_size)
    medium = InMemoryMedium()
    processor = EventProcessor(
        transport=InMemoryTransport(medium, "api-node"),
        queue=queue,
        stats=stats,
        config=config,
    )

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._processor = processor

    yield medium

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._processor = None


@pytest.fixture
def medium(_init_node) -> InMemoryMedium:
    """The medium the API node's transport is attached to."""
    return _init_node


@pytest.fixture
async def client():
    from crowdmesh.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await main_module.get_processor().end_session()


@pytest.fixture
async def mesh():
    m = Mesh()
    yield m
    await m.close()
