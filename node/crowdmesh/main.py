"""CrowdMesh node: main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, transport, queue, and API layers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from crowdmesh.api.chat import router as chat_router
from crowdmesh.api.crowd import router as crowd_router
from crowdmesh.api.location import router as location_router
from crowdmesh.api.monitoring import router as monitoring_router
from crowdmesh.api.session import router as session_router
from crowdmesh.config import AppConfig, load_config
from crowdmesh.core.processor import EventProcessor
from crowdmesh.core.stats import NodeStats
from crowdmesh.queue.asyncio_queue import AsyncioEventQueue
from crowdmesh.transport.base import PeerTransport
from crowdmesh.transport.memory import InMemoryMedium, InMemoryTransport

log = structlog.get_logger()

# Module-level singletons (set during startup)
_processor: EventProcessor | None = None
_stats: NodeStats | None = None
_config: AppConfig | None = None


def get_processor() -> EventProcessor:
    assert _processor is not None, "Node not initialized"
    return _processor


def get_stats() -> NodeStats:
    assert _stats is not None, "Node not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Node not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def build_transport(config: AppConfig) -> PeerTransport:
    """Create the transport named by ``transport.backend``."""
    if config.transport.backend == "memory":
        return InMemoryTransport(InMemoryMedium())
    raise ValueError(f"unknown transport backend: {config.transport.backend!r}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _processor, _stats, _config

    _config = load_config()
    _setup_logging(_config)

    log.info("node_starting",
             env=_config.api.env,
             name=_config.node.name,
             transport=_config.transport.backend,
             queue_max_size=_config.queue.max_size)

    # Create components
    _stats = NodeStats(active_window_seconds=_config.limits.active_window_seconds)
    queue = AsyncioEventQueue(max_size=_config.queue.max_size)
    transport = build_transport(_config)
    _processor = EventProcessor(transport=transport, queue=queue, stats=_stats, config=_config)

    # Start background event consumer
    consumer_task = asyncio.create_task(_processor.run_event_consumer())

    log.info("node_started",
             host=_config.api.host,
             port=_config.api.port)

    yield

    # Shutdown
    await _processor.close()
    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass
    log.info("node_stopped")


app = FastAPI(
    title="CrowdMesh",
    description="Proximity crowd-safety node",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(monitoring_router)
app.include_router(session_router)
app.include_router(chat_router)
app.include_router(crowd_router)
app.include_router(location_router)


def run() -> None:
    """Console entry point: serve the API on the configured host and port."""
    import uvicorn

    config = load_config()
    uvicorn.run(
        "crowdmesh.main:app",
        host=config.api.host,
        port=config.api.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    run()
