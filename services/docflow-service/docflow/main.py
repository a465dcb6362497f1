# services/docflow-service/docflow/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from docflow.config import settings
from docflow.infra.logging import setup_logging
from docflow.events.rabbit import get_bus, RabbitBus
from docflow.events.consumer import QueueConsumer
from docflow.db.mongodb import init_indexes, close_client as close_mongo_client, MongoDocumentStore
from docflow.app_loader import load_app_module
from docflow.core.engine import DocflowEngine
from docflow.api.routers import health_routes
from docflow.api.routers import actions_routes

logger = logging.getLogger("docflow.main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    App lifespan:
      - configure logging
      - connect event bus (RabbitMQ)
      - init Mongo indexes
      - compile the app schema, build the engine, start queue consumers
      - graceful shutdown: consumers, engine, bus, Mongo client
    """
    setup_logging(settings.service_name)
    logger.info("%s starting up", settings.service_name)

    # 1) RabbitMQ
    bus: RabbitBus = get_bus()
    await bus.connect()
    logger.info("RabbitMQ connected (exchange=%s)", settings.rabbitmq_exchange)

    # 2) Mongo indexes
    await init_indexes()
    logger.info("Mongo indexes ensured (db=%s)", settings.mongo_db)

    # 3) Engine
    store = MongoDocumentStore()
    definition = load_app_module(settings.app_module)
    engine = DocflowEngine.from_declaration(
        store,
        bus,
        definition.db_structure,
        definition.entities,
        logic_configs=definition.logic_configs,
        patch_configs=definition.patch_logic_configs,
    )
    app.state.engine = engine

    # 4) Consumers
    consumer = QueueConsumer(bus, store)
    for topic, handler in engine.handlers().items():
        consumer.register(topic, handler)
    await consumer.cleanup_processed_ids()
    await consumer.start()

    try:
        yield
    finally:
        # a) Consumers and engine
        try:
            await consumer.stop()
            await engine.close()
            logger.info("Consumers stopped; pending writes committed")
        except Exception:
            logger.warning("Error stopping consumers", exc_info=True)

        # b) Event bus
        try:
            await bus.close()
            logger.info("RabbitMQ connection closed")
        except Exception:
            logger.warning("Error closing RabbitMQ", exc_info=True)

        # c) Mongo client
        try:
            await close_mongo_client()
            logger.info("Mongo client closed")
        except Exception:
            logger.warning("Error closing Mongo client", exc_info=True)

        logger.info("%s shutdown complete", settings.service_name)


app = FastAPI(
    title="Docflow Service",
    description="Schema-driven write orchestration and view materialization over a document store",
    version="0.1.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

app.include_router(health_routes.router)
app.include_router(actions_routes.router)
