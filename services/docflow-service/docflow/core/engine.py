# services/docflow-service/docflow/core/engine.py
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from docflow.config import settings
from docflow.core.consolidation import Consolidator
from docflow.core.distribution import Distributor
from docflow.core.paths import PathResolver
from docflow.db.store import DocumentStore
from docflow.events.topics import (
    FOR_DISTRIBUTION_TOPIC,
    INSTRUCTIONS_TOPIC,
    PATCH_LOGICS_TOPIC,
    VIEW_LOGICS_TOPIC,
    MessagePublisher,
)
from docflow.logics.dispatch import BusinessLogicDispatcher, DispatchOutcome, LogicConfig, LogicRegistry
from docflow.logics.patch_logics import PatchLogicConfig, PatchLogicDispatcher
from docflow.logics.retry import RetryScheduler
from docflow.logics.view_logics import ViewLogicEngine
from docflow.models import Action, LogicResult, LogicResultDoc, QueryCondition
from docflow.schema.compiler import SchemaRegistry, compile_schema

logger = logging.getLogger("docflow.engine")

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class DocflowEngine:
    """
    Wires the compiled schema, the store and the publisher into the
    resolver, consolidator, distributor, view engine and dispatchers.
    """

    def __init__(
        self,
        store: DocumentStore,
        publisher: MessagePublisher,
        schema: SchemaRegistry,
        logic_configs: Iterable[LogicConfig] = (),
        patch_configs: Iterable[PatchLogicConfig] = (),
        *,
        batch_size: Optional[int] = None,
        views_page_size: Optional[int] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        queue_instructions: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.schema = schema
        self.resolver = PathResolver(schema, store)
        self.consolidator = Consolidator(self.resolver)
        self.distributor = Distributor(
            store, self.consolidator, publisher, batch_size, queue_instructions=queue_instructions,
        )
        self.views = ViewLogicEngine(
            schema, self.resolver, self.consolidator, self.distributor, publisher, views_page_size,
        )
        self.logics = LogicRegistry(logic_configs)
        self.dispatcher = BusinessLogicDispatcher(
            store, schema, self.logics, self.consolidator, self.distributor, self.views, retry_scheduler,
        )
        self.patches = PatchLogicDispatcher(
            store, schema, patch_configs, self.consolidator, self.distributor, self.views, publisher,
        )
        logger.info(
            "Engine ready: %d entities, %d view definitions, %d logics, %d patches",
            len(schema.entities), len(schema.view_definitions), len(self.logics), len(self.patches.patches),
        )

    @classmethod
    def from_declaration(
        cls,
        store: DocumentStore,
        publisher: MessagePublisher,
        declaration: Mapping[str, Any],
        entities: Iterable[Any],
        **kwargs: Any,
    ) -> "DocflowEngine":
        return cls(store, publisher, compile_schema(declaration, entities), **kwargs)

    # ---------- schema & paths ---------- #
    @staticmethod
    def compile_schema(declaration: Mapping[str, Any], entities: Iterable[Any]) -> SchemaRegistry:
        return compile_schema(declaration, entities)

    async def hydrate(self, template: str, conditions: Optional[Mapping[str, QueryCondition]] = None) -> List[str]:
        return await self.resolver.hydrate(template, conditions)

    async def expand_descendants(
        self,
        start_path: str,
        conditions: Optional[Mapping[str, QueryCondition]] = None,
        exclude: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[str]]:
        return await self.resolver.expand_and_group(start_path, conditions, exclude)

    # ---------- writes ---------- #
    async def consolidate(self, docs: Sequence[LogicResultDoc]) -> Dict[str, List[LogicResultDoc]]:
        return await self.consolidator.expand_consolidate_and_group_by_dst_path(docs)

    async def apply_writes(
        self, docs: Sequence[LogicResultDoc], target_version: Optional[str] = None
    ) -> List[LogicResultDoc]:
        """Consolidates, writes now, and queues view logics for what was written."""
        grouped = await self.consolidate(docs)
        distributed = await self.distributor.distribute_non_transactional(grouped)
        await self.views.queue_run_view_logics(target_version or settings.app_version, distributed)
        return distributed

    # ---------- logics ---------- #
    async def run_view_logics(
        self,
        doc: LogicResultDoc,
        target_version: Optional[str] = None,
        last_processed_id: Optional[str] = None,
    ) -> List[LogicResult]:
        payload: Dict[str, Any] = {"doc": doc.to_message(), "targetVersion": target_version or settings.app_version}
        if last_processed_id is not None:
            payload["lastProcessedId"] = last_processed_id
        return await self.views.on_view_logics_message(payload)

    async def dispatch_business_logic(self, action: Action, target_version: Optional[str] = None) -> DispatchOutcome:
        return await self.dispatcher.dispatch(action, target_version)

    async def dispatch_patch_logic(self, app_version: str, path: str) -> List[LogicResult]:
        return await self.patches.dispatch_patch_logic(app_version, path)

    # ---------- queue handlers ---------- #
    async def on_for_distribution_message(self, payload: Dict[str, Any]) -> List[LogicResultDoc]:
        written = await self.distributor.on_for_distribution_message(payload)
        await self.views.queue_run_view_logics(payload.get("targetVersion") or settings.app_version, written)
        return written

    def handlers(self) -> Dict[str, Handler]:
        return {
            VIEW_LOGICS_TOPIC: self.views.on_view_logics_message,
            FOR_DISTRIBUTION_TOPIC: self.on_for_distribution_message,
            PATCH_LOGICS_TOPIC: self.patches.on_patch_logics_message,
            INSTRUCTIONS_TOPIC: self.distributor.reducer.on_instructions_message,
        }

    async def close(self) -> None:
        await self.distributor.reducer.close()
        await self.distributor.batch.commit()
        await self.dispatcher.retry.close()
