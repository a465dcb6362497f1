# services/docflow-service/docflow/logics/patch_logics.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cmp_to_key
from itertools import groupby
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from docflow.core.consolidation import Consolidator
from docflow.core.distribution import Distributor
from docflow.core.misc import now_utc
from docflow.core.versions import version_compare
from docflow.db.store import DocumentStore
from docflow.events.topics import PATCH_LOGICS_TOPIC, MessagePublisher
from docflow.infra.telemetry import timer
from docflow.logics.view_logics import ViewLogicEngine
from docflow.models import LogicResult, LogicResultDoc, LogicResultDocAction as A, LogicResultStatus
from docflow.schema.compiler import SchemaRegistry

logger = logging.getLogger("docflow.patch_logics")

PatchLogicFn = Callable[[str, Dict[str, Any]], Awaitable[LogicResult]]

DATA_VERSION = "@dataVersion"


@dataclass
class PatchLogicConfig:
    """Upgrades `entity` documents whose @dataVersion is below `version`."""
    name: str
    entity: str
    version: str
    patch_logic_fn: PatchLogicFn = field(repr=False)

    def is_eligible(self, data_version: str, app_version: str) -> bool:
        return (
            version_compare(data_version, self.version) < 0
            and version_compare(self.version, app_version) <= 0
        )


class PatchLogicDispatcher:
    """
    Brings one document up to the app version, one transaction per patch
    version, in ascending order.
    """

    def __init__(
        self,
        store: DocumentStore,
        schema: SchemaRegistry,
        patches: Iterable[PatchLogicConfig],
        consolidator: Consolidator,
        distributor: Distributor,
        view_engine: ViewLogicEngine,
        publisher: MessagePublisher,
    ) -> None:
        self.store = store
        self.schema = schema
        self.patches: List[PatchLogicConfig] = list(patches)
        self.consolidator = consolidator
        self.distributor = distributor
        self.view_engine = view_engine
        self.publisher = publisher

    def eligible(self, entity: str, data_version: str, app_version: str) -> List[PatchLogicConfig]:
        matching = [p for p in self.patches if p.entity == entity and p.is_eligible(data_version, app_version)]
        return sorted(matching, key=cmp_to_key(lambda a, b: version_compare(a.version, b.version)))

    async def dispatch_patch_logic(self, app_version: str, dst_path: str) -> List[LogicResult]:
        entity = self.schema.find_entity(dst_path)
        if not entity:
            logger.error("No entity matches %s; patch skipped", dst_path)
            return []

        data = await self.store.get(dst_path)
        if data is None:
            logger.info("Document %s does not exist; nothing to patch", dst_path)
            return []

        candidates = self.eligible(entity, data.get(DATA_VERSION) or "0.0.0", app_version)
        if not candidates:
            logger.debug("No patches for %s at %s", dst_path, data.get(DATA_VERSION) or "0.0.0")
            return []

        all_results: List[LogicResult] = []
        distributed: List[LogicResultDoc] = []
        for version, group in groupby(candidates, key=lambda p: p.version):
            group_results, group_docs = await self._apply_version(dst_path, version, list(group))
            all_results.extend(group_results)
            distributed.extend(group_docs)

        await self.view_engine.queue_run_view_logics(app_version, distributed)
        return all_results

    async def _apply_version(self, dst_path: str, version: str, group: List[PatchLogicConfig]):
        results: List[LogicResult] = []
        distributed: List[LogicResultDoc] = []

        async def _txn(txn):
            results.clear()
            distributed.clear()
            data = await txn.get(dst_path)
            if data is None:
                logger.info("Document %s vanished before patch %s", dst_path, version)
                return
            current = data.get(DATA_VERSION) or "0.0.0"
            if version_compare(current, version) >= 0:
                logger.info("%s already at %s; skipping patch %s", dst_path, current, version)
                return

            for patch in group:
                with timer(patch.name) as elapsed:
                    try:
                        result = await patch.patch_logic_fn(dst_path, data)
                    except Exception as e:
                        logger.exception("Patch %s failed on %s", patch.name, dst_path)
                        result = LogicResult(name=patch.name, status=LogicResultStatus.ERROR, message=str(e))
                results.append(result.model_copy(update={"exec_time": elapsed.ms, "time_finished": now_utc()}))

            docs = [d for r in results for d in r.documents]
            docs.append(LogicResultDoc(action=A.MERGE, dst_path=dst_path, doc={DATA_VERSION: version}))
            grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(docs)
            for path_docs in grouped.values():
                for doc in path_docs:
                    distributed.append(await self.distributor.distribute_doc(doc, txn=txn))

        await self.store.run_transaction(_txn)
        logger.info("Applied %d patch(es) at version %s to %s", len(results), version, dst_path)
        return list(results), list(distributed)

    # ---------- queue ---------- #
    async def queue_run_patch_logics(self, app_version: str, *dst_paths: str) -> None:
        for dst_path in dst_paths:
            await self.publisher.publish(PATCH_LOGICS_TOPIC, {"appVersion": app_version, "dstPath": dst_path})

    async def on_patch_logics_message(self, payload: Dict[str, Any]) -> List[LogicResult]:
        return await self.dispatch_patch_logic(payload["appVersion"], payload["dstPath"])
