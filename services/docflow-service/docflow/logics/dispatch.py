# services/docflow-service/docflow/logics/dispatch.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from docflow.config import settings
from docflow.core.consolidation import Consolidator
from docflow.core.distribution import Distributor
from docflow.core.errors import CancelThenRetryError
from docflow.core.misc import get_form_modified_fields, now_utc
from docflow.core.versions import version_compare
from docflow.db.store import DocumentStore, doc_id
from docflow.infra.telemetry import timer
from docflow.logics.retry import RetryScheduler
from docflow.logics.view_logics import ViewLogicEngine
from docflow.models import (
    Action,
    ActionStatus,
    EventContext,
    LogicResult,
    LogicResultDoc,
    LogicResultDocAction as A,
    LogicResultStatus,
    Priority,
    RunBusinessLogicStatus,
)
from docflow.schema.compiler import SchemaRegistry

logger = logging.getLogger("docflow.dispatch")

LogicFn = Callable[[Any, Action, Dict[str, Any], Optional[Dict[str, Any]]], Awaitable[LogicResult]]
AddtlFilterFn = Callable[[Action], bool]
DistributeFn = Callable[[List[LogicResult], int], Awaitable[None]]

ALL = "all"


# ─────────────────────────────────────────────────────────────
# Logic configs
# ─────────────────────────────────────────────────────────────

@dataclass
class LogicConfig:
    """
    A registered business logic.

    logic_fn(txn_get, action, shared_map, next_page) returns a LogicResult;
    shared_map persists across the pages of one dispatch and next_page is
    the continuation marker from the previous partial-result (None first).
    """
    name: str
    logic_fn: LogicFn = field(repr=False)
    action_types: Union[str, Sequence[str]] = ALL
    modified_fields: Union[str, Sequence[str]] = ALL
    entities: Union[str, Sequence[str]] = ALL
    addtl_filter_fn: Optional[AddtlFilterFn] = field(default=None, repr=False)
    version: str = "0.0.0"
    obsolete_after_version: Optional[str] = None

    def matches(self, action: Action, target_version: str) -> bool:
        if self.action_types != ALL and action.action_type not in self.action_types:
            return False
        if self.modified_fields != ALL and not any(f in action.modified_fields for f in self.modified_fields):
            return False
        if self.entities != ALL and action.event_context.entity not in self.entities:
            return False
        if self.addtl_filter_fn is not None and not self.addtl_filter_fn(action):
            return False
        if self.obsolete_after_version and version_compare(target_version, self.obsolete_after_version) > 0:
            return False
        return version_compare(self.version, target_version) <= 0


class LogicRegistry:
    def __init__(self, configs: Optional[Iterable[LogicConfig]] = None) -> None:
        self._configs: List[LogicConfig] = list(configs or [])

    def register(self, config: LogicConfig) -> None:
        self._configs.append(config)

    def __iter__(self):
        return iter(self._configs)

    def __len__(self) -> int:
        return len(self._configs)

    def matching(self, action: Action, target_version: str) -> List[LogicConfig]:
        """
        One config per name (highest eligible version), in reverse
        registration order.
        """
        picked: List[LogicConfig] = []
        index: Dict[str, int] = {}
        for cfg in self._configs:
            if not cfg.matches(action, target_version):
                continue
            if cfg.name not in index:
                index[cfg.name] = len(picked)
                picked.append(cfg)
            elif version_compare(picked[index[cfg.name]].version, cfg.version) < 0:
                picked[index[cfg.name]] = cfg
        return list(reversed(picked))


@dataclass
class DispatchOutcome:
    status: RunBusinessLogicStatus
    logic_results: List[LogicResult] = field(default_factory=list)
    pages: int = 0


# ─────────────────────────────────────────────────────────────
# Page loop
# ─────────────────────────────────────────────────────────────

async def run_business_logics(
    registry: LogicRegistry,
    txn_get: Any,
    action: Action,
    target_version: str,
    distribute_fn: DistributeFn,
    max_pages: int = 20,
) -> DispatchOutcome:
    matching = registry.matching(action, target_version)
    logger.debug("Matching logics: %s", [cfg.name for cfg in matching])
    if not matching:
        logger.info("No matching logics found for %s", action.event_context.doc_path)
        return DispatchOutcome(status=RunBusinessLogicStatus.NO_MATCHING_LOGICS)

    shared_map: Dict[str, Any] = {}
    active: List[Tuple[LogicConfig, Optional[Dict[str, Any]]]] = [(cfg, None) for cfg in matching]
    all_results: List[LogicResult] = []
    page = 0

    while active and page < max_pages:
        page_results: List[LogicResult] = []
        still_active: List[Tuple[LogicConfig, Optional[Dict[str, Any]]]] = []

        for cfg, next_page in active:
            logger.debug("Running logic %s (page %d)", cfg.name, page)
            with timer(cfg.name, warn_above_ms=settings.slow_logic_threshold_ms) as elapsed:
                try:
                    result = await cfg.logic_fn(txn_get, action, shared_map, next_page)
                except Exception as e:
                    logger.exception("Logic %s failed", cfg.name)
                    result = LogicResult(name=cfg.name, status=LogicResultStatus.ERROR, message=str(e))
            result = result.model_copy(update={"exec_time": elapsed.ms, "time_finished": now_utc()})

            if result.status == LogicResultStatus.CANCEL_THEN_RETRY:
                logger.info("Logic %s requested cancel-then-retry; aborting dispatch", cfg.name)
                all_results.extend(page_results)
                all_results.append(result)
                return DispatchOutcome(
                    status=RunBusinessLogicStatus.CANCEL_THEN_RETRY, logic_results=all_results, pages=page + 1,
                )

            page_results.append(result)
            if result.status == LogicResultStatus.PARTIAL_RESULT:
                still_active.append((cfg, result.next_page))
            elif result.status == LogicResultStatus.ERROR:
                logger.warning("Logic %s returned error: %s", cfg.name, result.message)

        await distribute_fn(page_results, page)
        all_results.extend(page_results)
        active = still_active
        page += 1

    if active:
        logger.warning("Reached max pages (%d) with %d logics still active: %s",
                       max_pages, len(active), [cfg.name for cfg, _ in active])
    return DispatchOutcome(status=RunBusinessLogicStatus.DONE, logic_results=all_results, pages=page)


def group_docs_by_target_doc_path(
    docs_by_dst_path: Dict[str, List[LogicResultDoc]], doc_path: str
) -> Tuple[Dict[str, List[LogicResultDoc]], Dict[str, List[LogicResultDoc]]]:
    """Split into (paths under doc_path, everything else)."""
    own: Dict[str, List[LogicResultDoc]] = {}
    other: Dict[str, List[LogicResultDoc]] = {}
    for dst_path, docs in docs_by_dst_path.items():
        under = dst_path == doc_path or dst_path.startswith((doc_path + "/", doc_path + "#"))
        (own if under else other)[dst_path] = docs
    return own, other


# ─────────────────────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────────────────────

class BusinessLogicDispatcher:
    """
    Runs business logics for an action and distributes every page of results.
    """

    def __init__(
        self,
        store: DocumentStore,
        schema: SchemaRegistry,
        logics: LogicRegistry,
        consolidator: Consolidator,
        distributor: Distributor,
        view_engine: ViewLogicEngine,
        retry_scheduler: Optional[RetryScheduler] = None,
    ) -> None:
        self.store = store
        self.schema = schema
        self.logics = logics
        self.consolidator = consolidator
        self.distributor = distributor
        self.view_engine = view_engine
        self.retry = retry_scheduler or RetryScheduler()

    async def get_max_pages(self) -> int:
        runtime = await self.store.get(settings.runtime_config_path) or {}
        try:
            return int(runtime.get("maxLogicResultPages", settings.max_logic_result_pages))
        except (TypeError, ValueError):
            logger.warning("Invalid maxLogicResultPages %r; using %d",
                           runtime.get("maxLogicResultPages"), settings.max_logic_result_pages)
            return settings.max_logic_result_pages

    async def dispatch(self, action: Action, target_version: Optional[str] = None) -> DispatchOutcome:
        target_version = target_version or settings.app_version
        max_pages = await self.get_max_pages()

        async def distribute(results: List[LogicResult], page: int) -> None:
            await self.distribute_page(action, results, page, target_version)

        outcome = await run_business_logics(self.logics, self.store, action, target_version, distribute, max_pages)
        errors = [r.message for r in outcome.logic_results if r.status == LogicResultStatus.ERROR and r.message]
        if errors:
            logger.warning("Action %s finished with errors: %s", action.event_context.id, "; ".join(errors))
        return outcome

    # ---------- distribution ---------- #
    async def distribute_page(
        self, action: Action, results: List[LogicResult], page: int, target_version: str
    ) -> None:
        doc_path = action.event_context.doc_path

        if any(r.transactional for r in results):
            async def _txn(txn):
                return await self.distributor.distribute_transactional(txn, results)

            distributed = await self.store.run_transaction(_txn)
            await self.view_engine.queue_run_view_logics(target_version, distributed)

        by_priority: Dict[Priority, List[LogicResultDoc]] = {p: [] for p in Priority}
        for result in results:
            if result.transactional:
                continue
            for doc in result.documents:
                if doc.action == A.SIMULATE_SUBMIT_FORM:
                    continue
                by_priority[doc.priority or Priority.NORMAL].append(doc)

        distributed_now: List[LogicResultDoc] = []

        grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(by_priority[Priority.HIGH])
        own, other = group_docs_by_target_doc_path(grouped, doc_path)
        distributed_now += await self.distributor.distribute_non_transactional(own)
        distributed_now += await self.distributor.distribute_non_transactional(other)

        grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(by_priority[Priority.NORMAL])
        own, other = group_docs_by_target_doc_path(grouped, doc_path)
        distributed_now += await self.distributor.distribute_non_transactional(own)
        if other:
            await self.distributor.distribute_later(other, target_version)

        grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(by_priority[Priority.LOW])
        if grouped:
            await self.distributor.distribute_later(grouped, target_version)

        await self.view_engine.queue_run_view_logics(target_version, distributed_now)
        await self.run_simulated_forms(action, results, page, target_version)

    # ---------- simulate-submit-form ---------- #
    async def run_simulated_forms(
        self, action: Action, results: List[LogicResult], page: int, target_version: str
    ) -> None:
        forms = [d for r in results for d in r.documents if d.action == A.SIMULATE_SUBMIT_FORM]
        for i, form_doc in enumerate(forms):
            event_id = f"{action.event_context.id}-{page}-{i}"

            async def _attempt(form_doc: LogicResultDoc = form_doc, event_id: str = event_id) -> None:
                await self.simulate_submit_form(action, form_doc, event_id, target_version)

            try:
                await _attempt()
            except CancelThenRetryError:
                logger.info("Synthetic action %s asked to be retried", event_id)
                self.retry.submit(event_id, _attempt)

    async def build_synthetic_action(
        self, parent: Action, form_doc: LogicResultDoc, event_id: str
    ) -> Optional[Action]:
        doc_path = form_doc.dst_path
        entity = self.schema.find_entity(doc_path)
        if not entity:
            logger.warning("simulate-submit-form for unknown path %s; skipped", doc_path)
            return None

        form = dict(form_doc.doc or {})
        document = await self.store.get(doc_path) or {}
        action_type = form.get("@actionType") or ("merge" if document else "create")
        return Action(
            action_type=action_type,
            event_context=EventContext(
                id=event_id,
                uid=parent.event_context.uid,
                form_id=form.get("@formId") or event_id,
                doc_id=doc_id(doc_path),
                doc_path=doc_path,
                entity=entity,
            ),
            document=document,
            modified_fields=get_form_modified_fields(form, document),
            user=parent.user,
            status=ActionStatus.PROCESSING,
            metadata={**parent.metadata, "simulatedFrom": parent.event_context.id},
        )

    async def delay_and_check_cancelled(self, delay_ms: float, form_id: str) -> bool:
        logger.info("Delaying form %s for %sms", form_id, delay_ms)
        await asyncio.sleep(float(delay_ms) / 1000.0)
        form_state = await self.store.get(f"@forms/{form_id}") or {}
        return form_state.get("@status") == "cancel"

    async def simulate_submit_form(
        self, parent: Action, form_doc: LogicResultDoc, event_id: str, target_version: str
    ) -> Optional[DispatchOutcome]:
        synthetic = await self.build_synthetic_action(parent, form_doc, event_id)
        if synthetic is None:
            return None

        delay = (form_doc.doc or {}).get("@delay")
        if delay and await self.delay_and_check_cancelled(delay, synthetic.event_context.form_id):
            logger.info("Synthetic action %s cancelled during delay", event_id)
            return None

        outcome = await self.dispatch(synthetic, target_version)
        if outcome.status == RunBusinessLogicStatus.CANCEL_THEN_RETRY:
            raise CancelThenRetryError(event_id)
        return outcome
