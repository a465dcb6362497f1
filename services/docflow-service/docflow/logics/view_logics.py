# services/docflow-service/docflow/logics/view_logics.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from docflow.config import settings
from docflow.core.consolidation import Consolidator
from docflow.core.distribution import Distributor
from docflow.core.misc import now_utc, revive_datetimes
from docflow.core.paths import PathResolver, get_dest_prop_and_id
from docflow.core.versions import version_compare
from docflow.db.store import doc_id, parent_path
from docflow.events.topics import VIEW_LOGICS_TOPIC, MessagePublisher
from docflow.infra.telemetry import timer
from docflow.models import (
    DestPropType,
    LogicResult,
    LogicResultDoc,
    LogicResultDocAction as A,
    LogicResultStatus,
    QueryCondition,
    SyncCreateRegistration,
    ViewDefinition,
    ViewLink,
)
from docflow.schema.compiler import SchemaRegistry, placeholder_names

logger = logging.getLogger("docflow.view_logics")

AT_VIEWS = "@views"
SYNC_CREATE_VIEWS = "@syncCreateViews"
VIEWS_ALREADY_BUILT = "@viewsAlreadyBuilt"

ViewLogicFn = Callable[[LogicResultDoc, str, Optional[str]], Awaitable[LogicResult]]


def form_view_doc_id(view_dst_path: str) -> str:
    return view_dst_path.replace("/", "+").replace("#", "+").lstrip("+")


def form_at_views_path(view_dst_path: str, src_path: str) -> str:
    return f"{src_path}/{AT_VIEWS}/{form_view_doc_id(view_dst_path)}"


@dataclass
class ViewLogicContext:
    registry: SchemaRegistry
    resolver: PathResolver
    page_size: int = 100

    @property
    def store(self):
        return self.resolver.store


# ─────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ViewLogicConfig:
    """
    One direction of one view definition.

    dest_prop is the destination property a write-intent must address to
    match; None means whole-document writes only.
    """
    name: str
    entity: str
    actions: Tuple[A, ...]
    version: str
    view_logic_fn: ViewLogicFn = field(compare=False, repr=False)
    modified_fields: Optional[Tuple[str, ...]] = None
    dest_prop: Optional[str] = None

    def matches(self, doc: LogicResultDoc, entity: Optional[str], target_version: str) -> bool:
        if entity != self.entity or doc.action not in self.actions:
            return False
        if version_compare(self.version, target_version) > 0:
            return False
        if get_dest_prop_and_id(doc.dst_path).dest_prop != self.dest_prop:
            return False
        if self.modified_fields is not None and doc.action == A.MERGE:
            touched = set(doc.doc or {}) | set(doc.instructions or {})
            if not touched.intersection(self.modified_fields):
                return False
        return True


# ─────────────────────────────────────────────────────────────
# Logic functions
# ─────────────────────────────────────────────────────────────

def create_view_logic_fns(view_def: ViewDefinition, ctx: ViewLogicContext) -> Tuple[ViewLogicFn, ViewLogicFn]:
    """
    Returns (source-to-destination, destination-to-source) logic functions
    for one view definition.
    """
    src_entity = view_def.src_entity
    src_props = sorted(view_def.src_props)
    dest_entity = view_def.dest_entity
    dest_prop = view_def.dest_prop
    options = view_def.options
    logic_name = view_def.logic_name
    built_flag = f"{VIEWS_ALREADY_BUILT}+{logic_name}"

    def _link_doc(view_path: str) -> Dict[str, Any]:
        return ViewLink(
            path=view_path,
            src_props=src_props,
            dest_entity=dest_entity,
            dest_prop=dest_prop.name if dest_prop else None,
        ).to_doc()

    def _view_merge(view_path: str, doc: LogicResultDoc) -> LogicResultDoc:
        data = doc.doc or {}
        instructions = doc.instructions or {}
        view_doc: Dict[str, Any] = {"@updatedByViewDefinitionAt": now_utc()}
        view_doc.update({p: data[p] for p in src_props if p in data})
        view_instructions = {p: instructions[p] for p in src_props if p in instructions}
        return LogicResultDoc(
            action=A.MERGE,
            dst_path=view_path,
            doc=view_doc,
            instructions=view_instructions or None,
            skip_run_view_logics=True,
        )

    def _array_membership(view_path: str, src_id: str, sign: str) -> List[LogicResultDoc]:
        base_path, prop, prop_id = get_dest_prop_and_id(view_path)
        if not prop or prop_id is None:
            return []
        return [LogicResultDoc(
            action=A.MERGE,
            dst_path=base_path,
            instructions={f"@{prop}": f"arr{sign}({src_id})"},
            skip_run_view_logics=True,
        )]

    async def _destination_exists(view_path: str) -> bool:
        base_path, prop, prop_id = get_dest_prop_and_id(view_path)
        base_doc = await ctx.store.get(base_path)
        if base_doc is None:
            return False
        if prop is None:
            return True
        if prop not in base_doc:
            return False
        if prop_id is not None:
            holder = base_doc[prop]
            return isinstance(holder, dict) and prop_id in holder
        return True

    async def _sync_create(doc: LogicResultDoc) -> List[LogicResultDoc]:
        src_path = doc.dst_path
        src_id = doc_id(src_path)
        rows = await ctx.store.query(SYNC_CREATE_VIEWS, [
            QueryCondition(field_name="srcPath", operator="==", value=parent_path(src_path)),
            QueryCondition(field_name="destEntity", operator="==", value=dest_entity),
        ])
        documents: List[LogicResultDoc] = []
        for _, reg in rows:
            dst_parent = reg["dstPath"]
            view_path = f"{dst_parent}[{src_id}]" if "#" in dst_parent else f"{dst_parent}/{src_id}"
            documents.append(LogicResultDoc(
                action=A.CREATE,
                dst_path=view_path,
                doc={**(doc.doc or {}), "@id": src_id},
                skip_run_view_logics=True,
            ))
            documents.append(LogicResultDoc(
                action=A.CREATE,
                dst_path=form_at_views_path(view_path, src_path),
                doc=_link_doc(view_path),
                skip_run_view_logics=True,
            ))
            documents.extend(_array_membership(view_path, src_id, "+"))
        return documents

    async def _hydrate_view_paths(src_path: str) -> List[str]:
        """Every existing destination of this view for one source document."""
        src_id = doc_id(src_path)
        template = ctx.registry.doc_paths.get(dest_entity)
        if template is None:
            return []
        conditions: Dict[str, QueryCondition] = {}
        if dest_prop is None:
            template = f"{template.rsplit('/', 1)[0]}/{src_id}"
        elif dest_prop.type == DestPropType.ARRAY_MAP:
            conditions[dest_entity] = QueryCondition(
                field_name=f"{dest_prop.name}.{src_id}", operator="!=", value=None)
        else:
            conditions[dest_entity] = QueryCondition(
                field_name=f"{dest_prop.name}.@id", operator="==", value=src_id)

        view_paths = []
        for path in await ctx.resolver.hydrate(template, conditions):
            if path == src_path:
                continue
            if dest_prop is None:
                view_paths.append(path)
            elif dest_prop.type == DestPropType.ARRAY_MAP:
                view_paths.append(f"{path}#{dest_prop.name}[{src_id}]")
            else:
                view_paths.append(f"{path}#{dest_prop.name}")
        return view_paths

    async def _peer_sync(doc: LogicResultDoc, covered: set) -> List[LogicResultDoc]:
        return [
            _view_merge(view_path, doc)
            for view_path in await _hydrate_view_paths(doc.dst_path)
            if view_path not in covered
        ]

    async def _build_links(doc: LogicResultDoc, covered: set) -> List[LogicResultDoc]:
        """
        Backfills the @views collection of a source document that predates
        this view: destinations are found by hydration, linked, and then
        updated like any linked destination. Runs once per source document.
        """
        src_path = doc.dst_path
        if doc.action == A.DELETE:
            src_doc = doc.doc or {}
        else:
            src_doc = await ctx.store.get(src_path)
            if src_doc is None:
                return []
        if src_doc.get(built_flag) or src_doc.get("@dateCreated"):
            return []

        logger.info("Building %s views of %s from existing destinations", logic_name, src_path)
        view_paths = [p for p in await _hydrate_view_paths(src_path) if p not in covered]
        covered.update(view_paths)

        documents: List[LogicResultDoc] = []
        if doc.action == A.DELETE:
            for view_path in view_paths:
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=view_path, skip_run_view_logics=True))
                documents.extend(_array_membership(view_path, doc_id(src_path), "-"))
            return documents

        for view_path in view_paths:
            documents.append(LogicResultDoc(
                action=A.CREATE,
                dst_path=form_at_views_path(view_path, src_path),
                doc=_link_doc(view_path),
                skip_run_view_logics=True,
            ))
            documents.append(_view_merge(view_path, doc))
        documents.append(LogicResultDoc(
            action=A.MERGE,
            dst_path=src_path,
            doc={built_flag: True},
            skip_run_view_logics=True,
        ))
        return documents

    async def src_to_dst(doc: LogicResultDoc, target_version: str,
                         last_processed_id: Optional[str] = None) -> LogicResult:
        name = f"{logic_name} ViewLogic"
        src_path = doc.dst_path
        src_id = doc_id(src_path)
        logger.debug("Executing %s on %s", name, src_path)

        if doc.action == A.CREATE:
            documents = await _sync_create(doc) if options.sync_create else []
            return LogicResult(name=name, status=LogicResultStatus.FINISHED, documents=documents,
                               time_finished=now_utc())

        conditions = [QueryCondition(field_name="destEntity", operator="==", value=dest_entity)]
        if dest_prop:
            conditions.append(QueryCondition(field_name="destProp", operator="==", value=dest_prop.name))
        if doc.action == A.MERGE:
            # stored srcProps may predate the declaration; relevance follows the declaration
            modified = set(doc.doc or {}) | set(doc.instructions or {})
            if not modified.intersection(src_props):
                return LogicResult(name=name, status=LogicResultStatus.FINISHED, time_finished=now_utc())

        rows = await ctx.store.query(
            f"{src_path}/{AT_VIEWS}",
            conditions,
            order_by=["@dateCreated"],
            start_after_id=last_processed_id,
            limit=ctx.page_size,
        )

        documents: List[LogicResultDoc] = []
        covered = set()
        for view_id, link in rows:
            at_views_path = f"{src_path}/{AT_VIEWS}/{view_id}"
            view_path = link.get("path")
            if not view_path:
                logger.warning("%s has no path; removing", at_views_path)
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=at_views_path, skip_run_view_logics=True))
                continue
            covered.add(view_path)

            if doc.action == A.DELETE:
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=view_path, skip_run_view_logics=True))
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=at_views_path, skip_run_view_logics=True))
                documents.extend(_array_membership(view_path, src_id, "-"))
                continue

            if not await _destination_exists(view_path):
                logger.info("View %s no longer exists; removing %s", view_path, at_views_path)
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=at_views_path, skip_run_view_logics=True))
                continue

            documents.append(_view_merge(view_path, doc))

            # self-heal the bookkeeping doc when declarations changed
            expected_id = form_view_doc_id(view_path)
            if view_id != expected_id:
                documents.append(LogicResultDoc(action=A.DELETE, dst_path=at_views_path, skip_run_view_logics=True))
                documents.append(LogicResultDoc(
                    action=A.CREATE,
                    dst_path=f"{src_path}/{AT_VIEWS}/{expected_id}",
                    doc=_link_doc(view_path),
                    skip_run_view_logics=True,
                ))
            elif list(link.get("srcProps") or []) != src_props:
                documents.append(LogicResultDoc(
                    action=A.MERGE,
                    dst_path=at_views_path,
                    doc={"srcProps": src_props},
                    skip_run_view_logics=True,
                ))

        if not rows and last_processed_id is None:
            documents.extend(await _build_links(doc, covered))

        if doc.action == A.MERGE and options.peer_sync and last_processed_id is None:
            documents.extend(await _peer_sync(doc, covered))

        if len(rows) >= ctx.page_size:
            return LogicResult(
                name=name,
                status=LogicResultStatus.PARTIAL_RESULT,
                documents=documents,
                next_page={"last_processed_id": rows[-1][0]},
                time_finished=now_utc(),
            )
        return LogicResult(name=name, status=LogicResultStatus.FINISHED, documents=documents,
                           time_finished=now_utc())

    def _resolve_src_path(base_path: str, src_id: str, data: Dict[str, Any]) -> Optional[str]:
        template = ctx.registry.doc_paths.get(src_entity)
        if template is None:
            return None
        names = placeholder_names(template)
        ref = ctx.registry.parse_entity(base_path)
        dest_ids = ref.ids if ref else {}
        values: Dict[str, str] = {}
        for i, pname in enumerate(names):
            if i == len(names) - 1:
                values[pname] = src_id
            elif pname in data:
                values[pname] = str(data[pname])
            elif pname in dest_ids:
                values[pname] = dest_ids[pname]
        path = template
        for pname, value in values.items():
            path = path.replace(f"{{{pname}}}", value)
        return path

    async def dst_to_src(doc: LogicResultDoc, target_version: str,
                         last_processed_id: Optional[str] = None) -> LogicResult:
        name = f"{logic_name} Dst-to-Src"
        base_path, prop, prop_id = get_dest_prop_and_id(doc.dst_path)
        data = doc.doc or {}

        src_id = prop_id or data.get("@id") or (doc_id(base_path) if prop is None else None)
        if not src_id:
            logger.error("Document does not have an @id attribute")
            return LogicResult(name=name, status=LogicResultStatus.ERROR,
                               message="Document does not have an @id attribute")

        src_path = _resolve_src_path(base_path, str(src_id), data)
        if not src_path or "{" in src_path:
            logger.error("srcPath should not have a placeholder")
            return LogicResult(name=name, status=LogicResultStatus.ERROR,
                               message="srcPath should not have a placeholder")

        at_views_path = form_at_views_path(doc.dst_path, src_path)
        documents: List[LogicResultDoc] = []

        if doc.action == A.DELETE:
            documents.append(LogicResultDoc(action=A.DELETE, dst_path=at_views_path, skip_run_view_logics=True))
            documents.extend(_array_membership(doc.dst_path, str(src_id), "-"))
            return LogicResult(name=name, status=LogicResultStatus.FINISHED, documents=documents)

        documents.append(LogicResultDoc(
            action=A.CREATE,
            dst_path=at_views_path,
            doc=_link_doc(doc.dst_path),
            skip_run_view_logics=True,
        ))
        documents.extend(_array_membership(doc.dst_path, str(src_id), "+"))

        if options.sync_create:
            documents.extend(await _register_sync_create(doc.dst_path, src_path))
        return LogicResult(name=name, status=LogicResultStatus.FINISHED, documents=documents)

    async def _register_sync_create(dst_path: str, src_path: str) -> List[LogicResultDoc]:
        base_path, prop, prop_id = get_dest_prop_and_id(dst_path)
        if dest_prop is None:
            if prop is not None:
                logger.error("invalid syncCreate dstPath, %s", dst_path)
                return []
            dst_parent = parent_path(dst_path)
        elif dest_prop.type == DestPropType.ARRAY_MAP and prop_id is not None:
            dst_parent = f"{base_path}#{prop}"
        else:
            logger.debug("Map views hold a single copy; no syncCreate registration for %s", dst_path)
            return []

        reg_path = f"{SYNC_CREATE_VIEWS}/{form_view_doc_id(dst_parent)}"
        if await ctx.resolver.does_path_exist(reg_path):
            logger.info("%s already exists; skipping creation", reg_path)
            return []
        registration = SyncCreateRegistration(
            dest_entity=dest_entity,
            dst_path=dst_parent,
            src_path=parent_path(src_path),
        )
        return [LogicResultDoc(action=A.CREATE, dst_path=reg_path, doc=registration.to_doc(),
                               skip_run_view_logics=True)]

    return src_to_dst, dst_to_src


def build_view_logic_configs(view_defs: Sequence[ViewDefinition], ctx: ViewLogicContext) -> List[ViewLogicConfig]:
    configs: List[ViewLogicConfig] = []
    for vd in view_defs:
        src_to_dst, dst_to_src = create_view_logic_fns(vd, ctx)
        forward_actions = (A.MERGE, A.DELETE) + ((A.CREATE,) if vd.options.sync_create else ())
        configs.append(ViewLogicConfig(
            name=f"{vd.logic_name} ViewLogic",
            entity=vd.src_entity,
            actions=forward_actions,
            version=vd.version,
            view_logic_fn=src_to_dst,
            modified_fields=tuple(vd.src_props),
        ))
        configs.append(ViewLogicConfig(
            name=f"{vd.logic_name} Dst-to-Src",
            entity=vd.dest_entity,
            actions=(A.CREATE, A.DELETE),
            version=vd.version,
            view_logic_fn=dst_to_src,
            dest_prop=vd.dest_prop.name if vd.dest_prop else None,
        ))
    return configs


# ─────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────

class ViewLogicEngine:
    """
    Runs the view logics matching an applied write-intent and feeds their
    output back through consolidation and distribution.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        resolver: PathResolver,
        consolidator: Consolidator,
        distributor: Distributor,
        publisher: MessagePublisher,
        page_size: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.consolidator = consolidator
        self.distributor = distributor
        self.publisher = publisher
        self.ctx = ViewLogicContext(registry, resolver, page_size or settings.views_page_size)
        self.configs = build_view_logic_configs(registry.view_definitions, self.ctx)

    def find_matching_view_logics(self, doc: LogicResultDoc, target_version: str) -> Dict[str, ViewLogicConfig]:
        """Highest eligible version per logic name."""
        base_path = get_dest_prop_and_id(doc.dst_path).base_path
        entity = self.registry.find_entity(base_path)
        if not entity:
            return {}
        best: Dict[str, ViewLogicConfig] = {}
        for cfg in self.configs:
            if not cfg.matches(doc, entity, target_version):
                continue
            prev = best.get(cfg.name)
            if prev is None or version_compare(prev.version, cfg.version) < 0:
                best[cfg.name] = cfg
        return best

    async def run_view_logics(
        self,
        doc: LogicResultDoc,
        target_version: str,
        last_processed_id: Optional[str] = None,
        logic_name: Optional[str] = None,
    ) -> List[LogicResult]:
        matching = self.find_matching_view_logics(doc, target_version)
        if logic_name is not None:
            matching = {k: v for k, v in matching.items() if k == logic_name}

        results: List[LogicResult] = []
        for name, cfg in matching.items():
            with timer(name, warn_above_ms=settings.slow_logic_threshold_ms) as elapsed:
                try:
                    result = await cfg.view_logic_fn(doc, target_version, last_processed_id)
                except Exception as e:
                    logger.exception("View logic %s failed for %s", name, doc.dst_path)
                    result = LogicResult(name=name, status=LogicResultStatus.ERROR, message=str(e),
                                         time_finished=now_utc())
            results.append(result.model_copy(update={"exec_time": elapsed.ms}))
        return results

    async def queue_run_view_logics(self, target_version: str, docs: Sequence[LogicResultDoc]) -> int:
        queued = 0
        for doc in docs:
            if doc.skip_run_view_logics or doc.action not in (A.CREATE, A.MERGE, A.DELETE):
                continue
            if not self.find_matching_view_logics(doc, target_version):
                continue
            await self.publisher.publish(VIEW_LOGICS_TOPIC, {"doc": doc.to_message(), "targetVersion": target_version})
            queued += 1
        return queued

    async def on_view_logics_message(self, payload: Dict[str, Any]) -> List[LogicResult]:
        doc = LogicResultDoc.model_validate(revive_datetimes(payload["doc"]))
        target_version = payload.get("targetVersion") or settings.app_version
        results = await self.run_view_logics(
            doc, target_version, payload.get("lastProcessedId"), payload.get("logicName"),
        )

        for result in results:
            if result.status == LogicResultStatus.PARTIAL_RESULT and result.next_page:
                await self.publisher.publish(VIEW_LOGICS_TOPIC, {
                    "doc": doc.to_message(),
                    "targetVersion": target_version,
                    "logicName": result.name,
                    "lastProcessedId": result.next_page["last_processed_id"],
                })

        grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(
            [d for r in results for d in r.documents]
        )
        distributed = await self.distributor.distribute_non_transactional(grouped)
        await self.queue_run_view_logics(target_version, distributed)
        return results
