# services/docflow-service/docflow/core/distribution.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from docflow.config import settings
from docflow.core.batch import BatchWriter
from docflow.core.consolidation import Consolidator
from docflow.core.counters import GlobalCounters
from docflow.core.errors import InvalidInstructionError
from docflow.core.instructions import convert_instructions, merge_instructions, parse_global_counter
from docflow.core.misc import now_utc, revive_datetimes
from docflow.core.paths import get_dest_prop_and_id
from docflow.db.store import DocumentStore, Transaction, WriteKind, WriteOp, doc_id
from docflow.events.topics import FOR_DISTRIBUTION_TOPIC, INSTRUCTIONS_TOPIC, SUBMIT_FORM_TOPIC, MessagePublisher
from docflow.models import LogicResult, LogicResultDoc, LogicResultDocAction as A, Priority

logger = logging.getLogger("docflow.distribution")

_NEXT_PRIORITY = {Priority.LOW: Priority.NORMAL, Priority.NORMAL: Priority.HIGH}


def build_write_op(doc: LogicResultDoc) -> Optional[WriteOp]:
    """
    Physical write for one create/merge/delete intent, or None when there is
    nothing to write.
    """
    base_path, dest_prop, dest_prop_id = get_dest_prop_and_id(doc.dst_path)

    if doc.action == A.DELETE:
        if dest_prop and dest_prop_id:
            return WriteOp(kind=WriteKind.MERGE, path=base_path, unset=[f"{dest_prop}.{dest_prop_id}"])
        if dest_prop:
            return WriteOp(kind=WriteKind.MERGE, path=base_path, unset=[dest_prop])
        return WriteOp(kind=WriteKind.DELETE, path=base_path)

    prefix = ""
    if dest_prop:
        prefix = f"{dest_prop}.{dest_prop_id}." if dest_prop_id else f"{dest_prop}."

    data: Dict[str, Any] = {}
    if dest_prop:
        for key, value in (doc.doc or {}).items():
            data[prefix + key] = value
    elif doc.doc is not None or doc.action == A.CREATE:
        data = {**(doc.doc or {}), "@id": doc_id(base_path)}
        if doc.action == A.CREATE:
            data["@dateCreated"] = now_utc()

    transforms = convert_instructions(doc.instructions)
    for name in transforms.fields():
        # instructions win over plain values for the same field
        data.pop(prefix + name, None)

    op = WriteOp(
        kind=WriteKind.MERGE,
        path=base_path,
        data=data,
        increments={prefix + k: v for k, v in transforms.increments.items()},
        array_union={prefix + k: v for k, v in transforms.array_union.items()},
        array_remove={prefix + k: v for k, v in transforms.array_remove.items()},
        unset=[prefix + k for k in transforms.unset],
    )
    if not (op.data or op.increments or op.array_union or op.array_remove or op.unset):
        return None
    return op


class InstructionsReducer:
    """
    Collects queued instructions per destination path, nets them with
    merge_instructions, and applies one write per path when the window
    closes. A window of zero applies every message as it arrives.
    """

    def __init__(
        self,
        apply_fn: Callable[[List[LogicResultDoc]], Awaitable[Any]],
        window_seconds: float,
    ) -> None:
        self._apply = apply_fn
        self.window_seconds = window_seconds
        self._pending: Dict[str, Dict[str, str]] = {}
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> Dict[str, Dict[str, str]]:
        return {path: dict(instr) for path, instr in self._pending.items()}

    def add(self, dst_path: str, instructions: Dict[str, str]) -> None:
        self._pending[dst_path] = merge_instructions(self._pending.get(dst_path), instructions, dst_path) or {}

    async def on_instructions_message(self, payload: Dict[str, Any]) -> None:
        self.add(payload["dstPath"], payload.get("instructions") or {})
        if self.window_seconds <= 0:
            await self.flush()
        elif self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.window_seconds)
        try:
            await self.flush()
        except Exception:
            logger.exception("Applying reduced instructions failed")

    async def flush(self) -> List[LogicResultDoc]:
        pending, self._pending = self._pending, {}
        docs = [
            LogicResultDoc(action=A.MERGE, dst_path=path, instructions=instructions)
            for path, instructions in sorted(pending.items())
            if instructions
        ]
        if docs:
            logger.info("Applying reduced instructions for %d paths", len(docs))
            await self._apply(docs)
        return docs

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
        await self.flush()


class Distributor:
    """
    Applies consolidated write-intents to the store, immediately or via the
    for-distribution queue.
    """

    def __init__(
        self,
        store: DocumentStore,
        consolidator: Consolidator,
        publisher: MessagePublisher,
        batch_size: Optional[int] = None,
        queue_instructions: Optional[bool] = None,
        instructions_window_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.consolidator = consolidator
        self.publisher = publisher
        self.batch = BatchWriter(store, batch_size)
        self.counters = GlobalCounters(store)
        self.queue_instructions = (
            settings.instructions_queue_enabled if queue_instructions is None else queue_instructions
        )
        window = instructions_window_seconds
        if window is None:
            window = settings.instructions_window_ms / 1000
        self.reducer = InstructionsReducer(self._apply_reduced, window)

    async def distribute_doc(
        self,
        doc: LogicResultDoc,
        batch: Optional[BatchWriter] = None,
        txn: Optional[Transaction] = None,
    ) -> LogicResultDoc:
        """
        Applies one intent and returns it with globalCounter opcodes replaced
        by their values. With the instructions queue on, instructions are
        published for the reducer and only the plain fields are written here.
        """
        logger.debug("Distributing %s to %s", doc.action.value, doc.dst_path)

        if doc.action == A.SUBMIT_FORM:
            if txn is not None:
                logger.error("submit-form for %s is not supported in a transactional result; skipped", doc.dst_path)
                return doc
            await self.publisher.publish(SUBMIT_FORM_TOPIC, {**(doc.doc or {}), "@docPath": doc.dst_path})
            return doc
        if doc.action not in (A.CREATE, A.MERGE, A.DELETE):
            logger.debug("Nothing to distribute for %s at %s", doc.action.value, doc.dst_path)
            return doc

        to_write = doc
        if doc.action != A.DELETE and doc.instructions:
            doc = to_write = await self.resolve_counters(doc, txn)
            if txn is None and self.queue_instructions and doc.instructions:
                await self.publisher.publish(
                    INSTRUCTIONS_TOPIC, {"dstPath": doc.dst_path, "instructions": dict(doc.instructions)},
                )
                to_write = doc.model_copy(update={"instructions": None})

        await self._write(to_write, batch, txn)
        return doc

    async def resolve_counters(self, doc: LogicResultDoc, txn: Optional[Transaction] = None) -> LogicResultDoc:
        """Moves each globalCounter instruction into the doc as the counter's next value."""
        if not any(op.startswith("globalCounter") for op in (doc.instructions or {}).values()):
            return doc
        instructions = dict(doc.instructions or {})
        values: Dict[str, Any] = {}
        for field_name, opcode in list(instructions.items()):
            if not opcode.startswith("globalCounter"):
                continue
            del instructions[field_name]
            try:
                name, max_value = parse_global_counter(field_name, opcode)
            except InvalidInstructionError as e:
                logger.warning("%s; skipped", e)
                continue
            values[field_name] = await self.counters.next_value(name, max_value, txn)
        return doc.model_copy(update={
            "doc": {**(doc.doc or {}), **values},
            "instructions": instructions or None,
        })

    async def _apply_reduced(self, docs: List[LogicResultDoc]) -> None:
        for doc in docs:
            await self._write(await self.resolve_counters(doc), self.batch)
        await self.batch.commit()

    async def _write(
        self,
        doc: LogicResultDoc,
        batch: Optional[BatchWriter] = None,
        txn: Optional[Transaction] = None,
    ) -> None:
        op = build_write_op(doc)
        if op is None:
            return
        if batch is not None:
            await batch.apply(op)
        elif txn is not None:
            txn.write(op)
        else:
            single = self.store.batch()
            single.write(op)
            await single.commit()

    async def distribute_non_transactional(self, grouped: Dict[str, List[LogicResultDoc]]) -> List[LogicResultDoc]:
        distributed: List[LogicResultDoc] = []
        for dst_path in sorted(grouped):
            for doc in grouped[dst_path]:
                distributed.append(await self.distribute_doc(doc, self.batch))
        await self.batch.commit()
        return distributed

    async def distribute_transactional(self, txn: Transaction, results: Sequence[LogicResult]) -> List[LogicResultDoc]:
        transactional = [r for r in results if r.transactional]
        if not transactional:
            return []
        grouped = await self.consolidator.expand_consolidate_and_group_by_dst_path(
            [d for r in transactional for d in r.documents]
        )
        distributed: List[LogicResultDoc] = []
        for docs in grouped.values():
            for doc in docs:
                distributed.append(await self.distribute_doc(doc, txn=txn))
        return distributed

    # ---------- deferred distribution ---------- #
    async def queue_for_distribution_later(self, docs: Sequence[LogicResultDoc], target_version: str) -> None:
        for doc in docs:
            await self.publisher.publish(
                FOR_DISTRIBUTION_TOPIC,
                {"logicResultDoc": doc.to_message(), "targetVersion": target_version},
            )

    async def distribute_later(self, grouped: Dict[str, List[LogicResultDoc]], target_version: str) -> None:
        logger.info("Queuing %d paths for later distribution", len(grouped))
        await self.queue_for_distribution_later([d for docs in grouped.values() for d in docs], target_version)

    async def on_for_distribution_message(self, payload: Dict[str, Any]) -> List[LogicResultDoc]:
        """
        Steps a deferred intent one priority level up per delivery and applies
        it at high. Returns the intents that were written.
        """
        doc = LogicResultDoc.model_validate(revive_datetimes(payload["logicResultDoc"]))
        target_version = payload.get("targetVersion", "0.0.0")
        priority = doc.priority or Priority.NORMAL

        if priority == Priority.HIGH:
            return [await self.distribute_doc(doc)]

        bumped = doc.model_copy(update={"priority": _NEXT_PRIORITY[priority]})
        await self.queue_for_distribution_later([bumped], target_version)
        return []
