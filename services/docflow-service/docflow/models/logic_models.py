# services/docflow-service/docflow/models/logic_models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────
# Write-intents
# ─────────────────────────────────────────────────────────────

class LogicResultDocAction(str, Enum):
    CREATE = "create"
    MERGE = "merge"
    DELETE = "delete"
    COPY = "copy"
    RECURSIVE_COPY = "recursive-copy"
    RECURSIVE_DELETE = "recursive-delete"
    SUBMIT_FORM = "submit-form"
    SIMULATE_SUBMIT_FORM = "simulate-submit-form"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class LogicResultDoc(BaseModel):
    """
    A pending, not-yet-applied mutation.

    dst_path may address a whole document ("users/u1"), a map property
    ("servers/s1#createdBy") or one entry of an array-map property
    ("posts/p1#followers[u1]").
    """
    model_config = ConfigDict(populate_by_name=True)

    action: LogicResultDocAction
    dst_path: str = Field(..., alias="dstPath")
    src_path: Optional[str] = Field(default=None, alias="srcPath")
    doc: Optional[Dict[str, Any]] = None
    instructions: Optional[Dict[str, str]] = None
    priority: Optional[Priority] = None
    skip_entity_during_recursion: Optional[List[str]] = Field(
        default=None, alias="skipEntityDuringRecursion"
    )
    skip_run_view_logics: bool = Field(default=False, alias="skipRunViewLogics")

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ─────────────────────────────────────────────────────────────
# Logic results
# ─────────────────────────────────────────────────────────────

class LogicResultStatus(str, Enum):
    FINISHED = "finished"
    ERROR = "error"
    PARTIAL_RESULT = "partial-result"
    CANCEL_THEN_RETRY = "cancel-then-retry"


class LogicResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    status: LogicResultStatus
    documents: List[LogicResultDoc] = Field(default_factory=list)
    message: Optional[str] = None
    exec_time: Optional[float] = Field(default=None, alias="execTime")
    time_finished: Optional[datetime] = Field(default=None, alias="timeFinished")
    next_page: Optional[Dict[str, Any]] = Field(default=None, alias="nextPage")
    transactional: bool = False
