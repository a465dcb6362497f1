# services/docflow-service/docflow/models/action_models.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ActionStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    PROCESSED = "processed"
    PROCESSED_WITH_ERRORS = "processed-with-errors"


class RunBusinessLogicStatus(str, Enum):
    DONE = "done"
    NO_MATCHING_LOGICS = "no-matching-logics"
    CANCEL_THEN_RETRY = "cancel-then-retry"


class EventContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    uid: str = "service"
    form_id: Optional[str] = Field(default=None, alias="formId")
    doc_id: str = Field(..., alias="docId")
    doc_path: str = Field(..., alias="docPath")
    entity: str


class Action(BaseModel):
    """
    One inbound mutation, already validated and authorized by the surrounding flow.
    """
    model_config = ConfigDict(populate_by_name=True)

    action_type: str = Field(..., alias="actionType")
    event_context: EventContext = Field(..., alias="eventContext")
    document: Dict[str, Any] = Field(default_factory=dict)
    modified_fields: Dict[str, Any] = Field(default_factory=dict, alias="modifiedFields")
    user: Dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus = ActionStatus.NEW
    time_created: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="timeCreated"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


QueryOperator = Literal[
    "==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains", "array-contains-any"
]


class QueryCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field_name: str = Field(..., alias="fieldName")
    operator: QueryOperator
    value: Any = None
