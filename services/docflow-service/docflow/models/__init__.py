# services/docflow-service/docflow/models/__init__.py
from .logic_models import (
    LogicResultDocAction,
    Priority,
    LogicResultDoc,
    LogicResultStatus,
    LogicResult,
)

from .action_models import (
    ActionStatus,
    RunBusinessLogicStatus,
    EventContext,
    Action,
    QueryOperator,
    QueryCondition,
)

from .view_models import (
    DestPropType,
    DestProp,
    ViewDefinitionOptions,
    ViewDefinition,
    ViewLink,
    SyncCreateRegistration,
)

__all__ = [
    # logic_models
    "LogicResultDocAction",
    "Priority",
    "LogicResultDoc",
    "LogicResultStatus",
    "LogicResult",
    # action_models
    "ActionStatus",
    "RunBusinessLogicStatus",
    "EventContext",
    "Action",
    "QueryOperator",
    "QueryCondition",
    # view_models
    "DestPropType",
    "DestProp",
    "ViewDefinitionOptions",
    "ViewDefinition",
    "ViewLink",
    "SyncCreateRegistration",
]
