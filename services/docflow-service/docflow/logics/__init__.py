# services/docflow-service/docflow/logics/__init__.py
from __future__ import annotations

# re-export for convenience
from .dispatch import (
    LogicConfig,
    LogicRegistry,
    DispatchOutcome,
    BusinessLogicDispatcher,
    run_business_logics,
)
from .patch_logics import PatchLogicConfig, PatchLogicDispatcher
from .retry import RetryScheduler
from .view_logics import ViewLogicConfig, ViewLogicEngine, create_view_logic_fns

__all__ = [
    "LogicConfig",
    "LogicRegistry",
    "DispatchOutcome",
    "BusinessLogicDispatcher",
    "run_business_logics",
    "PatchLogicConfig",
    "PatchLogicDispatcher",
    "RetryScheduler",
    "ViewLogicConfig",
    "ViewLogicEngine",
    "create_view_logic_fns",
]
