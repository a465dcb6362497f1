# services/docflow-service/docflow/app_loader.py
from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from docflow.core.errors import DocflowError
from docflow.logics.dispatch import LogicConfig
from docflow.logics.patch_logics import PatchLogicConfig

logger = logging.getLogger("docflow.app_loader")


@dataclass
class AppDefinition:
    entities: List[Any]
    db_structure: Mapping[str, Any]
    logic_configs: List[LogicConfig] = field(default_factory=list)
    patch_logic_configs: List[PatchLogicConfig] = field(default_factory=list)


def load_app_module(module_name: str) -> AppDefinition:
    """
    Import the application module and read its ENTITIES, DB_STRUCTURE and
    (optional) LOGIC_CONFIGS / PATCH_LOGIC_CONFIGS.
    """
    module = importlib.import_module(module_name)
    missing = [name for name in ("ENTITIES", "DB_STRUCTURE") if not hasattr(module, name)]
    if missing:
        raise DocflowError(f"App module {module_name!r} is missing {', '.join(missing)}")

    app = AppDefinition(
        entities=list(module.ENTITIES),
        db_structure=module.DB_STRUCTURE,
        logic_configs=list(getattr(module, "LOGIC_CONFIGS", [])),
        patch_logic_configs=list(getattr(module, "PATCH_LOGIC_CONFIGS", [])),
    )
    logger.info(
        "Loaded app module %s: %d entities, %d logics, %d patches",
        module_name, len(app.entities), len(app.logic_configs), len(app.patch_logic_configs),
    )
    return app
