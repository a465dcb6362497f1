# services/docflow-service/docflow/events/topics.py
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

VIEW_LOGICS_TOPIC = "view-logics"
FOR_DISTRIBUTION_TOPIC = "for-distribution"
PATCH_LOGICS_TOPIC = "patch-logics"
SUBMIT_FORM_TOPIC = "submit-form"
INSTRUCTIONS_TOPIC = "instructions"


class MessagePublisher(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any], message_id: Optional[str] = None) -> None: ...
