# services/docflow-service/docflow/models/view_models.py
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DestPropType(str, Enum):
    MAP = "map"
    ARRAY_MAP = "array-map"


class DestProp(BaseModel):
    name: str
    type: DestPropType = DestPropType.MAP


class ViewDefinitionOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_create: bool = Field(default=False, alias="syncCreate")
    peer_sync: bool = Field(default=False, alias="peerSync")


class ViewDefinition(BaseModel):
    """
    Keeps dest_entity documents (or one of their properties) in sync with
    the listed src_props of src_entity documents.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    src_entity: str = Field(..., alias="srcEntity")
    src_props: List[str] = Field(default_factory=list, alias="srcProps")
    dest_entity: str = Field(..., alias="destEntity")
    dest_prop: Optional[DestProp] = Field(default=None, alias="destProp")
    options: ViewDefinitionOptions = Field(default_factory=ViewDefinitionOptions)
    version: str = "0.0.0"

    @property
    def logic_name(self) -> str:
        return f"{self.dest_entity}#{self.dest_prop.name}" if self.dest_prop else self.dest_entity


# ─────────────────────────────────────────────────────────────
# Bookkeeping documents
# ─────────────────────────────────────────────────────────────

class ViewLink(BaseModel):
    """
    Stored at <srcPath>/@views/<id>; one per (destination path, destination property).
    """
    model_config = ConfigDict(populate_by_name=True)

    path: str
    src_props: List[str] = Field(default_factory=list, alias="srcProps")
    dest_entity: str = Field(..., alias="destEntity")
    dest_prop: Optional[str] = Field(default=None, alias="destProp")

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SyncCreateRegistration(BaseModel):
    """
    Stored at @syncCreateViews/<id>; children created under src_path get a view under dst_path.
    """
    model_config = ConfigDict(populate_by_name=True)

    dest_entity: str = Field(..., alias="destEntity")
    dst_path: str = Field(..., alias="dstPath")
    src_path: str = Field(..., alias="srcPath")

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True)
