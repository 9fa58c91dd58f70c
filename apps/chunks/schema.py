from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ChunkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    storage_path: str
    size: int
    content_type: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CorruptedEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    storage_path: str
    reason: str


class AuditReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    consistent: bool
    orphans: List[str]
    corrupted: List[CorruptedEntryOut]
    in_flight: List[str]
