"""
LessonLoop Backend — LoopAssist Schemas
========================================
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProposalCreate(BaseModel):
    message: str = Field(min_length=1, max_length=4000, description="What the user asked for")


class ProposalResponse(BaseModel):
    id: uuid.UUID
    action_type: str
    description: str
    params: Dict[str, Any] = Field(default_factory=dict)
    entities: List[Dict[str, Any]] = Field(default_factory=list)
    status: str = Field(description="proposed, executed, failed or cancelled")
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    executed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
