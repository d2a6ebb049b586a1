from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


class OperationEventType(str, Enum):
    OPERATION = "operation"
    ERROR = "error"
    SYSTEM = "system"


class OperationLogEntry(DBSerializableModel):
    """
    Structured diagnostic entry persisted to DB and optionally mirrored to file log.

    Not a source of truth for balances; see CreditEvent for that.
    """

    collection_name: ClassVar[str] = "credit_operation_log"

    id: Optional[str] = Field(default=None)
    event_type: OperationEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
