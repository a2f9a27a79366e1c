from enum import Enum
from typing import Any, Dict, Optional, List
import uuid

from pydantic import Field

from lunchbox.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from lunchbox.utils.datetime_utils import utc_now


class ResponseStatus(str, Enum):
    """Response status enumeration"""

    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class ApiResponse(BaseModel):
    """Standard envelope wrapping every HTTP response"""

    success: bool = Field(..., description="Whether the request was successful")
    status: ResponseStatus = Field(..., description="Response status")
    message: str = Field(..., description="Human-readable message")
    data: Optional[Any] = Field(default=None, description="Response data")
    meta: Optional[Dict[str, Any]] = Field(
        default=None, description="Additional metadata"
    )
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Error details"
    )
    warnings: Optional[List[str]] = Field(default=None, description="Warning messages")
    timestamp: str = Field(
        default_factory=lambda: utc_now().isoformat(),
        description="Response timestamp",
    )
    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique request identifier",
    )
    path: Optional[str] = Field(default=None, description="Request path")
