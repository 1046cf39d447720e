"""
Response envelopes shared by every endpoint.
"""
from datetime import datetime
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field, ConfigDict

from gifter_jobs.utils.time import utc_now


class ResponseBase(BaseModel):
    """Successful response: a message plus an endpoint-specific ``data`` object."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ErrorResponse(BaseModel):
    """Error envelope written by the application's exception handlers."""
    success: bool = False
    message: str
    request_id: str = "unknown"
    error_type: Optional[str] = None
    details: Optional[List[Dict[str, Any]]] = None

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
