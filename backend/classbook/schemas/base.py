"""
Base schemas and the response envelope shared by every endpoint.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Base model with standardized JSON encoding"""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)


class Envelope(StandardizedModel):
    """``{success, data?, error?, code?}`` wrapper around every response body."""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Any) -> "Envelope":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> "Envelope":
        return cls(success=False, error=error, code=code, details=details or None)

    def render(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
