"""Base Pydantic models shared by the API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Model exchanged with clients in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ErrorResponse(BaseModel):
    """Standard error response model.

    Extra fields (``remaining``, ``limit``, ``resetAt`` for quota errors)
    sit beside ``error`` at the top level.
    """

    model_config = ConfigDict(extra="allow")

    error: str = Field(description="Error message")
    correlation_id: str | None = Field(default=None, description="Request correlation ID")

    @classmethod
    def create(
        cls,
        message: str,
        correlation_id: str | None = None,
        **payload: Any,
    ) -> "ErrorResponse":
        """Create a standardized error response."""
        return cls(error=message, correlation_id=correlation_id, **payload)
