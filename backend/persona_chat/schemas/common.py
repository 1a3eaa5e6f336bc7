from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class APIModel(BaseModel):
    """Base model accepting both field names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class ErrorResponse(APIModel):
    """Standard error response payload."""

    code: str
    message: str
    status: Optional[int] = Field(default=None)
