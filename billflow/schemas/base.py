"""
Base schema classes.

RULE: response schemas that read ORM objects inherit from BaseResponseSchema;
request bodies inherit from BaseCreateSchema / BaseUpdateSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas built from ORM models.

    Usage:
        class InvoiceBrief(BaseResponseSchema):
            id: UUID
            invoice_number: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Base class for create/input schemas. Unknown fields are ignored."""
    model_config = ConfigDict(
        extra='ignore',
    )


class BaseUpdateSchema(BaseModel):
    """
    Base class for update schemas.

    All fields are optional; only the fields the caller sent
    (``model_fields_set``) are applied.
    """
    model_config = ConfigDict(
        extra='ignore',
    )
