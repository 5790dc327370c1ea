import uuid
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class LedgerCreate(BaseModel):
    client_id: uuid.UUID
    request_details: str = Field(..., max_length=1000)
    additional_notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("request_details")
    @classmethod
    def _details_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("The request details field is required.")
        return v

    @field_validator("additional_notes")
    @classmethod
    def _blank_notes_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class LedgerStatusUpdate(BaseModel):
    status: str
