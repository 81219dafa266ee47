"""Conversion requests and results."""

from typing import Optional

from pydantic import BaseModel, Field

from autopilot_kernel.models.ledger import ConversionMeta


class ConversionRequest(BaseModel):
    workspace_id: str
    contact_id: Optional[str] = None
    phone: Optional[str] = None
    reason: Optional[str] = None
    meta: ConversionMeta = Field(default_factory=ConversionMeta)


class ConversionResult(BaseModel):
    ok: bool
    contact_id: Optional[str] = None
    deduped: bool = False
