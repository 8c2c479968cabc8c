"""Request bodies for the UniKYC HTTP API. Binary fields travel as base64."""

from typing import List, Optional

from pydantic import BaseModel, Field


class StatusRequest(BaseModel):
    identifier: str = Field(..., min_length=1, description="ENS-style name or 0x address")


class SchemeSpec(BaseModel):
    total_shares: int = Field(..., ge=1, le=255)
    required_shares: int = Field(..., ge=1, le=255)


class SubmitRequest(BaseModel):
    identifier: str = Field(..., min_length=1)
    payload_b64: str
    unlock_block_height: int = Field(..., gt=0)
    scheme: Optional[SchemeSpec] = None
    gas_budget: Optional[int] = Field(default=None, gt=0)


class ApproveRequest(BaseModel):
    validity_days: Optional[int] = Field(default=None, gt=0)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ReleaseRequest(BaseModel):
    shares_b64: List[str] = Field(default_factory=list)


class UnlockCallbackRequest(BaseModel):
    request_id: str = Field(..., min_length=1)
    material_b64: str


class LoginRequest(BaseModel):
    message: str
    signature: str
