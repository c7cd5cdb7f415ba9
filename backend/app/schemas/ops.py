"""Pydantic schemas for ops operations"""
from pydantic import BaseModel, Field
from typing import List, Optional


class VerifyPasswordRequest(BaseModel):
    password: str = ""


class AllowlistAddRequest(BaseModel):
    emails: List[str] = Field(..., min_length=1)
    notes: Optional[str] = None


class AllowlistRemoveRequest(BaseModel):
    emails: List[str] = Field(..., min_length=1)


class OpsOverrideRequest(BaseModel):
    approved: bool
    approver_email: Optional[str] = None
    notes: Optional[str] = None


class ConfigUpdateRequest(BaseModel):
    value: str
    description: Optional[str] = None
