"""Pydantic schemas for reservation payments"""
from pydantic import BaseModel
from typing import Optional


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class CapacityResponse(BaseModel):
    confirmed_count: int
    max_members: int
    is_full: bool
    spots_remaining: Optional[int] = None
