"""Pydantic schemas for requests and responses.

Request bodies for the admin actions, plus read models so the API never
leaks table internals.
"""
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel


class ClinicCreate(BaseModel):
    slug: str
    name: str


class ClinicRead(BaseModel):
    id: int
    slug: str
    name: str


class SessionCreate(BaseModel):
    name: str


class SessionRead(BaseModel):
    id: int
    clinic_id: int
    name: str
    is_active: bool


class EndSessionRequest(BaseModel):
    confirm: bool = False


class AdvanceRequest(BaseModel):
    current_token: int
    no_shows: Optional[List[int]] = None


class ManualSetRequest(BaseModel):
    # Raw value from the override box; parsed server side.
    value: Union[int, str]


class RequeueRequest(BaseModel):
    token: int


class TokenStateRead(BaseModel):
    clinic_id: int
    session_id: int
    current_token: int
    no_shows: List[int]
    last_updated: datetime


class ManualSetResult(BaseModel):
    applied: bool
    state: TokenStateRead
