"""
Database Schemas for Digital Life Lessons

MongoDB collections are described below using Pydantic models. Clients send
free-form profile and lesson fields, so the document models accept extra keys
and only pin down the fields the API itself reads or writes.

We will use these collections:
- users: registered users (role user|admin, accessLevel free|premium)
- lessons: user-authored posts with likes, favorites and comments
- reports: abuse reports filed against lessons
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.networks import validate_email

Role = Literal["user", "admin"]
AccessLevel = Literal["free", "premium"]


class User(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str
    name: Optional[str] = None
    role: Role = Field("user")
    accessLevel: AccessLevel = Field("free")

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        # Stored exactly as sent; lookups use the raw string
        validate_email(v)
        return v


class Lesson(BaseModel):
    model_config = ConfigDict(extra="allow")

    lessonerEmail: Optional[str] = Field(None, description="Author email")
    lessonerName: Optional[str] = None
    title: Optional[str] = None
    likes: List[str] = Field(default_factory=list)
    likesCount: int = 0
    favorites: List[str] = Field(default_factory=list)
    favoriteCount: int = 0
    comments: List[Dict[str, Any]] = Field(default_factory=list)


class Report(BaseModel):
    model_config = ConfigDict(extra="allow")

    lessonId: str = Field(..., min_length=1)
    reporterUserId: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, description="e.g. spam|inappropriate|misinformation")
    message: Optional[str] = None


class CheckoutRequest(BaseModel):
    userName: Optional[str] = None
    userEmail: EmailStr
    userId: str
