"""Pydantic schemas for the user directory."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserType(str, Enum):
    """Marketplace role of an account."""
    HOMEOWNER = "homeowner"
    HOUSEKEEPER = "housekeeper"
    ADMIN = "admin"


class UserRecord(BaseModel):
    """Full directory row, including presence fields."""
    id: str
    firstName: str
    lastName: str
    email: str
    userType: UserType
    profileImage: Optional[str] = None
    isOnline: bool = False
    lastSeen: Optional[datetime] = None


class PublicUser(BaseModel):
    """Public display fields shared with other users (``get_users``)."""
    id: str
    firstName: str
    lastName: str
    profileImage: Optional[str] = None
    userType: UserType
    isOnline: bool = False
    lastSeen: Optional[datetime] = None


class SenderInfo(BaseModel):
    """Display info attached to a message's sender."""
    id: str
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    profileImage: Optional[str] = None


class ParticipantInfo(SenderInfo):
    """Display info for a conversation participant."""
    userType: Optional[UserType] = None


class PresenceState(BaseModel):
    """Persisted presence of one user."""
    userId: str
    isOnline: bool
    lastSeen: datetime = Field(default_factory=datetime.utcnow)
