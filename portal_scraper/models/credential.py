from beanie import Document, Indexed
from typing import Optional
from datetime import datetime
from pydantic import Field


class PortalCredential(Document):
    user_id: Indexed(str, unique=True)
    username: str
    password: str  # Fernet-encrypted
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    class Settings:
        name = "portal_credentials"
