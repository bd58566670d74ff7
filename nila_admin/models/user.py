from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Platform user as seen by the back-office (profiles)."""
    email: Indexed(str, unique=True)
    full_name: str = ""
    role: str = "user"  # "user" | "admin"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
