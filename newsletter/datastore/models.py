"""
Document models for per-user newsletter data.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class Subscriber(BaseModel):
    email: str
    name: str
    status: Literal["active", "unsubscribed"] = "active"
    subscribed: datetime = Field(default_factory=datetime.now)


class Newsletter(BaseModel):
    id: str
    title: str
    subject: str
    content: str
    status: Literal["draft", "scheduled", "sent"] = "draft"
    scheduled_date: datetime | None = None
    sent_date: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class EmailSettings(BaseModel):
    from_name: str = ""
    reply_to: str = ""


class MailchimpSettings(BaseModel):
    api_key: str = ""
    server_prefix: str = ""
    enabled: bool = False


class UserSettings(BaseModel):
    email: EmailSettings = Field(default_factory=EmailSettings)
    mailchimp: MailchimpSettings = Field(default_factory=MailchimpSettings)
    updated_at: datetime = Field(default_factory=datetime.now)


class GrowthPoint(BaseModel):
    """Subscribers gained on one day."""

    date: str
    count: int
