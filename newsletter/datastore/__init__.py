from newsletter.datastore.models import (
    EmailSettings,
    GrowthPoint,
    MailchimpSettings,
    Newsletter,
    Subscriber,
    UserSettings,
)
from newsletter.datastore.repositories import InMemoryRepository, NewsletterRepository

__all__ = [
    "EmailSettings",
    "GrowthPoint",
    "MailchimpSettings",
    "Newsletter",
    "Subscriber",
    "UserSettings",
    "InMemoryRepository",
    "NewsletterRepository",
]
