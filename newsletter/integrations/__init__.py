from newsletter.integrations.mailchimp import (
    CampaignStats,
    ConnectionResult,
    MailchimpService,
    SubscriberStats,
    SyncedSubscriber,
    create_mailchimp_service,
)

__all__ = [
    "CampaignStats",
    "ConnectionResult",
    "MailchimpService",
    "SubscriberStats",
    "SyncedSubscriber",
    "create_mailchimp_service",
]
