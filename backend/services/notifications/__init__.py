"""
Procurement Workflow Hub - Workflow Notifications

Mapping lookup, recipient resolution and dispatch hand-off for workflow events.
"""

from .mappings import (
    NotificationChannel,
    RecipientResolverType,
    ChannelConfig,
    CustomRecipient,
    MappingConditions,
    NotificationMapping,
    NotificationMappingStore,
    InMemoryNotificationMappingStore,
    MongoNotificationMappingStore,
    select_mappings,
)
from .recipients import Recipient, UserDirectory, InMemoryUserDirectory, MongoUserDirectory, RecipientResolver
from .dispatch import NotificationDispatch, NotificationSender, SendResult
from .orchestrator import NotificationOrchestrator, NotificationResult

__all__ = [
    'NotificationChannel', 'RecipientResolverType', 'ChannelConfig', 'CustomRecipient',
    'MappingConditions', 'NotificationMapping', 'NotificationMappingStore',
    'InMemoryNotificationMappingStore', 'MongoNotificationMappingStore', 'select_mappings',
    'Recipient', 'UserDirectory', 'InMemoryUserDirectory', 'MongoUserDirectory', 'RecipientResolver',
    'NotificationDispatch', 'NotificationSender', 'SendResult',
    'NotificationOrchestrator', 'NotificationResult',
]
