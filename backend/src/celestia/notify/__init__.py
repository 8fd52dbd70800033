"""Push notifications."""

from celestia.notify.dispatcher import NotificationDispatcher
from celestia.notify.push_sender import (
    FcmPushSender,
    NoPushEndpointError,
    NotificationError,
    PushDeliveryError,
    TokenUnregisteredError,
)

__all__ = [
    "FcmPushSender",
    "NoPushEndpointError",
    "NotificationDispatcher",
    "NotificationError",
    "PushDeliveryError",
    "TokenUnregisteredError",
]
