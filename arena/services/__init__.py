"""
Services package for the Arena settlement engine.

Background work that runs outside the settlement request path.
"""

from .base import BaseService
from .notifications import NotificationBus, NotificationEvent, NotificationService

__all__ = ['BaseService', 'NotificationBus', 'NotificationEvent', 'NotificationService']
