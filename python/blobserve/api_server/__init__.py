"""
blobserve API Server

This module provides the HTTP surface of the object store: object CRUD,
presigned URLs and the object creation event stream.
"""

from .events import Event, EventBroker, Subscription
from .router import create_app, resolve_path

__all__ = [
    "Event",
    "EventBroker",
    "Subscription",
    "create_app",
    "resolve_path",
]
