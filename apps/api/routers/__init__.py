"""Routers package."""

from . import (
    health,
    plans,
    users,
    subscriptions,
    usage,
    billing,
    admin,
)
