"""Routers package."""

from . import (
    health,
    auth,
    billing,
    payments,
    audit,
    admin,
)
