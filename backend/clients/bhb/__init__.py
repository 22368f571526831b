"""Client utilities for the BuchhaltungsButler accounting API."""

from .auth import AuthCache, settings_credentials
from .client import BhbClient, BhbClientError, BhbResponseError
from .dto import BhbCredentials, BhbPage

__all__ = [
    "AuthCache",
    "BhbClient",
    "BhbClientError",
    "BhbCredentials",
    "BhbPage",
    "BhbResponseError",
    "settings_credentials",
]
