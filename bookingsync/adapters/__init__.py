"""
Adapters layer - SQLite persistence and Microsoft Graph / OAuth integrations.
"""

from .booking_store import BookingStore
from .credential_store import CredentialStore, TokenCipher, load_encryption_key
from .database import Database
from .graph_client import GraphCalendarClient
from .mock_graph_client import MockGraphClient, MockOAuthClient
from .oauth_client import OAuthClient

__all__ = [
    "BookingStore",
    "CredentialStore",
    "Database",
    "GraphCalendarClient",
    "MockGraphClient",
    "MockOAuthClient",
    "OAuthClient",
    "TokenCipher",
    "load_encryption_key",
]
