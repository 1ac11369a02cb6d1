"""Services for docpublisher module."""
from .api_client import GraphClient
from .auth import AuthSessionManager, AuthState
from .identity import MsalIdentityProvider
from .repository import ConnectionReport, RepositoryResolver
from .retry import CircuitBreaker, RetryPolicy
from .storage import UploadEngine
from .token_cache import TokenCacheFile

__all__ = [
    "GraphClient",
    "AuthSessionManager",
    "AuthState",
    "MsalIdentityProvider",
    "ConnectionReport",
    "RepositoryResolver",
    "CircuitBreaker",
    "RetryPolicy",
    "UploadEngine",
    "TokenCacheFile",
]
