"""
Protocols (Interfaces) for Dependency Inversion.

Following Interface Segregation Principle - small, focused interfaces.
"""
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class ITokenProvider(Protocol):
    """Interface for anything that hands out bearer tokens."""

    async def get_valid_access_token(self) -> str:
        """Return a token that is currently valid."""
        ...

    async def invalidate(self, rejected_token: str) -> None:
        """Mark a token rejected by the remote API."""
        ...


@runtime_checkable
class IIdentityProvider(Protocol):
    """
    Interface for the OAuth2 identity provider.

    Token results are msal-style dicts: ``access_token``, ``expires_in`` and
    ``id_token_claims`` on success, ``error``/``error_description`` otherwise.
    """

    async def get_accounts(self) -> List[Dict[str, Any]]:
        ...

    async def acquire_token_silent(
        self,
        scopes: Sequence[str],
        account: Dict[str, Any],
        force_refresh: bool = False,
    ) -> Optional[Dict[str, Any]]:
        ...

    async def initiate_device_flow(self, scopes: Sequence[str]) -> Dict[str, Any]:
        ...

    async def acquire_token_by_device_flow(self, flow: Dict[str, Any]) -> Dict[str, Any]:
        """Poll the token endpoint until the user completes or the code expires."""
        ...

    async def acquire_token_for_client(self, scopes: Sequence[str]) -> Dict[str, Any]:
        ...

    async def remove_account(self, account: Dict[str, Any]) -> None:
        ...

    def serialize_cache(self) -> Optional[str]:
        """Return cache state to persist, or None when nothing changed."""
        ...

    def deserialize_cache(self, state: str) -> None:
        ...
