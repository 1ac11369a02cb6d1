"""msal adapter implementing IIdentityProvider."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import msal

from ..errors import AuthenticationError
from ..models import AuthMethod, RepositoryConnection

logger = logging.getLogger(__name__)


def _load_certificate_credential(connection: RepositoryConnection) -> Dict[str, Any]:
    """Build msal's client_credential dict for certificate auth."""
    path = Path(connection.certificate_path or "").expanduser()
    if path.suffix.lower() in {".pfx", ".p12"}:
        return {"private_key_pfx_path": str(path)}
    try:
        private_key = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise AuthenticationError(f"cannot read certificate {path}: {exc}") from exc
    return {"private_key": private_key, "thumbprint": connection.certificate_thumbprint}


class MsalIdentityProvider:
    """
    Identity provider backed by msal.

    msal is synchronous, so every network-bound call runs in a worker thread
    to keep the event loop free for concurrent uploads.
    """

    def __init__(self, app: Union[msal.PublicClientApplication, msal.ConfidentialClientApplication],
                 cache: msal.SerializableTokenCache):
        self._app = app
        self._cache = cache

    @classmethod
    def from_connection(cls, connection: RepositoryConnection) -> "MsalIdentityProvider":
        cache = msal.SerializableTokenCache()
        if connection.auth_method == AuthMethod.OAUTH2:
            app = msal.PublicClientApplication(
                connection.client_id,
                authority=connection.authority,
                token_cache=cache,
            )
        else:
            if connection.auth_method == AuthMethod.CERTIFICATE:
                credential: Any = _load_certificate_credential(connection)
            else:
                credential = connection.client_secret
            app = msal.ConfidentialClientApplication(
                connection.client_id,
                authority=connection.authority,
                client_credential=credential,
                token_cache=cache,
            )
        return cls(app, cache)

    async def get_accounts(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._app.get_accounts)

    async def acquire_token_silent(
        self,
        scopes: Sequence[str],
        account: Dict[str, Any],
        force_refresh: bool = False,
    ) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(
            self._app.acquire_token_silent,
            list(scopes),
            account=account,
            force_refresh=force_refresh,
        )

    async def initiate_device_flow(self, scopes: Sequence[str]) -> Dict[str, Any]:
        if not isinstance(self._app, msal.PublicClientApplication):
            raise AuthenticationError("device-code flow requires the oauth2 auth method")
        return await asyncio.to_thread(self._app.initiate_device_flow, scopes=list(scopes))

    async def acquire_token_by_device_flow(self, flow: Dict[str, Any]) -> Dict[str, Any]:
        # msal polls at the interval the identity provider returned with the flow
        return await asyncio.to_thread(self._app.acquire_token_by_device_flow, flow)

    async def acquire_token_for_client(self, scopes: Sequence[str]) -> Dict[str, Any]:
        if not isinstance(self._app, msal.ConfidentialClientApplication):
            raise AuthenticationError("client-credentials flow requires a secret or certificate")
        return await asyncio.to_thread(self._app.acquire_token_for_client, scopes=list(scopes))

    async def remove_account(self, account: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._app.remove_account, account)

    def serialize_cache(self) -> Optional[str]:
        if not self._cache.has_state_changed:
            return None
        return self._cache.serialize()

    def deserialize_cache(self, state: str) -> None:
        self._cache.deserialize(state)
