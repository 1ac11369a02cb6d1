"""
Auth Session Manager - owns the OAuth2 authentication lifecycle.

States:
    UNAUTHENTICATED -> CHALLENGE_ISSUED -> AUTHENTICATED <-> REFRESHING
    REFRESHING -> UNAUTHENTICATED on hard failure; sign_out() resets.

Every component that needs a bearer token calls get_valid_access_token();
nothing else reads the session. Refreshes and device-code flows are
single-flight: concurrent callers share the one in progress.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..errors import AuthenticationError
from ..models import AuthMethod, AuthSession, DeviceChallenge, RepositoryConnection
from ..protocols import IIdentityProvider
from .token_cache import TokenCacheFile

logger = logging.getLogger(__name__)

ChallengeCallback = Callable[[DeviceChallenge], None]

# Seconds before expiry at which a token is treated as stale
DEFAULT_EXPIRY_SKEW = 300.0


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHALLENGE_ISSUED = "challenge_issued"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


def _print_challenge(challenge: DeviceChallenge) -> None:
    message = challenge.message or (
        f"To sign in, open {challenge.verification_uri} and enter the code {challenge.user_code}"
    )
    print(message, file=sys.stderr, flush=True)


def _error_text(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return "no response"
    return str(result.get("error_description") or result.get("error") or "unknown error")


class AuthSessionManager:
    """
    Authentication state machine shared by every publishing component.

    Construct once per process, pass by reference, call load() at startup
    and flush() at exit.

    Usage:
        auth = AuthSessionManager(connection, MsalIdentityProvider.from_connection(connection))
        await auth.load()
        token = await auth.get_valid_access_token()
    """

    def __init__(
        self,
        connection: RepositoryConnection,
        provider: IIdentityProvider,
        cache_file: Optional[TokenCacheFile] = None,
        on_challenge: Optional[ChallengeCallback] = None,
        clock: Callable[[], float] = time.time,
        expiry_skew: float = DEFAULT_EXPIRY_SKEW,
    ):
        self._connection = connection
        self._provider = provider
        self._cache_file = cache_file or TokenCacheFile()
        self._on_challenge = on_challenge or _print_challenge
        self._clock = clock
        self._expiry_skew = expiry_skew

        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[AuthSession] = None
        self._account: Optional[Dict[str, Any]] = None
        self._provider_state: Optional[str] = None
        self._force_refresh = False

        self._refresh_lock = asyncio.Lock()
        self._device_flow_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def uses_device_flow(self) -> bool:
        return self._connection.auth_method == AuthMethod.OAUTH2

    # ------------------------------------------------------------------ queries

    def is_authenticated(self) -> bool:
        """True when a session (or cached account) is held. No network."""
        return self._state in (AuthState.AUTHENTICATED, AuthState.REFRESHING)

    def current_account(self) -> Optional[str]:
        if self._session is None:
            return None
        return self._session.account_identity

    # -------------------------------------------------------------- lifecycle

    async def load(self) -> None:
        """Restore the session from the cache file. Failures are non-fatal."""
        data = self._cache_file.load()
        if not data:
            return

        provider_state = data.get("provider_cache")
        if provider_state:
            try:
                self._provider.deserialize_cache(provider_state)
                self._provider_state = provider_state
            except ValueError as e:
                logger.warning(f"Ignoring corrupt provider cache in {self._cache_file.path}: {e}")

        if not self.uses_device_flow:
            return

        account = await self._find_account(data.get("account"))
        if account is None:
            return

        self._account = account
        self._session = AuthSession(
            account_identity=account.get("username"),
            access_token=None,
            cache_location=str(self._cache_file.path),
        )
        self._state = AuthState.AUTHENTICATED
        logger.info(f"Restored cached session for {self._session.account_identity}")

    def flush(self) -> None:
        """Persist the current session state."""
        if self._session is not None:
            self._persist()

    async def sign_out(self) -> None:
        """Forget the session and delete the cache file."""
        task = self._device_flow_task
        if task is not None and not task.done():
            task.cancel()
        if self._account is not None:
            try:
                await self._provider.remove_account(self._account)
            except Exception as e:
                logger.warning(f"Could not remove account from provider cache: {e}")

        identity = self.current_account()
        self._account = None
        self._session = None
        self._provider_state = None
        self._force_refresh = False
        self._state = AuthState.UNAUTHENTICATED
        self._cache_file.delete()
        logger.info(f"Signed out{f' {identity}' if identity else ''}")

    # ------------------------------------------------------------------ tokens

    async def get_valid_access_token(self) -> str:
        """
        Return a token that is valid now.

        Fast path returns the in-memory token. Otherwise a single-flight
        refresh tries silent acquisition and falls back to the device-code
        flow for oauth2 connections.
        """
        token = self._usable_token()
        if token is not None:
            return token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            token = self._usable_token()
            if token is not None:
                return token
            return await self._refresh()

    async def invalidate(self, rejected_token: str) -> None:
        """Force a refresh unless the rejected token was already replaced."""
        session = self._session
        if session is not None and session.access_token == rejected_token:
            logger.info("Access token rejected by remote API, forcing refresh")
            self._force_refresh = True

    async def start_device_flow(self) -> AuthSession:
        """
        Run the device-code flow; concurrent callers share one challenge.

        Raises:
            AuthenticationError: code expired, user declined, or the flow
                could not be started. The caller must start again.
        """
        if not self.uses_device_flow:
            raise AuthenticationError(
                f"device-code flow is not available for {self._connection.auth_method.value} auth"
            )

        task = self._device_flow_task
        if task is None or task.done():
            task = asyncio.create_task(self._run_device_flow())
            self._device_flow_task = task
        else:
            logger.debug("Joining device-code flow already in progress")
        return await asyncio.shield(task)

    # ---------------------------------------------------------------- internal

    def _usable_token(self) -> Optional[str]:
        session = self._session
        if session is None or self._force_refresh:
            return None
        if session.is_expired(self._expiry_skew, self._clock()):
            return None
        return session.access_token

    async def _refresh(self) -> str:
        self._state = AuthState.REFRESHING
        try:
            result = await self._acquire_silently(self._force_refresh)
        except Exception:
            self._state = AuthState.UNAUTHENTICATED
            raise

        if result is not None:
            self._apply_token(result)
            self._persist()
            return self._session.access_token

        if not self.uses_device_flow:
            self._state = AuthState.UNAUTHENTICATED
            raise AuthenticationError("client credentials produced no token")

        logger.info("Silent token acquisition failed, starting device-code flow")
        self._state = AuthState.UNAUTHENTICATED
        session = await self.start_device_flow()
        return session.access_token

    async def _acquire_silently(self, force_refresh: bool) -> Optional[Dict[str, Any]]:
        scopes = self._connection.scopes

        if not self.uses_device_flow:
            result = await self._provider.acquire_token_for_client(scopes)
            if result and "access_token" in result:
                return result
            raise AuthenticationError(f"Client credentials rejected: {_error_text(result)}")

        if self._account is None:
            self._account = await self._find_account(None)
        if self._account is None:
            logger.debug("No cached account for silent acquisition")
            return None

        try:
            result = await self._provider.acquire_token_silent(
                scopes, self._account, force_refresh=force_refresh
            )
        except Exception as e:
            logger.warning(f"Silent token acquisition error: {e}")
            return None

        if result and "access_token" in result:
            return result
        logger.debug(f"Silent token acquisition returned: {_error_text(result)}")
        return None

    async def _run_device_flow(self) -> AuthSession:
        scopes = self._connection.scopes
        flow = await self._provider.initiate_device_flow(scopes)
        if "user_code" not in flow:
            self._state = AuthState.UNAUTHENTICATED
            raise AuthenticationError(f"Could not start device-code flow: {_error_text(flow)}")

        self._state = AuthState.CHALLENGE_ISSUED
        challenge = DeviceChallenge(
            user_code=flow["user_code"],
            verification_uri=flow.get("verification_uri") or flow.get("verification_url", ""),
            message=flow.get("message", ""),
            expires_at=float(flow.get("expires_at", 0) or 0),
        )
        self._on_challenge(challenge)

        try:
            result = await self._provider.acquire_token_by_device_flow(flow)
        except Exception:
            self._state = AuthState.UNAUTHENTICATED
            raise

        if not result or "access_token" not in result:
            self._state = AuthState.UNAUTHENTICATED
            error = (result or {}).get("error", "unknown_error")
            raise AuthenticationError(
                f"Device-code authentication failed ({error}): {_error_text(result)}. "
                "Start the login again.",
                context={"error": error},
            )

        claims = result.get("id_token_claims") or {}
        self._account = await self._find_account(claims.get("preferred_username"))
        self._apply_token(result)
        self._persist()
        logger.info(f"Authenticated as {self.current_account()}")
        return self._session

    async def _find_account(self, username: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            accounts = await self._provider.get_accounts()
        except Exception as e:
            logger.warning(f"Could not list cached accounts: {e}")
            return None
        if not accounts:
            return None
        if username:
            for account in accounts:
                if account.get("username") == username:
                    return account
        return accounts[0]

    def _apply_token(self, result: Dict[str, Any]) -> None:
        claims = result.get("id_token_claims") or {}
        identity = (
            claims.get("preferred_username")
            or (self._account or {}).get("username")
            or (self._session.account_identity if self._session else None)
            or self._connection.client_id
        )
        expires_in = float(result.get("expires_in", 3600))
        self._session = AuthSession(
            account_identity=identity,
            access_token=result["access_token"],
            expires_at=self._clock() + expires_in,
            cache_location=str(self._cache_file.path),
        )
        self._force_refresh = False
        self._state = AuthState.AUTHENTICATED

    def _persist(self) -> None:
        try:
            state = self._provider.serialize_cache()
        except Exception as e:
            logger.warning(f"Could not serialize provider cache: {e}")
            state = None
        if state is not None:
            self._provider_state = state
        self._cache_file.save(
            {
                "provider_cache": self._provider_state,
                "account": self.current_account(),
                "tenant_id": self._connection.tenant_id,
            }
        )
