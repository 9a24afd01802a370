"""
Vipps Login OAuth2 relay for mobile clients.

This module implements the server side of the Vipps Login authorization code
flow for a native app that cannot keep a client secret:
- Anti-forgery state generation
- In-memory session store with TTL expiry
- Vipps token exchange and userinfo client
- Callback state machine ending in a deep-link redirect

The mobile app starts a login, opens the returned URL in a browser, and gets
control back through its custom URL scheme once Vipps calls the callback.
"""

import asyncio
import base64
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx
import jwt
from fastapi.responses import RedirectResponse

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# ERRORS
# ============================================================================

class VippsAuthError(Exception):
    """Base class for all Vipps login errors."""


class ConfigurationError(VippsAuthError, ValueError):
    """Configuration is missing or invalid. The service must not start."""


class InvalidStateError(VippsAuthError):
    """Callback state is unknown, expired or already consumed."""


class TokenExchangeError(VippsAuthError):
    """
    Authorization code could not be exchanged for tokens.

    Attributes:
        status_code: HTTP status from the token endpoint, None on transport errors
        provider_error: OAuth ``error`` code reported by Vipps, if any
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider_error: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider_error = provider_error


class UserInfoError(VippsAuthError):
    """Userinfo could not be fetched or did not match the ID token."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionNotFoundError(VippsAuthError):
    """No live session exists for the given id."""


class SessionStateError(VippsAuthError):
    """A session status transition was attempted from the wrong status."""


# ============================================================================
# CONFIGURATION
# ============================================================================

class VippsConfig:
    """
    Validated Vipps login configuration.

    Built once at startup and handed to every component. Invalid or incomplete
    configuration raises ConfigurationError so the process never starts half
    configured.
    """

    AUTH_PATH = "/access-management-1.0/access/oauth2/auth"
    TOKEN_PATH = "/access-management-1.0/access/oauth2/token"
    USERINFO_PATH = "/vipps-userinfo-api/userinfo"

    DEFAULT_SCOPE = "openid name phoneNumber email address birthDate"
    DEFAULT_HTTP_TIMEOUT = 10.0
    DEFAULT_SESSION_TTL_SEC = 600
    DEFAULT_CLEANUP_INTERVAL_SEC = 60

    REQUIRED_KEYS = (
        "api_url", "client_id", "client_secret",
        "redirect_uri", "app_redirect_scheme"
    )
    SECRET_KEYS = ("client_secret", "subscription_key")

    def __init__(self, config: Mapping[str, Any]):
        """
        Args:
            config: Mapping of configuration keys to values

        Raises:
            ConfigurationError: If configuration is missing or invalid
        """
        self._validate_required_config(config)
        self._validate_config_values(config)

        self.api_url = config["api_url"].rstrip("/")
        self.client_id = config["client_id"]
        self.client_secret = config["client_secret"]
        self.redirect_uri = config["redirect_uri"]
        self.app_redirect_scheme = config["app_redirect_scheme"].split("://")[0]
        self.subscription_key = config.get("subscription_key") or None
        self.merchant_serial_number = config.get("merchant_serial_number") or None
        self.scope = config.get("scope") or self.DEFAULT_SCOPE

        self.session_ttl_sec = int(float(
            config.get("session_ttl_sec") or self.DEFAULT_SESSION_TTL_SEC
        ))
        self.cleanup_interval_sec = int(float(
            config.get("cleanup_interval_sec") or self.DEFAULT_CLEANUP_INTERVAL_SEC
        ))
        self.http_timeout = float(
            config.get("http_timeout") or self.DEFAULT_HTTP_TIMEOUT
        )

        self.system_name = config.get("system_name", "vipps-login-relay")
        self.system_version = config.get("system_version", "1.0.0")
        self.plugin_name = config.get("plugin_name", "fastapi-backend")
        self.plugin_version = config.get("plugin_version", "1.0.0")

        if not self.subscription_key:
            logger.warning("VIPPS subscription key is not set - Vipps will reject API calls")
        if not self.merchant_serial_number:
            logger.warning("VIPPS merchant serial number is not set")

    def _validate_required_config(self, config: Mapping[str, Any]):
        """Validate that all required configuration keys are present."""
        if not config.get("client_secret"):
            logger.critical("VIPPS client secret is not set")
            raise ConfigurationError("client_secret is required")

        missing = [k for k in self.REQUIRED_KEYS if not config.get(k)]
        if missing:
            raise ConfigurationError(
                f"Missing required config keys: {', '.join(missing)}"
            )

    def _validate_config_values(self, config: Mapping[str, Any]):
        """Validate configuration values for correctness."""
        for key in ("session_ttl_sec", "cleanup_interval_sec", "http_timeout"):
            if config.get(key) in (None, ""):
                continue
            try:
                value = float(config[key])
                # TTL and sweep interval are stored as whole seconds
                if key != "http_timeout":
                    value = int(value)
            except (TypeError, ValueError, OverflowError):
                raise ConfigurationError(f"{key} must be a number, got {config[key]!r}")
            if not value > 0:
                raise ConfigurationError(f"{key} must be positive, got {config[key]!r}")

        for key in ("api_url", "redirect_uri"):
            url = config[key]
            if not url.startswith(("http://", "https://")):
                raise ConfigurationError(f"{key} must be a valid URL, got: {url}")
            if url.startswith("http://"):
                logger.warning(f"{key} uses HTTP - Vipps requires HTTPS outside local testing")

    @property
    def authorize_url(self) -> str:
        return self.api_url + self.AUTH_PATH

    @property
    def token_url(self) -> str:
        return self.api_url + self.TOKEN_PATH

    @property
    def userinfo_url(self) -> str:
        return self.api_url + self.USERINFO_PATH

    def describe(self) -> Dict[str, Any]:
        """Configuration summary safe for logging. Secrets show only their last 4 characters."""
        summary = {}
        for key in (
            "api_url", "client_id", "client_secret", "redirect_uri",
            "app_redirect_scheme", "subscription_key", "merchant_serial_number",
            "session_ttl_sec", "http_timeout"
        ):
            value = getattr(self, key)
            if value in (None, ""):
                summary[key] = "not set"
            elif key in self.SECRET_KEYS:
                summary[key] = "***" + str(value)[-4:]
            else:
                summary[key] = value
        return summary


# ============================================================================
# STATE TOKENS
# ============================================================================

def generate_state() -> str:
    """
    Generate an anti-forgery state token.

    Returns:
        URL-safe string carrying 256 bits of randomness
    """
    return secrets.token_urlsafe(32)


# ============================================================================
# SESSION STORE
# ============================================================================

class SessionStatus(str, Enum):
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass
class Session:
    """One login attempt, from login initiation to its terminal outcome."""

    session_id: str
    state: str
    created_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.PENDING
    user_info: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "userInfo": self.user_info,
        }


class SessionStore:
    """
    In-memory session store with automatic expiration.

    Sessions are indexed by id and by state. A single asyncio lock guards both
    maps, so every lookup-then-transition is atomic with respect to other
    requests on the event loop.
    """

    def __init__(self, ttl_seconds: int, cleanup_interval: int = 60):
        """
        Args:
            ttl_seconds: Lifetime of a session from creation
            cleanup_interval: Seconds between background sweeps
        """
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sessions: Dict[str, Session] = {}
        self._by_state: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_interval = cleanup_interval
        self._running = False

    def __len__(self) -> int:
        """Number of live sessions. Expired ones awaiting the sweep are not counted."""
        now = datetime.now(timezone.utc)
        return sum(1 for s in self._sessions.values() if not s.is_expired(now))

    async def start_cleanup(self):
        """Start background cleanup task."""
        if not self._running:
            self._running = True
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Session cleanup task started")

    async def stop(self):
        """Stop background cleanup task."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Session cleanup task stopped")

    async def _cleanup_loop(self):
        """Periodically remove expired sessions."""
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.expire_old()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Session cleanup error: {e}", exc_info=True)

    def _drop(self, session: Session):
        self._sessions.pop(session.session_id, None)
        if self._by_state.get(session.state) == session.session_id:
            del self._by_state[session.state]

    def _live(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session and session.is_expired():
            self._drop(session)
            return None
        return session

    async def create(self) -> Tuple[str, str]:
        """
        Allocate a new pending session.

        Returns:
            Tuple of (session_id, state)
        """
        now = datetime.now(timezone.utc)
        async with self._lock:
            state = generate_state()
            while state in self._by_state:
                state = generate_state()
            session_id = secrets.token_urlsafe(16)
            while session_id in self._sessions:
                session_id = secrets.token_urlsafe(16)

            self._sessions[session_id] = Session(
                session_id=session_id,
                state=state,
                created_at=now,
                expires_at=now + self._ttl,
            )
            self._by_state[state] = session_id
        return session_id, state

    async def find_by_state(self, state: str, consume: bool = False) -> Optional[Session]:
        """
        Look up a live session by its state value.

        Args:
            state: State received on the callback
            consume: Remove the state from the index in the same step, so no
                other caller can claim it

        Returns:
            The session, or None if the state is unknown, consumed or expired
        """
        async with self._lock:
            session_id = self._by_state.get(state)
            if session_id is None:
                return None
            session = self._live(session_id)
            if session is None:
                self._by_state.pop(state, None)
                return None
            if consume:
                del self._by_state[state]
            return session

    async def mark_authenticated(self, session_id: str, user_info: Dict[str, Any]) -> Session:
        """
        Transition a pending session to authenticated.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            SessionStateError: If the session is not pending
        """
        async with self._lock:
            session = self._live(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status is not SessionStatus.PENDING:
                raise SessionStateError(
                    f"Session {session_id} is {session.status.value}, not pending"
                )
            session.user_info = dict(user_info)
            session.status = SessionStatus.AUTHENTICATED
            return session

    async def mark_failed(self, session_id: str, reason: str) -> Session:
        """
        Transition a pending session to failed. No-op if it already failed.

        Raises:
            SessionNotFoundError: If the session is unknown or expired
            SessionStateError: If the session is already authenticated
        """
        async with self._lock:
            session = self._live(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status is SessionStatus.FAILED:
                return session
            if session.status is not SessionStatus.PENDING:
                raise SessionStateError(
                    f"Session {session_id} is {session.status.value}, not pending"
                )
            session.status = SessionStatus.FAILED
            session.failure_reason = reason
            return session

    async def get(self, session_id: str) -> Optional[Session]:
        """Get a session if it exists and has not expired."""
        async with self._lock:
            return self._live(session_id)

    async def expire_old(self) -> int:
        """
        Remove all expired sessions.

        Returns:
            Number of sessions removed
        """
        now = datetime.now(timezone.utc)
        async with self._lock:
            expired = [s for s in self._sessions.values() if s.is_expired(now)]
            for session in expired:
                self._drop(session)
        if expired:
            logger.debug(f"Cleaned {len(expired)} expired sessions")
        return len(expired)


# ============================================================================
# VIPPS CLIENT
# ============================================================================

def basic_auth_header(client_id: str, client_secret: str) -> str:
    """Build the HTTP Basic credential header Vipps expects on the token endpoint."""
    credentials = f"{client_id}:{client_secret}".encode()
    return "Basic " + base64.b64encode(credentials).decode()


def id_token_subject(id_token: str) -> Optional[str]:
    """
    Read the ``sub`` claim of an ID token.

    The token comes straight from the Vipps token endpoint over TLS, so the
    signature is not checked here.
    """
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        raise UserInfoError(f"Malformed ID token: {e}")
    return claims.get("sub")


class VippsClient:
    """
    Client for the three Vipps Login calls used by the relay.

    Never retries: authorization codes are single use, so a second attempt
    would fail anyway.
    """

    def __init__(
        self,
        config: VippsConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            config: Validated configuration
            transport: Optional httpx transport, used by tests
        """
        self.config = config
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @asynccontextmanager
    async def _http(self):
        """Get or create HTTP client with proper lifecycle management."""
        if not self._http_client:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.http_timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10)
            )
        yield self._http_client

    async def aclose(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _system_headers(self) -> Dict[str, str]:
        headers = {
            "Vipps-System-Name": self.config.system_name,
            "Vipps-System-Version": self.config.system_version,
            "Vipps-System-Plugin-Name": self.config.plugin_name,
            "Vipps-System-Plugin-Version": self.config.plugin_version,
        }
        if self.config.merchant_serial_number:
            headers["Merchant-Serial-Number"] = self.config.merchant_serial_number
        if self.config.subscription_key:
            headers["Ocp-Apim-Subscription-Key"] = self.config.subscription_key
        return headers

    def build_authorization_url(self, state: str) -> str:
        """
        Compose the Vipps authorization URL for a state.

        Args:
            state: Anti-forgery state of the session

        Returns:
            URL for the browser to open
        """
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "scope": self.config.scope,
            "state": state,
            "redirect_uri": self.config.redirect_uri,
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback

        Returns:
            Token response from Vipps

        Raises:
            TokenExchangeError: On provider error, transport error, timeout or
                a request that cannot be encoded
        """
        headers = self._system_headers()
        headers["Authorization"] = basic_auth_header(
            self.config.client_id, self.config.client_secret
        )
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        }

        logger.info(f"Exchanging code {code[:8]}... for tokens")
        try:
            async with self._http() as client:
                resp = await client.post(self.config.token_url, data=body, headers=headers)
        except httpx.TimeoutException:
            logger.error("Token exchange timed out")
            raise TokenExchangeError("Token endpoint timed out")
        except httpx.RequestError as e:
            logger.error(f"Token exchange transport error: {e}")
            raise TokenExchangeError(f"Token endpoint unreachable: {e}")
        except (httpx.InvalidURL, UnicodeError) as e:
            logger.error(f"Token request could not be built: {e}")
            raise TokenExchangeError(f"Invalid token request: {e}")

        if resp.is_error:
            provider_error, description = _oauth_error(resp)
            logger.error(
                f"Token exchange failed: {resp.status_code} error={provider_error}"
            )
            raise TokenExchangeError(
                description or provider_error or f"Token endpoint returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                provider_error=provider_error,
            )

        try:
            tokens = resp.json()
        except ValueError:
            raise TokenExchangeError("Token endpoint returned invalid JSON", resp.status_code)
        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            raise TokenExchangeError("Token response has no access_token", resp.status_code)

        logger.info("Token exchange successful")
        return tokens

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch the Vipps userinfo for an access token.

        Raises:
            UserInfoError: On non-2xx, transport error, timeout or a request
                that cannot be encoded
        """
        headers = self._system_headers()
        headers["Authorization"] = f"Bearer {access_token}"

        try:
            async with self._http() as client:
                resp = await client.get(self.config.userinfo_url, headers=headers)
        except httpx.TimeoutException:
            logger.error("Userinfo request timed out")
            raise UserInfoError("Userinfo endpoint timed out")
        except httpx.RequestError as e:
            logger.error(f"Userinfo transport error: {e}")
            raise UserInfoError(f"Userinfo endpoint unreachable: {e}")
        except (httpx.InvalidURL, UnicodeError) as e:
            logger.error(f"Userinfo request could not be built: {e}")
            raise UserInfoError(f"Invalid userinfo request: {e}")

        if resp.is_error:
            logger.error(f"Userinfo fetch failed: {resp.status_code}")
            raise UserInfoError(
                f"Userinfo endpoint returned HTTP {resp.status_code}", resp.status_code
            )

        try:
            userinfo = resp.json()
        except ValueError:
            raise UserInfoError("Userinfo endpoint returned invalid JSON", resp.status_code)
        if not isinstance(userinfo, dict):
            raise UserInfoError("Userinfo response is not an object", resp.status_code)
        return userinfo


def _oauth_error(resp: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    """Extract (error, error_description) from an OAuth error response."""
    try:
        data = resp.json()
    except ValueError:
        return None, None
    if not isinstance(data, dict):
        return None, None
    return data.get("error"), data.get("error_description")


# ============================================================================
# CALLBACK ORCHESTRATION
# ============================================================================

class CallbackError(str, Enum):
    INVALID_STATE = "invalid_state"
    PROVIDER_ERROR = "provider_error"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    USERINFO_FAILED = "userinfo_failed"
    CALLBACK_FAILED = "callback_failed"


@dataclass
class CallbackResult:
    success: bool
    session_id: Optional[str] = None
    error: Optional[CallbackError] = None


class VippsAuth:
    """
    Vipps login relay.

    Owns the session store and the Vipps client, and runs the callback state
    machine:

        pending -> authenticated   (token exchange and userinfo succeed)
        pending -> failed          (provider error, exchange or userinfo failure)

    A callback whose state does not claim a pending session is rejected before
    any network call and changes nothing.
    """

    def __init__(
        self,
        config: VippsConfig,
        store: Optional[SessionStore] = None,
        client: Optional[VippsClient] = None
    ):
        """
        Args:
            config: Validated configuration
            store: Optional session store (defaults to one built from config)
            client: Optional Vipps client (defaults to one built from config)
        """
        self.config = config
        self.store = store or SessionStore(
            config.session_ttl_sec, config.cleanup_interval_sec
        )
        self.client = client or VippsClient(config)

        self._metrics = {
            "logins_started": 0,
            "logins_success": 0,
            "logins_failed": 0,
        }
        for kind in CallbackError:
            self._metrics[f"failed_{kind.value}"] = 0

        self._initialized = False

    async def initialize(self):
        """
        Start background tasks.

        Must be called during application startup.
        """
        if not self._initialized:
            await self.store.start_cleanup()
            self._initialized = True
            logger.info("Vipps auth initialized")

    async def shutdown(self):
        """Clean shutdown of async components."""
        await self.client.aclose()
        await self.store.stop()
        self._initialized = False
        logger.info("Vipps auth shut down")

    async def start_login(self) -> Dict[str, str]:
        """
        Create a session and the Vipps URL the app should open.

        Returns:
            Dictionary with authUrl and sessionId
        """
        session_id, state = await self.store.create()
        auth_url = self.client.build_authorization_url(state)
        self._metrics["logins_started"] += 1
        logger.info(f"Login started for session {session_id}")
        return {"authUrl": auth_url, "sessionId": session_id}

    async def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: If the session is unknown or expired
        """
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _claim(self, state: Optional[str]) -> Session:
        if not state:
            raise InvalidStateError("Callback has no state")
        session = await self.store.find_by_state(state, consume=True)
        if session is None:
            raise InvalidStateError("Unknown, expired or consumed state")
        if session.status is not SessionStatus.PENDING:
            raise InvalidStateError(f"Session {session.session_id} is already {session.status.value}")
        return session

    async def _fail(self, session_id: str, kind: CallbackError, reason: str) -> CallbackResult:
        try:
            await self.store.mark_failed(session_id, reason)
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} expired during callback")
            return self._record(CallbackResult(False, None, CallbackError.INVALID_STATE))
        return self._record(CallbackResult(False, session_id, kind))

    def _record(self, result: CallbackResult) -> CallbackResult:
        if result.success:
            self._metrics["logins_success"] += 1
        else:
            self._metrics["logins_failed"] += 1
            self._metrics[f"failed_{result.error.value}"] += 1
        return result

    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None
    ) -> CallbackResult:
        """
        Run the callback state machine.

        Args:
            code: Authorization code from Vipps
            state: State value from Vipps
            error: OAuth error code if the user cancelled or Vipps refused

        Returns:
            CallbackResult describing the outcome. Never raises.
        """
        try:
            session = await self._claim(state)
        except InvalidStateError as e:
            logger.warning(f"Rejected callback: {e}")
            return self._record(CallbackResult(False, None, CallbackError.INVALID_STATE))

        session_id = session.session_id
        try:
            return await self._complete(session_id, code, error)
        except Exception as e:
            # The state is already consumed; the session must still reach a terminal status
            logger.error(f"Callback error for session {session_id}: {e}", exc_info=True)
            return await self._fail(
                session_id, CallbackError.CALLBACK_FAILED, f"Unexpected error: {e}"
            )

    async def _complete(
        self,
        session_id: str,
        code: Optional[str],
        error: Optional[str]
    ) -> CallbackResult:
        if error or not code:
            logger.warning(f"Vipps returned no code for session {session_id}: error={error}")
            return await self._fail(
                session_id, CallbackError.PROVIDER_ERROR, error or "missing code"
            )

        try:
            tokens = await self.client.exchange_code_for_tokens(code)
        except TokenExchangeError as e:
            logger.error(f"Token exchange failed for session {session_id}: {e}")
            return await self._fail(session_id, CallbackError.TOKEN_EXCHANGE_FAILED, str(e))

        try:
            user_info = await self.client.fetch_user_info(tokens["access_token"])
            if tokens.get("id_token"):
                subject = id_token_subject(tokens["id_token"])
                if subject and user_info.get("sub") and subject != user_info["sub"]:
                    raise UserInfoError("Userinfo subject does not match ID token")
        except UserInfoError as e:
            logger.error(f"Userinfo failed for session {session_id}: {e}")
            return await self._fail(session_id, CallbackError.USERINFO_FAILED, str(e))

        try:
            await self.store.mark_authenticated(session_id, user_info)
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} expired during callback")
            return self._record(CallbackResult(False, None, CallbackError.INVALID_STATE))
        logger.info(f"Session {session_id} authenticated")
        return self._record(CallbackResult(True, session_id))

    def deep_link(self, result: CallbackResult) -> str:
        """Build the app deep link reporting a callback outcome."""
        params = {"success": "true" if result.success else "false"}
        if result.session_id:
            params["sessionId"] = result.session_id
        if result.error:
            params["error"] = result.error.value
        return f"{self.config.app_redirect_scheme}://auth/callback?{urlencode(params)}"

    async def handle_callback_redirect(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None
    ) -> RedirectResponse:
        """
        Handle the Vipps callback and redirect to the app.

        Returns:
            302 RedirectResponse to the app's URL scheme
        """
        try:
            result = await self.handle_callback(code, state, error)
        except Exception as e:
            logger.error(f"Callback could not be handled: {e}", exc_info=True)
            result = self._record(CallbackResult(False, None, CallbackError.CALLBACK_FAILED))
        response = RedirectResponse(url=self.deep_link(result), status_code=302)

        # Prevent caching
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        return response

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get login metrics.

        Returns:
            Dictionary of counters plus the number of live sessions
        """
        metrics = self._metrics.copy()
        metrics["active_sessions"] = len(self.store)
        return metrics
