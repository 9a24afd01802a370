"""
Vipps Login HTTP Service
========================

FastAPI application exposing the Vipps login relay to the mobile app:
- Login initiation returning the Vipps URL and a session id
- Vipps callback redirecting back into the app by deep link
- Session check polled by the app after the redirect
- Health and metrics endpoints
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

import dotenv
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from vipps_auth import (
    ConfigurationError,
    SessionNotFoundError,
    SessionStatus,
    VippsAuth,
    VippsClient,
    VippsConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001

# Maps VippsConfig keys to the environment variables they are read from
ENV_VARS = {
    "api_url": "VIPPS_API_URL",
    "client_id": "VIPPS_CLIENT_ID",
    "client_secret": "VIPPS_CLIENT_SECRET",
    "redirect_uri": "VIPPS_REDIRECT_URI",
    "subscription_key": "VIPPS_OCP_APIM_SUBSCRIPTION_KEY",
    "merchant_serial_number": "VIPPS_MERCHANT_SERIAL_NUMBER",
    "app_redirect_scheme": "APP_REDIRECT_SCHEME",
    "session_ttl_sec": "SESSION_TTL_SEC",
    "cleanup_interval_sec": "SESSION_CLEANUP_INTERVAL_SEC",
    "http_timeout": "VIPPS_HTTP_TIMEOUT",
}


# ============================================================================
# CONFIGURATION
# ============================================================================

def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> VippsConfig:
    """
    Build the configuration from environment variables.

    Usage:
        dotenv.load_dotenv()
        config = load_config_from_env()

    Args:
        environ: Mapping to read instead of os.environ

    Raises:
        ConfigurationError: If a required variable is missing or invalid
    """
    environ = os.environ if environ is None else environ
    values = {key: environ.get(var) for key, var in ENV_VARS.items()}
    return VippsConfig({k: v for k, v in values.items() if v})


def port_from_env(environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Read the listening port from ``PORT``, defaulting to 3001.

    Raises:
        ConfigurationError: If PORT is not a positive whole number
    """
    environ = os.environ if environ is None else environ
    value = environ.get("PORT") or DEFAULT_PORT
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"PORT must be a whole number, got {value!r}")
    if not 0 < port < 65536:
        raise ConfigurationError(f"PORT must be between 1 and 65535, got {value!r}")
    return port


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter(prefix="/auth", tags=["auth"])


def get_vipps_auth(request: Request) -> VippsAuth:
    """Dependency returning the relay owned by the running application."""
    return request.app.state.vipps_auth


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "service": "vipps-login"}


@router.get("/metrics")
async def metrics(auth: VippsAuth = Depends(get_vipps_auth)) -> Dict[str, Any]:
    return auth.get_metrics()


@router.get("/vipps/login")
async def vipps_login(auth: VippsAuth = Depends(get_vipps_auth)) -> Dict[str, str]:
    """
    Start a Vipps login.

    The app opens ``authUrl`` in a browser and keeps ``sessionId`` to check
    the outcome after Vipps redirects back.
    """
    return await auth.start_login()


@router.get("/vipps/callback")
async def vipps_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    auth: VippsAuth = Depends(get_vipps_auth)
) -> RedirectResponse:
    """
    Receive the Vipps redirect and hand control back to the app.

    Always answers with a redirect to the app's URL scheme; failures are
    reported in its query string.
    """
    logger.info("=== Vipps callback received ===")
    if error_description:
        logger.warning(f"Vipps error description: {error_description}")
    return await auth.handle_callback_redirect(code, state, error)


@router.get("/session/{session_id}")
async def session_status(
    session_id: str,
    auth: VippsAuth = Depends(get_vipps_auth)
) -> Dict[str, Any]:
    """
    Report the outcome of a login.

    Returns 200 with the user info once authenticated, 401 while pending or
    after a failure, and 404 for unknown or expired sessions.
    """
    try:
        session = await auth.get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found"
        )

    if session.status is not SessionStatus.AUTHENTICATED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Session is {session.status.value}"
        )

    return session.to_dict()


# ============================================================================
# APPLICATION
# ============================================================================

def create_app(config: VippsConfig, client: Optional[VippsClient] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The relay and its session store are created here and live exactly as long
    as the application: started on startup, stopped on shutdown.

    Usage:
        app = create_app(load_config_from_env())

    Args:
        config: Validated configuration
        client: Optional Vipps client, used by tests to fake the provider
    """
    auth = VippsAuth(config, client=client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await auth.initialize()
        try:
            yield
        finally:
            await auth.shutdown()

    app = FastAPI(
        title="Vipps Login Relay",
        description="Vipps login for mobile apps via deep-link redirects",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.vipps_auth = auth

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"{request.method} {request.url.path}")
        return await call_next(request)

    app.include_router(router)
    return app


def main():
    """Load configuration, log it, and serve the application with uvicorn."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    dotenv.load_dotenv()

    try:
        config = load_config_from_env()
        port = port_from_env()
    except ConfigurationError as e:
        logger.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    logger.info("=== Vipps Login Relay ===")
    for key, value in config.describe().items():
        logger.info(f"- {key}: {value}")
    logger.info("=== Available Endpoints ===")
    logger.info(f"Health Check: http://localhost:{port}/auth/health")
    logger.info(f"Start Vipps Login: http://localhost:{port}/auth/vipps/login")
    logger.info(f"Session Check: http://localhost:{port}/auth/session/{{sessionId}}")

    uvicorn.run(create_app(config), host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
