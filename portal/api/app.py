"""
HTTP surface for the sign-in pages.

Every browser client gets its own `AuthCoordinator`, found through a signed client
cookie. Routes drive the view models and translate their state into JSON.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from portal.api.registry import ClientContext, ClientRegistry
from portal.auth.config import AuthConfig, load_auth_config
from portal.auth.coordinator import AuthCoordinator
from portal.auth.errors import ExpectedIdentityError, IdentityError, NoActiveSession, StoreError
from portal.auth.models import Profile, ProviderKind, Session
from portal.auth.session import (
    client_cookie_kwargs,
    client_cookie_name,
    decode_client_id,
    encode_client_id,
    new_client_id,
)
from portal.profiles.documents import profile_to_document
from portal.views.login import DASHBOARD_ROUTE, LoginView
from portal.views.navbar import NavbarView
from portal.views.pending_verification import LOGIN_ROUTE, PendingVerificationView
from portal.views.register import REDIRECT_DELAY_SECONDS, RegisterView

logger = logging.getLogger(__name__)

app = FastAPI(title="Portal")

_OAUTH_COOKIE_PATH = "/api/auth"
_OAUTH_TTL_SECONDS = 10 * 60
_ME_SETTLE_SECONDS = 2.0

_registry: Optional[ClientRegistry] = None


def _coordinator_factory(cfg: AuthConfig) -> Callable[[], AuthCoordinator]:
    from portal.auth.identity_toolkit import IdentityToolkitProvider
    from portal.profiles.store import build_store

    store = build_store()

    def _factory() -> AuthCoordinator:
        return AuthCoordinator(IdentityToolkitProvider(cfg), store, collection=cfg.profile_collection)

    return _factory


def get_registry() -> ClientRegistry:
    global _registry
    if _registry is None:
        cfg = load_auth_config()
        _registry = ClientRegistry(_coordinator_factory(cfg), idle_seconds=cfg.client_idle_seconds)
    return _registry


def set_registry(registry: Optional[ClientRegistry]) -> None:
    global _registry
    _registry = registry


# ---- request models ----


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field("", alias="displayName")
    email: str = ""
    password: str = ""
    confirm_password: str = Field("", alias="confirmPassword")


class LoginRequest(BaseModel):
    email: str = ""
    password: str = ""


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[str] = Field(None, alias="displayName")
    photo_url: Optional[str] = Field(None, alias="photoURL")


# ---- helpers ----


async def _client(request: Request) -> Tuple[ClientContext, str]:
    cfg = load_auth_config()
    client_id = decode_client_id(cfg, request.cookies.get(client_cookie_name(cfg))) or new_client_id()
    cookie = encode_client_id(cfg, client_id)
    if not cookie:
        raise HTTPException(status_code=500, detail="Client signing is not configured (AUTH_SESSION_SECRET)")
    ctx = await get_registry().get_or_create(client_id)
    return ctx, cookie


def _json(cookie: str, content: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**client_cookie_kwargs(load_auth_config(), cookie))
    return resp


def _error_status(error: Optional[IdentityError]) -> int:
    if error is None or isinstance(error, ExpectedIdentityError):
        return 400
    return 500


def _oauth_cookie_kwargs(cfg: AuthConfig, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _public_base_url(cfg: AuthConfig) -> str:
    base = (cfg.public_base_url or "").strip().rstrip("/")
    if not base:
        raise HTTPException(status_code=500, detail="AUTH_PUBLIC_BASE_URL is required for federated sign-in")
    return base


def safe_next_path(next_path: Optional[str]) -> str:
    """Only same-site relative paths survive a redirect; anything else becomes `/`.

    Browsers read `/\\host` like `//host`, so both prefixes are rejected.
    """
    p = (next_path or "").strip().replace("\r", "").replace("\n", "")
    if not p.startswith("/") or p.startswith(("//", "/\\")):
        return "/"
    return p


def _provider_kind(cfg: AuthConfig, provider: str) -> ProviderKind:
    try:
        kind = ProviderKind(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown provider")
    if cfg.federated_client(kind) is None:
        raise HTTPException(status_code=403, detail=f"{kind.value} sign-in is not enabled")
    return kind


def _session_json(session: Session) -> Dict[str, Any]:
    return {
        "uid": session.uid,
        "email": session.email,
        "displayName": session.display_name,
        "photoURL": session.photo_url,
        "emailVerified": session.email_verified,
    }


def _profile_json(profile: Optional[Profile]) -> Optional[Dict[str, Any]]:
    return profile_to_document(profile) if profile is not None else None


# ---- lifecycle + middleware ----


@app.on_event("startup")
async def _startup_prepare_store() -> None:
    """
    With DB_AUTO_MIGRATE=1, create the profile store schema before serving.

    Failures are logged; the server still starts and profile reads degrade.
    """
    from portal.profiles.config import load_store_config
    from portal.profiles.store import prepare_store

    cfg = load_store_config()
    if not cfg.db_auto_migrate:
        return
    try:
        logger.info("Profile store: %s", await prepare_store(cfg))
    except Exception as e:
        logger.warning("Profile store: startup schema setup failed: %s", str(e))


@app.on_event("shutdown")
async def _shutdown_close_clients() -> None:
    if _registry is not None:
        await _registry.close_all()


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise
    process_time = time.time() - start_time
    logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
    return response


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


# ---- routes ----


@app.post("/api/auth/register")
async def auth_register(request: Request, body: RegisterRequest) -> JSONResponse:
    ctx, cookie = await _client(request)
    view = RegisterView(ctx.coordinator)
    ok = await view.submit(body.display_name, body.email, body.password, body.confirm_password)
    if not ok:
        return _json(
            cookie,
            {"ok": False, "error": view.error_message or None, "fieldErrors": view.field_errors},
            status_code=_error_status(view.error),
        )
    return _json(
        cookie,
        {
            "ok": True,
            "message": view.success_message,
            "next": view.next_route,
            "redirectAfterMs": int(REDIRECT_DELAY_SECONDS * 1000),
        },
    )


@app.post("/api/auth/login")
async def auth_login(request: Request, body: LoginRequest) -> JSONResponse:
    ctx, cookie = await _client(request)
    view = LoginView(ctx.coordinator)
    ok = await view.submit(body.email, body.password)
    if not ok:
        return _json(
            cookie,
            {"ok": False, "error": view.error_message or None, "fieldErrors": view.field_errors},
            status_code=_error_status(view.error),
        )
    return _json(cookie, {"ok": True, "next": view.next_route})


@app.get("/api/auth/login/{provider}")
async def auth_login_federated(request: Request, provider: str, next_path: str = Query(DASHBOARD_ROUTE, alias="next")):
    """Start a federated sign-in: redirect the browser to the provider's consent screen."""
    from portal.auth.oidc import build_authorize_url, pkce_challenge

    cfg = load_auth_config()
    kind = _provider_kind(cfg, provider)
    base = _public_base_url(cfg)
    redirect_uri = f"{base}/api/auth/callback/{kind.value}"

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    verifier = secrets.token_urlsafe(32)  # 43 chars, a valid PKCE verifier
    # Google discovery may fetch over the network.
    url = await asyncio.to_thread(
        build_authorize_url,
        cfg,
        kind,
        redirect_uri=redirect_uri,
        state=state,
        nonce=nonce,
        code_challenge=pkce_challenge(verifier),
    )

    _ctx, cookie = await _client(request)
    resp = RedirectResponse(url=url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**client_cookie_kwargs(cfg, cookie))
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key="portal_oauth_state", value=state, max_age=_OAUTH_TTL_SECONDS))
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key="portal_oauth_nonce", value=nonce, max_age=_OAUTH_TTL_SECONDS))
    resp.set_cookie(**_oauth_cookie_kwargs(cfg, key="portal_oauth_verifier", value=verifier, max_age=_OAUTH_TTL_SECONDS))
    resp.set_cookie(
        **_oauth_cookie_kwargs(
            cfg, key="portal_oauth_next", value=safe_next_path(next_path), max_age=_OAUTH_TTL_SECONDS
        )
    )
    return resp


@app.get("/api/auth/callback/{provider}")
async def auth_callback_federated(
    request: Request,
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Finish a federated sign-in after the provider redirects back."""
    from portal.auth.consent import AuthorizationCodeConsent

    cfg = load_auth_config()
    kind = _provider_kind(cfg, provider)
    base = _public_base_url(cfg)

    cookie_state = (request.cookies.get("portal_oauth_state") or "").strip()
    if not error and (not cookie_state or cookie_state != (state or "").strip()):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    consent = AuthorizationCodeConsent(
        cfg,
        redirect_uri=f"{base}/api/auth/callback/{kind.value}",
        code=code,
        code_verifier=(request.cookies.get("portal_oauth_verifier") or "").strip(),
        nonce=(request.cookies.get("portal_oauth_nonce") or "").strip(),
        error=error,
    )

    ctx, cookie = await _client(request)
    view = LoginView(ctx.coordinator)
    if await view.login_with_provider(kind, consent):
        target = safe_next_path(request.cookies.get("portal_oauth_next") or view.next_route)
    else:
        target = f"{LOGIN_ROUTE}?{urlencode({'error': view.error_message})}"

    resp = RedirectResponse(url=target, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**client_cookie_kwargs(cfg, cookie))
    for key in ("portal_oauth_state", "portal_oauth_nonce", "portal_oauth_verifier", "portal_oauth_next"):
        resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=key, value="", max_age=0))
    return resp


@app.post("/api/auth/logout")
async def auth_logout(request: Request) -> JSONResponse:
    ctx, cookie = await _client(request)
    if ctx.pending_verification is not None:
        ctx.pending_verification.close()
        ctx.pending_verification = None
    navbar = NavbarView(ctx.coordinator)
    try:
        ok = await navbar.sign_out()
    finally:
        navbar.close()
    if not ok:
        return _json(cookie, {"ok": False, "error": "Sign out failed"}, status_code=500)
    return _json(cookie, {"ok": True, "next": LOGIN_ROUTE})


@app.get("/api/auth/me")
async def auth_me(request: Request) -> JSONResponse:
    ctx, cookie = await _client(request)
    coordinator = ctx.coordinator
    if coordinator.get_current_session() is None:
        return _json(cookie, {"ok": False, "detail": "Unauthorized"}, status_code=401)
    try:
        await asyncio.wait_for(coordinator.settle(), timeout=_ME_SETTLE_SECONDS)
    except asyncio.TimeoutError:
        logger.debug("Profile enrichment still pending for client %s", ctx.client_id[:8])
    session = coordinator.session.value or coordinator.get_current_session()
    return _json(
        cookie,
        {
            "ok": True,
            "session": _session_json(session) if session is not None else None,
            "profile": _profile_json(coordinator.get_current_profile()),
            "isAdmin": coordinator.has_role("admin"),
        },
    )


@app.patch("/api/auth/profile")
async def auth_update_profile(request: Request, body: ProfileUpdateRequest) -> JSONResponse:
    ctx, cookie = await _client(request)
    partial = {k: v for k, v in body.model_dump().items() if v is not None}
    if not partial:
        return _json(cookie, {"ok": False, "error": "Nothing to update"}, status_code=400)
    try:
        await ctx.coordinator.update_profile(partial)
    except NoActiveSession:
        return _json(cookie, {"ok": False, "detail": "Unauthorized"}, status_code=401)
    except StoreError:
        logger.exception("Profile update failed for client %s", ctx.client_id[:8])
        return _json(cookie, {"ok": False, "error": "Failed to update profile"}, status_code=500)
    return _json(cookie, {"ok": True, "profile": _profile_json(ctx.coordinator.get_current_profile())})


@app.get("/api/auth/verification")
async def auth_verification_status(request: Request) -> JSONResponse:
    """Open (or re-read) the pending-verification view; its poller runs in the background."""
    ctx, cookie = await _client(request)
    view = ctx.pending_verification
    if view is None:
        view = PendingVerificationView(ctx.coordinator, poll_seconds=load_auth_config().verification_poll_seconds)
        view.open()
        if view.next_route == LOGIN_ROUTE:
            return _json(cookie, {"ok": False, "next": LOGIN_ROUTE}, status_code=401)
        ctx.pending_verification = view
    return _json(
        cookie,
        {"ok": True, "email": view.user_email, "verified": view.verified, "next": view.next_route},
    )


@app.post("/api/auth/verification/resend")
async def auth_verification_resend(request: Request) -> JSONResponse:
    ctx, cookie = await _client(request)
    view = ctx.pending_verification or PendingVerificationView(ctx.coordinator)
    ok = await view.resend_verification_email()
    return _json(cookie, {"ok": ok, "message": view.resend_message}, status_code=200 if ok else 400)


@app.delete("/api/auth/verification")
async def auth_verification_close(request: Request) -> JSONResponse:
    ctx, cookie = await _client(request)
    if ctx.pending_verification is not None:
        ctx.pending_verification.close()
        ctx.pending_verification = None
    return _json(cookie, {"ok": True})


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting portal server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
