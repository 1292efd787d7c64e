from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from magiclink.api.schemas import MagicLinkRequest, MeResponse, MessageResponse
from magiclink.logging import get_logger
from magiclink.service.errors import AuthenticationError, InvalidTokenError, ServiceError
from magiclink.service.runtime import Runtime
from magiclink.service.sessions import Session

logger = get_logger(__name__)

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request, runtime: Runtime) -> str:
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _base_url(request: Request, runtime: Runtime) -> str:
    if runtime.settings.app_base_url:
        return runtime.settings.app_base_url
    return str(request.base_url).rstrip("/")


def _apply_session_cookie(response: Response, session_id: str, runtime: Runtime) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        max_age=runtime.sessions.ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


async def require_session(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> Session:
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    session = await runtime.sessions.resolve(session_id)
    if session is None:
        raise AuthenticationError("Not authenticated.")
    return session


async def get_session(
    response: Response,
    session: Session = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
) -> Session:
    """Authenticated session with the cookie's max-age pushed forward."""
    _apply_session_cookie(response, session.id, runtime)
    return session


@router.post("/auth/magic-link", response_model=MessageResponse, tags=["auth"])
async def request_magic_link(
    body: MagicLinkRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    message = await runtime.magic_links.request_link(
        body.email,
        client_ip=_client_ip(request, runtime),
        base_url=_base_url(request, runtime),
    )
    return MessageResponse(message=message)


@router.get("/auth/callback", tags=["auth"])
async def magic_link_callback(
    token: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    settings = runtime.settings
    try:
        session = await runtime.magic_links.redeem(token)
    except InvalidTokenError:
        return RedirectResponse(settings.error_redirect, status_code=302)
    except ServiceError as exc:
        # Browser flow: land on the error page rather than a JSON body
        logger.error("magic_link_callback_failed", error_code=exc.error_code, message=exc.message)
        return RedirectResponse(settings.error_redirect, status_code=302)
    response = RedirectResponse(settings.success_redirect, status_code=302)
    _apply_session_cookie(response, session.id, runtime)
    return response


@router.get(
    "/api/me",
    response_model=MeResponse,
    response_model_by_alias=True,
    tags=["auth"],
)
async def me(session: Session = Depends(get_session)):
    return MeResponse(
        email=session.email,
        authenticated=True,
        login_time=session.login_time.isoformat(),
    )


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    response: Response,
    session: Session = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.sessions.terminate(session.id)
    _clear_session_cookie(response, runtime)
    return MessageResponse(message="Logged out successfully")
