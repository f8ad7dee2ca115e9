from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse, Response

from app.auth.session import AuthError
from app.context import AppContext, get_context, get_session
from app.models import Session
from app.templating import templates

router = APIRouter(tags=["auth"])

SIGNUP_CONFIRM_NOTICE = "Check your email for a confirmation link!"


def _set_session_cookie(resp: Response, ctx: AppContext, session: Session) -> None:
    resp.set_cookie(
        key=ctx.settings.session_cookie,
        value=session.token,
        max_age=ctx.settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=ctx.settings.cookie_secure,
        path="/",
    )


def _render_auth(request: Request, mode: str, *, email: str = "", notice: str | None = None, error: str | None = None, status_code: int = 200):
    return templates.TemplateResponse(
        request,
        "auth.html",
        {"mode": mode, "email": email, "notice": notice, "error": error},
        status_code=status_code,
    )


@router.get("/auth")
async def auth_page(
    request: Request,
    mode: str = "login",
    notice: str | None = None,
    session: Session | None = Depends(get_session),
):
    """Login / sign-up screen"""
    if session is not None:
        return RedirectResponse("/", status_code=status.HTTP_303_SEE_OTHER)
    return _render_auth(request, "signup" if mode == "signup" else "login", notice=notice)


@router.post("/auth")
async def authenticate(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    mode: str = Form(default="login"),
    ctx: AppContext = Depends(get_context),
):
    mode = "signup" if mode == "signup" else "login"
    try:
        if mode == "login":
            session = await ctx.sessions.sign_in(email, password)
        else:
            result = await ctx.sessions.sign_up(email, password)
            if result.session is None:
                return _render_auth(request, "login", email=email, notice=SIGNUP_CONFIRM_NOTICE)
            session = result.session
    except AuthError as e:
        return _render_auth(request, mode, email=email, error=str(e), status_code=status.HTTP_400_BAD_REQUEST)

    resp = RedirectResponse("/", status_code=status.HTTP_303_SEE_OTHER)
    _set_session_cookie(resp, ctx, session)
    return resp


@router.get("/auth/confirm")
async def confirm_account(request: Request, token: str, ctx: AppContext = Depends(get_context)):
    try:
        email = await ctx.sessions.confirm(token)
    except AuthError as e:
        return _render_auth(request, "login", error=str(e), status_code=status.HTTP_400_BAD_REQUEST)
    return _render_auth(request, "login", email=email, notice="Email confirmed, you can log in now.")


@router.post("/logout")
async def logout(request: Request, ctx: AppContext = Depends(get_context)):
    token = request.cookies.get(ctx.settings.session_cookie)
    await ctx.sessions.sign_out(token)
    resp = RedirectResponse("/auth", status_code=status.HTTP_303_SEE_OTHER)
    resp.delete_cookie(key=ctx.settings.session_cookie, path="/")
    return resp
