"""
web/routes.py -- Jinja2 template routes for the WebAuth account flows.

These routes serve server-rendered HTML forms. They share app.state with the
API layer (engine-backed stores, journal, mailer) and read the current user
from request.state.user, which the session middleware in api/main.py sets.

Handlers are plain `def` so FastAPI runs them in its threadpool; every store
call is blocking SQLAlchemy I/O.

Outcome rules for every POST:
  - Input, authentication, token and identity-state problems re-render the
    same form with a message and HTTP 200.
  - Storage failures (SQLAlchemyError) and mail failures are logged and
    answered with a bare 500 "Internal Server Error".
  - Journal failures are logged and ignored.
  - Success redirects with 303 See Other so a browser refresh does not
    resubmit the form.

Routes:
  GET       /                 -- home page
  GET/POST  /register         -- create account
  GET/POST  /login            -- password login, ?r= post-login target
  GET       /logout           -- revoke session, delete cookie
  GET/POST  /forgot           -- username reminder or password reset email
  GET/POST  /confirm_request  -- email a confirmation link
  GET/POST  /reset            -- set a new password with ?rtoken=
  GET/POST  /confirm          -- confirm email with ?ctoken=
  GET       /user             -- current user and last login
  GET       /users            -- all users (admin)
  GET       /events           -- audit journal (admin)
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import jinja2
from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    ConfirmTokenExpired,
    IncorrectPassword,
    ResetTokenExpired,
    TokenNotFound,
    UserAlreadyConfirmed,
    UserNotFound,
    WriteEventError,
)
from auth.events import EventJournal
from auth.models import EventName, TokenKind, User
from auth.session import SESSION_COOKIE, delete_session_cookie, set_session_cookie
from auth.store import UserStore
from auth.tokens import TokenStore
from core.config import get_settings
from core.urls import local_redirect
from mail.errors import InvalidConfig, MailError
from mail.smtp import address_of

logger = logging.getLogger("webauth.web")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

templates = Jinja2Templates(directory=str(_TEMPLATE_DIR))
# Email bodies are plain text; HTML autoescaping would mangle "&" in links.
_email_env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(str(_TEMPLATE_DIR / "email")),
    autoescape=False,
    keep_trailing_newline=True,
)
router = APIRouter()

# ---------------------------------------------------------------------------
# User-visible messages
# ---------------------------------------------------------------------------

MSG_MISSING_REQUIRED = "Please provide all the required values."
MSG_PASSWORD_MISMATCH = "Password values do not match."
MSG_INVALID_EMAIL = "Please provide a valid email address."
MSG_USERNAME_EXISTS = "User Name already exists."
MSG_EMAIL_EXISTS = "Email Address already registered."

MSG_MISSING_USERNAME_PASSWORD = "Missing username and password."
MSG_MISSING_USERNAME = "Missing username."
MSG_MISSING_PASSWORD = "Missing password."
MSG_LOGIN_FAILED = "Login failed."

MSG_MISSING_ACTION = "Please provide an action."
MSG_MISSING_EMAIL = "Please provide your email."
MSG_INVALID_ACTION = "Please provide a valid action."

MSG_MISSING_RESET_TOKEN = "Please provide a reset token."
MSG_INVALID_RESET_TOKEN = "Please provide a valid reset token."
MSG_EXPIRED_RESET_TOKEN = "Reset token expired. Please request again."

MSG_MISSING_CONFIRM_TOKEN = "Please provide a confirm token."
MSG_INVALID_CONFIRM_TOKEN = "Please provide a valid confirm token."
MSG_EXPIRED_CONFIRM_TOKEN = "Confirm token expired. Please request again."
MSG_ALREADY_CONFIRMED = "User already confirmed."

_FORGOT_ACTIONS = ("user", "password")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _users(request: Request) -> UserStore:
    return request.app.state.user_store


def _tokens(request: Request) -> TokenStore:
    return request.app.state.token_store


def _render(request: Request, name: str, **context) -> HTMLResponse:
    context.setdefault("user", getattr(request.state, "user", User()))
    context.setdefault("title", get_settings().app_name)
    context.setdefault("message", "")
    return templates.TemplateResponse(request, name, context)


def _internal_error() -> PlainTextResponse:
    return PlainTextResponse("Internal Server Error", status_code=500)


def _journal(request: Request, name: EventName, success: bool, username: str, message: str) -> None:
    """Record an event; a failed write is logged and otherwise ignored."""
    journal: EventJournal = request.app.state.journal
    try:
        journal.write(name, success, username, message)
    except WriteEventError:
        logger.exception("Failed to journal %s event for %r", name.value, username)


def _send_mail(request: Request, to: str, subject: str, template: str, **context) -> None:
    """Render an email body and send it. MailError propagates."""
    settings = get_settings()
    body = _email_env.get_template(template).render(title=settings.app_name, base_url=settings.base_url, **context)
    try:
        request.app.state.mailer.send_message(settings.mail_from, [to], subject, body)
    except InvalidConfig:
        logger.critical("SMTP is not configured; cannot send %r", subject)
        raise
    logger.info("Sent %r", subject)


def _format_expiry(value: Optional[datetime]) -> str:
    """Render like "January 2, 2006 3:04 PM UTC"."""
    if value is None:
        return ""
    return value.strftime(f"%B {value.day}, %Y {value.hour % 12 or 12}:%M %p %Z")


def _require_login(request: Request) -> Optional[Response]:
    """Return a redirect to /login for anonymous users, None otherwise.

    Call at the top of protected route handlers:
        if redirect := _require_login(request):
            return redirect
    """
    if not request.state.user.is_authenticated:
        return RedirectResponse("/login?" + urlencode({"r": request.url.path}), status_code=302)
    return None


# ---------------------------------------------------------------------------
# Home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    return _render(request, "index.html")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.get("/register", response_class=HTMLResponse)
def register_form(request: Request) -> HTMLResponse:
    return _render(request, "register.html", form={})


@router.post("/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    username: str = Form(""),
    full_name: str = Form(""),
    email: str = Form(""),
    password1: str = Form(""),
    password2: str = Form(""),
) -> Response:
    username, full_name, email = username.strip(), full_name.strip(), email.strip()
    password1, password2 = password1.strip(), password2.strip()
    form = {"username": username, "full_name": full_name, "email": email}

    if not all((username, full_name, email, password1, password2)):
        return _render(request, "register.html", message=MSG_MISSING_REQUIRED, form=form)
    if password1 != password2:
        return _render(request, "register.html", message=MSG_PASSWORD_MISMATCH, form=form)
    if address_of(email) != email:
        return _render(request, "register.html", message=MSG_INVALID_EMAIL, form=form)

    users = _users(request)
    try:
        if users.exists_by_username(username):
            _journal(request, EventName.register, False, username, "user name already exists")
            return _render(request, "register.html", message=MSG_USERNAME_EXISTS, form=form)
        if users.exists_by_email(email):
            _journal(request, EventName.register, False, username, "email already registered")
            return _render(request, "register.html", message=MSG_EMAIL_EXISTS, form=form)
        users.register(username, full_name, email, password1)
    except SQLAlchemyError:
        logger.exception("Registration failed for %r", username)
        return _internal_error()

    _journal(request, EventName.register, True, username, "registered user")
    logger.info("Registered %r", username)
    return RedirectResponse("/login", status_code=303)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request, r: str = "") -> HTMLResponse:
    return _render(request, "login.html", r=r)


@router.post("/login", response_class=HTMLResponse)
def login_post(
    request: Request,
    r: str = "",
    username: str = Form(""),
    password: str = Form(""),
    remember: str = Form(""),
) -> Response:
    """Handle username/password login.

    Unknown user and wrong password produce the same message; only the
    journal tells them apart.
    """
    username, password = username.strip(), password.strip()

    if not username and not password:
        message = MSG_MISSING_USERNAME_PASSWORD
    elif not username:
        message = MSG_MISSING_USERNAME
    elif not password:
        message = MSG_MISSING_PASSWORD
    else:
        message = ""
    if message:
        return _render(request, "login.html", message=message, r=r, username=username)

    try:
        _users(request).authenticate(username, password)
    except (UserNotFound, IncorrectPassword) as exc:
        reason = "user not found" if isinstance(exc, UserNotFound) else "incorrect password"
        _journal(request, EventName.login, False, username, reason)
        return _render(request, "login.html", message=MSG_LOGIN_FAILED, r=r, username=username)
    except SQLAlchemyError:
        logger.exception("Login lookup failed for %r", username)
        return _internal_error()

    try:
        token = _tokens(request).create(TokenKind.session, username)
    except (SQLAlchemyError, UserNotFound):
        logger.exception("Failed to create session for %r", username)
        return _internal_error()

    _journal(request, EventName.login, True, username, "success")

    target = local_redirect(r)
    if r and not target.ok:
        logger.warning("Ignoring unsafe redirect target %r", r)
    resp = RedirectResponse(target.safe if target.ok else "/", status_code=303)
    set_session_cookie(resp, token, remember=bool(remember.strip()))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/logout", response_class=HTMLResponse)
def logout(request: Request) -> Response:
    """Revoke the session token (if any) and delete the cookie.

    A second logout finds no token; that is not an error.
    """
    username = request.state.user.username
    value = request.cookies.get(SESSION_COOKIE, "")
    if value:
        try:
            _tokens(request).remove(TokenKind.session, value)
        except TokenNotFound:
            logger.info("Session token already gone")
        except SQLAlchemyError:
            logger.exception("Failed to remove session token")
            return _internal_error()

    _journal(request, EventName.logout, True, username, "logged out user")
    resp = _render(request, "logout.html", user=User())
    delete_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Forgot user name / password
# ---------------------------------------------------------------------------


@router.get("/forgot", response_class=HTMLResponse)
def forgot_form(request: Request) -> HTMLResponse:
    return _render(request, "forgot.html")


@router.post("/forgot", response_class=HTMLResponse)
def forgot_post(request: Request, email: str = Form(""), action: str = Form("")) -> Response:
    """Email a username reminder or a reset link.

    The "sent" page is rendered whether or not the address is registered.
    An unknown address gets a "not registered" email instead, and the token
    store treats the empty username as a no-op so the code path is the same.
    """
    email, action = email.strip(), action.strip()

    if not action:
        message = MSG_MISSING_ACTION
    elif not email:
        message = MSG_MISSING_EMAIL
    elif action not in _FORGOT_ACTIONS:
        message = MSG_INVALID_ACTION
    elif address_of(email) is None:
        message = MSG_INVALID_EMAIL
    else:
        message = ""
    if message:
        return _render(request, "forgot.html", message=message, email=email)

    try:
        try:
            username = _users(request).username_by_email(email)
        except UserNotFound:
            username = ""
        token = _tokens(request).create(TokenKind.reset, username)
    except (SQLAlchemyError, UserNotFound):
        logger.exception("Forgot %s request failed", action)
        return _internal_error()

    if token.value:
        _journal(request, EventName.save_token, True, username, "reset token")

    subject = f"{get_settings().app_name} forgot {action} request"
    if not username:
        template, context = "not_registered.txt", {"email": email}
    elif action == "password":
        template, context = "forgot_password.txt", {"token": token.value, "expires": _format_expiry(token.expires)}
    else:
        template, context = "forgot_user.txt", {"username": username}

    try:
        _send_mail(request, email, subject, template, **context)
    except MailError:
        logger.exception("Failed to send forgot %s email", action)
        return _internal_error()

    return _render(request, "forgot_sent.html", email_from=get_settings().mail_from)


# ---------------------------------------------------------------------------
# Confirmation request
# ---------------------------------------------------------------------------


@router.get("/confirm_request", response_class=HTMLResponse)
def confirm_request_form(request: Request) -> HTMLResponse:
    return _render(request, "confirm_request.html")


@router.post("/confirm_request", response_class=HTMLResponse)
def confirm_request_post(request: Request, email: str = Form("")) -> Response:
    """Email a confirmation link. Same enumeration rules as /forgot."""
    email = email.strip()
    if not email:
        return _render(request, "confirm_request.html", message=MSG_MISSING_EMAIL)
    if address_of(email) is None:
        return _render(request, "confirm_request.html", message=MSG_INVALID_EMAIL, email=email)

    try:
        try:
            username = _users(request).username_by_email(email)
        except UserNotFound:
            username = ""
        token = _tokens(request).create(TokenKind.confirm, username)
    except (SQLAlchemyError, UserNotFound):
        logger.exception("Confirm request failed")
        return _internal_error()

    if token.value:
        _journal(request, EventName.save_token, True, username, "confirm token")

    subject = f"{get_settings().app_name} confirm email"
    if not username:
        template, context = "not_registered.txt", {"email": email}
    else:
        template, context = "confirm_request.txt", {"token": token.value, "expires": _format_expiry(token.expires)}

    try:
        _send_mail(request, email, subject, template, **context)
    except MailError:
        logger.exception("Failed to send confirm email")
        return _internal_error()

    return _render(request, "confirm_request_sent.html", email_from=get_settings().mail_from)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/reset", response_class=HTMLResponse)
def reset_form(request: Request, rtoken: str = "") -> HTMLResponse:
    return _render(request, "reset.html", rtoken=rtoken)


@router.post("/reset", response_class=HTMLResponse)
def reset_post(
    request: Request,
    rtoken: str = Form(""),
    password1: str = Form(""),
    password2: str = Form(""),
) -> Response:
    """Set a new password. The reset token is consumed first, so it works once."""
    rtoken, password1, password2 = rtoken.strip(), password1.strip(), password2.strip()

    if not rtoken:
        return _render(request, "reset.html", message=MSG_MISSING_RESET_TOKEN)
    if not password1 or not password2:
        return _render(request, "reset.html", message=MSG_MISSING_REQUIRED, rtoken=rtoken)
    if password1 != password2:
        return _render(request, "reset.html", message=MSG_PASSWORD_MISMATCH, rtoken=rtoken)

    tokens = _tokens(request)
    try:
        username = tokens.lookup_username(TokenKind.reset, rtoken)
    except UserNotFound:
        return _render(request, "reset.html", message=MSG_INVALID_RESET_TOKEN)
    except ResetTokenExpired:
        _journal(request, EventName.reset_pass, False, "", "reset token expired")
        return _render(request, "reset.html", message=MSG_EXPIRED_RESET_TOKEN)
    except SQLAlchemyError:
        logger.exception("Reset token lookup failed")
        return _internal_error()

    # The token is deleted before the password changes; a second request finds it gone.
    try:
        tokens.remove(TokenKind.reset, rtoken)
    except TokenNotFound:
        logger.warning("Reset token for %r was already used", username)
        return _render(request, "reset.html", message=MSG_INVALID_RESET_TOKEN)
    except SQLAlchemyError:
        logger.exception("Failed to consume reset token for %r", username)
        return _internal_error()

    try:
        _users(request).update_password(username, password1)
    except (SQLAlchemyError, UserNotFound):
        logger.exception("Password reset failed for %r", username)
        return _internal_error()

    _journal(request, EventName.reset_pass, True, username, "password reset")
    return RedirectResponse("/login", status_code=303)


# ---------------------------------------------------------------------------
# Email confirmation
# ---------------------------------------------------------------------------


@router.get("/confirm", response_class=HTMLResponse)
def confirm_form(request: Request, ctoken: str = "") -> HTMLResponse:
    return _render(request, "confirm.html", ctoken=ctoken)


@router.post("/confirm", response_class=HTMLResponse)
def confirm_post(request: Request, ctoken: str = Form("")) -> Response:
    """Mark the token owner confirmed.

    "User already confirmed" is reported as its own message rather than
    folded into the invalid-token one.
    """
    ctoken = ctoken.strip()
    if not ctoken:
        return _render(request, "confirm.html", message=MSG_MISSING_CONFIRM_TOKEN)

    tokens = _tokens(request)
    users = _users(request)
    try:
        username = tokens.lookup_username(TokenKind.confirm, ctoken)
    except UserNotFound:
        return _render(request, "confirm.html", message=MSG_INVALID_CONFIRM_TOKEN)
    except ConfirmTokenExpired:
        return _render(request, "confirm.html", message=MSG_EXPIRED_CONFIRM_TOKEN)
    except SQLAlchemyError:
        logger.exception("Confirm token lookup failed")
        return _internal_error()

    try:
        users.confirm_user(username)
    except UserAlreadyConfirmed:
        _journal(request, EventName.confirmed, False, username, "user already confirmed")
        return _render(request, "confirm.html", message=MSG_ALREADY_CONFIRMED)
    except (SQLAlchemyError, UserNotFound):
        logger.exception("Confirmation failed for %r", username)
        return _internal_error()

    try:
        tokens.remove(TokenKind.confirm, ctoken)
    except (TokenNotFound, SQLAlchemyError):
        logger.exception("Failed to remove confirm token for %r", username)

    _journal(request, EventName.confirmed, True, username, "success")

    try:
        user = users.user_by_name(username)
        _send_mail(request, user.email, f"{get_settings().app_name} email confirmed", "confirmed.txt", username=username)
    except (MailError, SQLAlchemyError, UserNotFound):
        logger.exception("Failed to send confirmation notice to %r", username)

    return RedirectResponse("/login", status_code=303)


# ---------------------------------------------------------------------------
# Account views
# ---------------------------------------------------------------------------


@router.get("/user", response_class=HTMLResponse)
def user_view(request: Request) -> HTMLResponse:
    return _render(request, "user.html")


@router.get("/users", response_class=HTMLResponse)
def users_view(request: Request) -> Response:
    if redirect := _require_login(request):
        return redirect
    if not request.state.user.is_admin:
        return PlainTextResponse("Forbidden", status_code=403)
    try:
        users = _users(request).list_users()
    except SQLAlchemyError:
        logger.exception("Failed to list users")
        return _internal_error()
    return _render(request, "users.html", users=users)


@router.get("/events", response_class=HTMLResponse)
def events_view(request: Request) -> Response:
    if redirect := _require_login(request):
        return redirect
    if not request.state.user.is_admin:
        return PlainTextResponse("Forbidden", status_code=403)
    journal: EventJournal = request.app.state.journal
    try:
        events = journal.list_events()
    except SQLAlchemyError:
        logger.exception("Failed to list events")
        return _internal_error()
    return _render(request, "events.html", events=events)
