"""
tests/test_recovery_routes.py -- Integration tests for forgot, reset,
confirm_request and confirm, plus the admin-only pages.

Mail goes to the FakeMailer fixture; tokens are pulled out of the rendered
email bodies the way a user would follow the link.
"""

from __future__ import annotations

import re
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from auth.errors import IncorrectPassword, TokenNotFound
from auth.models import TokenKind
from auth.schema import events, tokens
from conftest import login, register
from mail.errors import InvalidConfig, SendFailed


def _token_rows(stores, kind: TokenKind) -> int:
    with stores.engine.connect() as conn:
        stmt = select(func.count()).select_from(tokens).where(tokens.c.kind == kind.value)
        return conn.execute(stmt).scalar_one()


def _last_event(stores):
    with stores.engine.connect() as conn:
        return conn.execute(select(events).order_by(events.c.id.desc()).limit(1)).first()


def _link_token(body: str, param: str) -> str:
    match = re.search(rf"{param}=([A-Za-z0-9_\-=]+)", body)
    assert match, body
    return match.group(1)


class TestForgot:
    def test_password_action_emails_reset_link(self, client, stores, mailer) -> None:
        register(stores)
        resp = client.post("/forgot", data={"email": "alice@example.com", "action": "password"})
        assert resp.status_code == 200
        assert "webauth@example.com" in resp.text
        (sent,) = mailer.sent
        assert sent.recipients == ["alice@example.com"]
        assert sent.from_addr == "webauth@example.com"
        assert sent.subject == "WebAuth forgot password request"
        assert "https://testserver/reset?rtoken=" in sent.body
        assert " UTC." in sent.body
        assert _token_rows(stores, TokenKind.reset) == 1
        event = _last_event(stores)
        assert (event.name, event.username) == ("save_token", "alice")

    def test_user_action_emails_username(self, client, stores, mailer) -> None:
        register(stores)
        client.post("/forgot", data={"email": "alice@example.com", "action": "user"})
        (sent,) = mailer.sent
        assert sent.subject == "WebAuth forgot user request"
        assert "Your user name for WebAuth is alice." in sent.body

    def test_unknown_email_gets_same_page(self, client, stores, mailer) -> None:
        register(stores)
        known = client.post("/forgot", data={"email": "alice@example.com", "action": "password"})
        unknown = client.post("/forgot", data={"email": "ghost@example.com", "action": "password"})
        assert unknown.status_code == known.status_code == 200
        assert "Check your email" in unknown.text
        assert mailer.sent[-1].recipients == ["ghost@example.com"]
        assert "is not registered for WebAuth" in mailer.sent[-1].body
        assert _token_rows(stores, TokenKind.reset) == 1

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"email": "alice@example.com"}, "Please provide an action."),
            ({"action": "password"}, "Please provide your email."),
            ({"email": "alice@example.com", "action": "delete"}, "Please provide a valid action."),
            ({"email": "nope", "action": "password"}, "Please provide a valid email address."),
        ],
    )
    def test_input_errors(self, client, mailer, data, message) -> None:
        resp = client.post("/forgot", data=data)
        assert resp.status_code == 200
        assert message in resp.text
        assert mailer.sent == []

    def test_send_failure_is_server_error(self, client, stores, mailer) -> None:
        register(stores)
        mailer.fail = SendFailed("connection refused")
        resp = client.post("/forgot", data={"email": "alice@example.com", "action": "password"})
        assert resp.status_code == 500
        assert resp.text == "Internal Server Error"

    def test_unconfigured_smtp_is_server_error(self, client, stores, mailer) -> None:
        mailer.fail = InvalidConfig()
        resp = client.post("/forgot", data={"email": "ghost@example.com", "action": "user"})
        assert resp.status_code == 500


class TestReset:
    def _request_token(self, client, mailer) -> str:
        client.post("/forgot", data={"email": "alice@example.com", "action": "password"})
        return _link_token(mailer.sent[-1].body, "rtoken")

    def test_reset_with_emailed_token(self, client, stores, mailer) -> None:
        register(stores)
        rtoken = self._request_token(client, mailer)
        assert f'value="{rtoken}"' in client.get(f"/reset?rtoken={rtoken}").text

        resp = client.post("/reset", data={"rtoken": rtoken, "password1": "new", "password2": "new"})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        stores.users.authenticate("alice", "new")
        assert _token_rows(stores, TokenKind.reset) == 0
        event = _last_event(stores)
        assert (event.name, event.success, event.username) == ("reset_pass", True, "alice")

    def test_token_is_single_use(self, client, stores, mailer) -> None:
        register(stores)
        rtoken = self._request_token(client, mailer)
        client.post("/reset", data={"rtoken": rtoken, "password1": "new", "password2": "new"})
        resp = client.post("/reset", data={"rtoken": rtoken, "password1": "other", "password2": "other"})
        assert "Please provide a valid reset token." in resp.text
        stores.users.authenticate("alice", "new")

    def test_token_consumed_concurrently_leaves_password(self, client, stores, monkeypatch) -> None:
        register(stores)
        token = stores.tokens.create(TokenKind.reset, "alice")

        def already_used(kind, value):
            raise TokenNotFound()

        # Another request deleted the row between our lookup and our delete.
        monkeypatch.setattr(stores.tokens, "remove", already_used)
        resp = client.post("/reset", data={"rtoken": token.value, "password1": "new", "password2": "new"})
        assert resp.status_code == 200
        assert "Please provide a valid reset token." in resp.text
        stores.users.authenticate("alice", "pw")

    def test_expired_token(self, client, stores) -> None:
        register(stores)
        token = stores.tokens.create(TokenKind.reset, "alice", duration=timedelta(seconds=-1))
        resp = client.post("/reset", data={"rtoken": token.value, "password1": "new", "password2": "new"})
        assert resp.status_code == 200
        assert "Reset token expired. Please request again." in resp.text
        assert _token_rows(stores, TokenKind.reset) == 0
        stores.users.authenticate("alice", "pw")
        with pytest.raises(IncorrectPassword):
            stores.users.authenticate("alice", "new")
        event = _last_event(stores)
        assert (event.name, event.success) == ("reset_pass", False)

    def test_session_token_is_not_a_reset_token(self, client, stores) -> None:
        register(stores)
        session = stores.tokens.create(TokenKind.session, "alice")
        resp = client.post("/reset", data={"rtoken": session.value, "password1": "new", "password2": "new"})
        assert "Please provide a valid reset token." in resp.text

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"password1": "a", "password2": "a"}, "Please provide a reset token."),
            ({"rtoken": "abc", "password1": "a"}, "Please provide all the required values."),
            ({"rtoken": "abc", "password1": "a", "password2": "b"}, "Password values do not match."),
        ],
    )
    def test_input_errors(self, client, data, message) -> None:
        resp = client.post("/reset", data=data)
        assert resp.status_code == 200
        assert message in resp.text


class TestConfirm:
    def _request_token(self, client, mailer) -> str:
        client.post("/confirm_request", data={"email": "alice@example.com"})
        return _link_token(mailer.sent[-1].body, "ctoken")

    def test_confirm_request_emails_link(self, client, stores, mailer) -> None:
        register(stores)
        resp = client.post("/confirm_request", data={"email": "alice@example.com"})
        assert resp.status_code == 200
        (sent,) = mailer.sent
        assert sent.subject == "WebAuth confirm email"
        assert "https://testserver/confirm?ctoken=" in sent.body
        assert _token_rows(stores, TokenKind.confirm) == 1

    def test_confirm_request_unknown_email(self, client, mailer) -> None:
        resp = client.post("/confirm_request", data={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert "is not registered for WebAuth" in mailer.sent[-1].body

    def test_confirm_request_missing_email(self, client, mailer) -> None:
        resp = client.post("/confirm_request", data={"email": " "})
        assert "Please provide your email." in resp.text
        assert mailer.sent == []

    def test_confirm_with_emailed_token(self, client, stores, mailer) -> None:
        register(stores)
        ctoken = self._request_token(client, mailer)
        resp = client.post("/confirm", data={"ctoken": ctoken})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        assert stores.users.user_by_name("alice").confirmed is True
        assert _token_rows(stores, TokenKind.confirm) == 0
        notice = mailer.sent[-1]
        assert notice.subject == "WebAuth email confirmed"
        assert notice.recipients == ["alice@example.com"]

    def test_notice_failure_does_not_fail_confirmation(self, client, stores, mailer) -> None:
        register(stores)
        ctoken = self._request_token(client, mailer)
        mailer.fail = SendFailed("down")
        resp = client.post("/confirm", data={"ctoken": ctoken})
        assert resp.status_code == 303
        assert stores.users.user_by_name("alice").confirmed is True

    def test_already_confirmed(self, client, stores) -> None:
        register(stores)
        stores.users.confirm_user("alice")
        token = stores.tokens.create(TokenKind.confirm, "alice")
        resp = client.post("/confirm", data={"ctoken": token.value})
        assert resp.status_code == 200
        assert "User already confirmed." in resp.text

    def test_expired_token(self, client, stores) -> None:
        register(stores)
        token = stores.tokens.create(TokenKind.confirm, "alice", duration=timedelta(seconds=-1))
        resp = client.post("/confirm", data={"ctoken": token.value})
        assert "Confirm token expired. Please request again." in resp.text
        assert stores.users.user_by_name("alice").confirmed is False

    def test_invalid_and_missing_token(self, client) -> None:
        assert "Please provide a valid confirm token." in client.post("/confirm", data={"ctoken": "nope"}).text
        assert "Please provide a confirm token." in client.post("/confirm", data={}).text


class TestAdminPages:
    @pytest.mark.parametrize("path", ["/users", "/events"])
    def test_anonymous_redirected_to_login(self, client, path: str) -> None:
        resp = client.get(path)
        assert resp.status_code == 302
        assert resp.headers["location"] == f"/login?r=%2F{path[1:]}"

    @pytest.mark.parametrize("path", ["/users", "/events"])
    def test_non_admin_forbidden(self, client, stores, path: str) -> None:
        register(stores)
        login(client)
        assert client.get(path).status_code == 403

    def test_admin_sees_users_and_events(self, client, stores) -> None:
        register(stores)
        register(stores, "bob")
        stores.users.set_admin("alice")
        login(client)
        users_page = client.get("/users")
        assert users_page.status_code == 200
        assert "bob@example.com" in users_page.text
        events_page = client.get("/events")
        assert events_page.status_code == 200
        assert "login" in events_page.text
