from __future__ import annotations

import unittest

from _fakes import TOKEN_URL, ScriptedTransport, json_response
from oauth_stepper.capture import CapturingClient
from oauth_stepper.errors import TokenExchangeError, TransportError
from oauth_stepper.models import ClientRegistration, PendingPKCE, TokenSet
from oauth_stepper.token import (
    authorization_code_form,
    prepare_token_request,
    refresh_form,
    refresh_tokens,
    send_token_request,
)

REDIRECT = "http://127.0.0.1:33418/callback"
PKCE = PendingPKCE(
    code_verifier="v" * 43,
    code_challenge="c",
    state="s",
    redirect_uri=REDIRECT,
    created_at=0,
    expires_at=300,
)


class TokenFormTest(unittest.TestCase):
    def test_authorization_code_form(self) -> None:
        public = ClientRegistration(client_id="pub", redirect_uris=[REDIRECT], source="dcr")
        confidential = ClientRegistration(
            client_id="conf", redirect_uris=[REDIRECT], source="preregistered", client_secret="sec"
        )

        form = authorization_code_form(code="abc", registration=public, pkce=PKCE, resource=None)
        self.assertEqual(
            form,
            {
                "grant_type": "authorization_code",
                "code": "abc",
                "client_id": "pub",
                "redirect_uri": REDIRECT,
                "code_verifier": "v" * 43,
            },
        )

        form = authorization_code_form(
            code="abc", registration=confidential, pkce=PKCE, resource="https://mcp.example.com/mcp"
        )
        self.assertEqual(form["client_secret"], "sec")
        self.assertEqual(form["resource"], "https://mcp.example.com/mcp")

    def test_refresh_form_requires_refresh_token(self) -> None:
        with self.assertRaises(TokenExchangeError) as ctx:
            refresh_form(tokens=TokenSet(access_token="a", client_id="c"), registration=None, resource=None)
        self.assertFalse(ctx.exception.retryable)

        form = refresh_form(
            tokens=TokenSet(access_token="a", client_id="c", refresh_token="r"),
            registration=None,
            resource=None,
        )
        self.assertEqual(form, {"grant_type": "refresh_token", "refresh_token": "r", "client_id": "c"})

    def test_prepare_token_request(self) -> None:
        request = prepare_token_request(TOKEN_URL, {"grant_type": "authorization_code", "code": "x y"})
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.headers["Content-Type"], "application/x-www-form-urlencoded")
        self.assertEqual(request.body, "grant_type=authorization_code&code=x+y")


class SendTokenRequestTest(unittest.TestCase):
    def _send(self, *answers, **kwargs) -> TokenSet:
        transport = ScriptedTransport()
        transport.add("POST", TOKEN_URL, *answers)
        self.transport = transport
        request = prepare_token_request(TOKEN_URL, {"grant_type": "authorization_code", "code": "x"})
        return send_token_request(CapturingClient(transport, step="exchange_token"), request, client_id="c", **kwargs)

    def test_success(self) -> None:
        tokens = self._send(
            json_response(200, {"access_token": "at", "expires_in": 60, "refresh_token": "rt"}),
            now=1000,
        )
        self.assertEqual(tokens.access_token, "at")
        self.assertEqual(tokens.expires_at, 1060)
        self.assertEqual(tokens.obtained_at, 1000)
        self.assertEqual(tokens.token_type, "Bearer")
        self.assertEqual(self.transport.form_of(self.transport.calls[0]), {"grant_type": "authorization_code", "code": "x"})

    def test_invalid_grant_is_fatal_with_guidance(self) -> None:
        with self.assertRaises(TokenExchangeError) as ctx:
            self._send(json_response(400, {"error": "invalid_grant", "error_description": "expired"}))
        exc = ctx.exception
        self.assertEqual(exc.oauth_error, "invalid_grant")
        self.assertFalse(exc.retryable)
        self.assertIn("expired", exc.message)
        self.assertIn("authorize again", exc.guidance)

    def test_server_error_is_retryable(self) -> None:
        with self.assertRaises(TokenExchangeError) as ctx:
            self._send(json_response(502, "bad gateway"))
        self.assertTrue(ctx.exception.retryable)
        self.assertIn("HTTP 502", ctx.exception.message)

    def test_missing_access_token(self) -> None:
        with self.assertRaisesRegex(TokenExchangeError, "missing access_token"):
            self._send(json_response(200, {"token_type": "Bearer"}))

    def test_transport_error(self) -> None:
        with self.assertRaisesRegex(TokenExchangeError, "refused"):
            self._send(TransportError("refused"))


class RefreshTokensTest(unittest.TestCase):
    def test_keeps_previous_refresh_token(self) -> None:
        transport = ScriptedTransport()
        transport.add("POST", TOKEN_URL, json_response(200, {"access_token": "new"}))
        tokens = TokenSet(access_token="old", client_id="c", refresh_token="rt")

        refreshed = refresh_tokens(
            CapturingClient(transport, step="authorized"),
            token_endpoint=TOKEN_URL,
            tokens=tokens,
            registration=None,
            resource="https://mcp.example.com/mcp",
        )

        self.assertEqual(refreshed.access_token, "new")
        self.assertEqual(refreshed.refresh_token, "rt")
        form = transport.form_of(transport.calls[0])
        self.assertEqual(form["grant_type"], "refresh_token")
        self.assertEqual(form["resource"], "https://mcp.example.com/mcp")

    def test_refresh_failure_names_action(self) -> None:
        transport = ScriptedTransport()
        transport.add("POST", TOKEN_URL, json_response(400, {"error": "invalid_client"}))

        with self.assertRaisesRegex(TokenExchangeError, "token refresh failed: invalid_client"):
            refresh_tokens(
                CapturingClient(transport, step="authorized"),
                token_endpoint=TOKEN_URL,
                tokens=TokenSet(access_token="a", client_id="c", refresh_token="r"),
                registration=None,
                resource=None,
            )


if __name__ == "__main__":
    unittest.main()
