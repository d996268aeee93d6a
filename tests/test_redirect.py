from __future__ import annotations

import io
import threading
import unittest
from unittest import mock
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from oauth_stepper.models import ClientRegistration, PendingPKCE
from oauth_stepper.redirect import (
    LoopbackCallbackListener,
    PrintLauncher,
    WebbrowserLauncher,
    build_authorization_url,
    is_loopback_redirect,
    parse_callback_url,
)

REDIRECT = "http://127.0.0.1:33418/callback"
# Loopback requests must never go through an HTTP proxy from the environment.
OPENER = urlrequest.build_opener(urlrequest.ProxyHandler({}))
PKCE = PendingPKCE(
    code_verifier="v" * 43,
    code_challenge="challenge",
    state="state-1",
    redirect_uri=REDIRECT,
    created_at=0,
    expires_at=300,
)


class AuthorizationUrlTest(unittest.TestCase):
    def test_carries_pkce_state_scope_and_resource(self) -> None:
        url = build_authorization_url(
            authorization_endpoint="https://auth.example.com/authorize",
            registration=ClientRegistration(client_id="c1", redirect_uris=[REDIRECT], source="dcr"),
            pkce=PKCE,
            scope="mcp:read mcp:write",
            resource="https://mcp.example.com/mcp",
        )

        query = urlparse.parse_qs(urlparse.urlsplit(url).query)
        self.assertEqual(
            {key: values[0] for key, values in query.items()},
            {
                "response_type": "code",
                "client_id": "c1",
                "redirect_uri": REDIRECT,
                "state": "state-1",
                "code_challenge": "challenge",
                "code_challenge_method": "S256",
                "scope": "mcp:read mcp:write",
                "resource": "https://mcp.example.com/mcp",
            },
        )

    def test_endpoint_with_query_keeps_it(self) -> None:
        url = build_authorization_url(
            authorization_endpoint="https://auth.example.com/authorize?tenant=t1",
            registration=ClientRegistration(client_id="c1", redirect_uris=[REDIRECT], source="dcr"),
            pkce=PKCE,
            scope=None,
            resource=None,
        )

        self.assertTrue(url.startswith("https://auth.example.com/authorize?tenant=t1&response_type=code"))
        self.assertNotIn("scope=", url)
        self.assertNotIn("resource=", url)


class CallbackUrlTest(unittest.TestCase):
    def test_code_and_state(self) -> None:
        params = parse_callback_url(f"{REDIRECT}?code=abc&state=state-1&iss=https%3A%2F%2Fauth", now=5)
        self.assertEqual(params.code, "abc")
        self.assertEqual(params.state, "state-1")
        self.assertEqual(params.iss, "https://auth")
        self.assertEqual(params.received_at, 5)

    def test_error_triple(self) -> None:
        params = parse_callback_url(
            f"{REDIRECT}?error=access_denied&error_description=nope&state=s", now=0
        )
        self.assertEqual(params.error, "access_denied")
        self.assertEqual(params.error_description, "nope")
        self.assertIsNone(params.code)

    def test_fragment_response(self) -> None:
        params = parse_callback_url(f"{REDIRECT}#code=abc&state=s", now=0)
        self.assertEqual(params.code, "abc")

    def test_rejects_url_without_params(self) -> None:
        with self.assertRaises(ValueError):
            parse_callback_url(REDIRECT)

    def test_is_loopback_redirect(self) -> None:
        self.assertTrue(is_loopback_redirect("http://127.0.0.1:1/cb"))
        self.assertTrue(is_loopback_redirect("http://localhost:8080/cb"))
        self.assertFalse(is_loopback_redirect("https://127.0.0.1/cb"))
        self.assertFalse(is_loopback_redirect("http://example.com/cb"))


class LauncherTest(unittest.TestCase):
    def test_print_launcher(self) -> None:
        stream = io.StringIO()
        PrintLauncher(stream).open("https://auth.example.com/authorize?x=1")
        self.assertEqual(stream.getvalue(), "Open: https://auth.example.com/authorize?x=1\n")

    def test_webbrowser_launcher_falls_back_to_printing(self) -> None:
        with mock.patch("webbrowser.open", return_value=False) as opened, mock.patch(
            "sys.stderr", new_callable=io.StringIO
        ) as stderr:
            WebbrowserLauncher().open("https://auth.example.com/authorize")

        opened.assert_called_once_with("https://auth.example.com/authorize")
        self.assertIn("Open: https://auth.example.com/authorize", stderr.getvalue())


class LoopbackListenerTest(unittest.TestCase):
    def test_captures_first_callback(self) -> None:
        with LoopbackCallbackListener("http://127.0.0.1:0/callback") as listener:
            bound = listener.redirect_uri
            self.assertNotIn(":0/", bound)

            def hit() -> None:
                with OPENER.open(f"{bound}?code=abc&state=s1", timeout=5) as resp:
                    resp.read()

            thread = threading.Thread(target=hit)
            thread.start()
            url = listener.wait(5)
            thread.join(5)

            self.assertEqual(url, f"{bound}?code=abc&state=s1")
            self.assertEqual(parse_callback_url(url, now=0).code, "abc")

            # Only the first redirect is accepted.
            with self.assertRaises(urlerror.HTTPError) as ctx:
                OPENER.open(f"{bound}?code=again&state=s1", timeout=5)
            self.assertEqual(ctx.exception.code, 404)
            ctx.exception.close()

    def test_other_paths_are_404(self) -> None:
        with LoopbackCallbackListener("http://127.0.0.1:0/callback") as listener:
            base = listener.redirect_uri.rsplit("/", 1)[0]
            with self.assertRaises(urlerror.HTTPError) as ctx:
                OPENER.open(f"{base}/favicon.ico", timeout=5)
            self.assertEqual(ctx.exception.code, 404)
            ctx.exception.close()

            with self.assertRaises(TimeoutError):
                listener.wait(0.05)

    def test_rejects_non_loopback(self) -> None:
        with self.assertRaises(ValueError):
            LoopbackCallbackListener("https://app.example.com/callback")


if __name__ == "__main__":
    unittest.main()
