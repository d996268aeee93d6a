from __future__ import annotations

import base64
import hashlib
import unittest

from oauth_stepper.pkce import (
    VERIFIER_ALPHABET,
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
    new_pending_pkce,
    states_match,
)


class PkceTest(unittest.TestCase):
    def test_rfc7636_appendix_b_vector(self) -> None:
        self.assertEqual(
            code_challenge_s256("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"),
            "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        )

    def test_verifier_alphabet_and_length(self) -> None:
        for length in (43, 64, 128):
            verifier = generate_code_verifier(length)
            self.assertEqual(len(verifier), length)
            self.assertTrue(set(verifier) <= set(VERIFIER_ALPHABET))

    def test_verifier_length_bounds(self) -> None:
        with self.assertRaises(ValueError):
            generate_code_verifier(42)
        with self.assertRaises(ValueError):
            generate_code_verifier(129)

    def test_verifiers_and_states_are_fresh(self) -> None:
        self.assertNotEqual(generate_code_verifier(), generate_code_verifier())
        self.assertNotEqual(generate_state(), generate_state())

    def test_states_match(self) -> None:
        self.assertTrue(states_match("abc", "abc"))
        self.assertFalse(states_match("abc", "abd"))
        self.assertFalse(states_match("abc", None))
        self.assertFalse(states_match("", ""))

    def test_new_pending_pkce(self) -> None:
        pkce = new_pending_pkce("http://127.0.0.1:1/cb", ttl_s=120, now=1000)

        self.assertEqual(pkce.created_at, 1000)
        self.assertEqual(pkce.expires_at, 1120)
        self.assertEqual(pkce.code_challenge_method, "S256")
        digest = hashlib.sha256(pkce.code_verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        self.assertEqual(pkce.code_challenge, expected)
        self.assertFalse(pkce.is_expired(now=1119))
        self.assertTrue(pkce.is_expired(now=1120))


if __name__ == "__main__":
    unittest.main()
