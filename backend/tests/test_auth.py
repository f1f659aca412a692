import hashlib
import hmac
import json
import time
import unittest
from urllib.parse import quote, unquote

from auth import (
    generate_auth_cookie,
    generate_signature,
    get_password_hash,
    parse_auth_cookie,
    username_from_bearer,
    verify_password,
)


class SignatureTests(unittest.TestCase):
    def test_signature_is_hex_hmac_sha256(self) -> None:
        expected = hmac.new(b'secret', b'alice', hashlib.sha256).hexdigest()
        self.assertEqual(generate_signature('alice', 'secret'), expected)
        self.assertEqual(len(expected), 64)

    def test_cookie_is_url_encoded_json(self) -> None:
        raw = generate_auth_cookie('alice', 'admin', 'secret')
        self.assertNotIn('{', raw)
        data = json.loads(unquote(raw))
        self.assertEqual(data['role'], 'admin')
        self.assertEqual(data['username'], 'alice')
        self.assertEqual(data['signature'], generate_signature('alice', 'secret'))
        self.assertIsInstance(data['timestamp'], int)

    def test_cookie_without_secret_has_no_identity(self) -> None:
        data = json.loads(unquote(generate_auth_cookie('alice', 'user', None)))
        self.assertEqual(data, {'role': 'user'})


class ParseCookieTests(unittest.TestCase):
    def test_round_trip(self) -> None:
        info = parse_auth_cookie(generate_auth_cookie('alice', 'user', 'secret'), 'secret')
        self.assertEqual((info.username, info.role), ('alice', 'user'))

    def test_wrong_secret_is_rejected(self) -> None:
        self.assertIsNone(parse_auth_cookie(generate_auth_cookie('alice', 'user', 'secret'), 'other'))

    def test_tampered_username_is_rejected(self) -> None:
        data = json.loads(unquote(generate_auth_cookie('alice', 'user', 'secret')))
        data['username'] = 'mallory'
        self.assertIsNone(parse_auth_cookie(quote(json.dumps(data)), 'secret'))

    def test_expired_cookie_is_rejected(self) -> None:
        data = json.loads(unquote(generate_auth_cookie('alice', 'user', 'secret')))
        data['timestamp'] = int((time.time() - 8 * 24 * 3600) * 1000)
        self.assertIsNone(parse_auth_cookie(quote(json.dumps(data)), 'secret'))

    def test_garbage_is_rejected(self) -> None:
        self.assertIsNone(parse_auth_cookie('not-json', 'secret'))
        self.assertIsNone(parse_auth_cookie(quote('[1, 2]'), 'secret'))
        self.assertIsNone(parse_auth_cookie(None, 'secret'))


class HelperTests(unittest.TestCase):
    def test_bearer_username(self) -> None:
        self.assertEqual(username_from_bearer('Bearer alice'), 'alice')
        self.assertEqual(username_from_bearer('Bearer %E5%B0%8F%E6%98%8E'), '小明')
        self.assertIsNone(username_from_bearer('Basic abc'))
        self.assertIsNone(username_from_bearer('Bearer '))
        self.assertIsNone(username_from_bearer(None))

    def test_password_hashing(self) -> None:
        hashed = get_password_hash('pw')
        self.assertNotEqual(hashed, 'pw')
        self.assertTrue(verify_password('pw', hashed))
        self.assertFalse(verify_password('nope', hashed))


if __name__ == '__main__':
    unittest.main()
