import unittest
from datetime import datetime, timedelta

import jwt

from scan_server import auth
from scan_server import config
from scan_server import database


class PasswordTests(unittest.TestCase):
    def test_hash_is_salted(self) -> None:
        first = auth.hash_password("secret")
        second = auth.hash_password("secret")
        self.assertNotEqual(first, second)
        self.assertTrue(auth.verify_password("secret", first))
        self.assertTrue(auth.verify_password("secret", second))
        self.assertFalse(auth.verify_password("wrong", first))

    def test_malformed_hash_does_not_verify(self) -> None:
        self.assertFalse(auth.verify_password("secret", "plain-sha256-digest"))
        self.assertFalse(auth.verify_password("secret", None))


class TokenTests(unittest.TestCase):
    def test_round_trip(self) -> None:
        token = auth.create_jwt_token(3, "ada@example.com")
        payload = auth.decode_jwt_token(token)
        self.assertEqual(payload["user_id"], 3)
        self.assertEqual(payload["email"], "ada@example.com")
        self.assertEqual(auth.extract_user_id(token), 3)

    def test_expired_and_foreign_tokens(self) -> None:
        expired = jwt.encode(
            {"user_id": 3, "exp": datetime.utcnow() - timedelta(minutes=1)},
            config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM
        )
        foreign = jwt.encode({"user_id": 3}, "another-secret-key-with-at-least-32-bytes", algorithm=config.JWT_ALGORITHM)
        self.assertIsNone(auth.extract_user_id(expired))
        self.assertIsNone(auth.extract_user_id(foreign))
        self.assertIsNone(auth.extract_user_id("not-a-token"))


class UserTests(unittest.TestCase):
    def setUp(self) -> None:
        database.drop_all_tables()
        database.init_database()

    def test_register_and_login(self) -> None:
        success, _, user_id = auth.register_user("Ada@Example.com ", "secret")
        self.assertTrue(success)

        success, message, token, user = auth.login_user("ada@example.com", "secret")
        self.assertTrue(success, message)
        self.assertEqual(user, {"id": user_id, "email": "ada@example.com"})
        self.assertEqual(auth.extract_user_id(token), user_id)

    def test_duplicate_email(self) -> None:
        auth.register_user("ada@example.com", "secret")
        success, message, user_id = auth.register_user("ADA@example.com", "other")
        self.assertFalse(success)
        self.assertEqual(message, "User already exists")
        self.assertIsNone(user_id)

    def test_bad_credentials(self) -> None:
        auth.register_user("ada@example.com", "secret")
        self.assertFalse(auth.login_user("ada@example.com", "wrong")[0])
        self.assertFalse(auth.login_user("nobody@example.com", "secret")[0])

    def test_create_test_user_once(self) -> None:
        self.assertTrue(auth.create_test_user()[0])
        self.assertEqual(auth.create_test_user(), (False, None))
        self.assertTrue(auth.login_user("demo@example.com", "test123")[0])

    def test_profile(self) -> None:
        _, _, user_id = auth.register_user("ada@example.com", "secret")
        profile = auth.get_user_profile(user_id)
        self.assertEqual(profile["email"], "ada@example.com")
        self.assertIsNone(auth.get_user_profile(9999))


if __name__ == "__main__":
    unittest.main()
