import unittest

from chatsync.sessions import SessionStore, SQLiteSessionStore
from chatsync.sqlite_backend import SQLiteBackend


class Clock:
    def __init__(self) -> None:
        self.now = 10_000

    def __call__(self) -> int:
        return self.now


class SessionStoreContract:
    def make_store(self, clock):
        raise NotImplementedError

    def setUp(self) -> None:
        self.clock = Clock()
        self.store = self.make_store(self.clock)

    def test_create_and_lookup(self):
        session = self.store.create("u1")

        self.assertTrue(session.session_token.startswith("st_"))
        self.assertTrue(session.resume_token.startswith("rt_"))
        self.assertEqual(session.expires_at_ms, 11_000)
        self.assertEqual(self.store.get_by_session(session.session_token), session)
        self.assertIsNone(self.store.get_by_session("st_unknown"))

    def test_resume_token_is_single_use_and_extends_expiry(self):
        session = self.store.create("u1")
        self.clock.now = 10_500

        resumed = self.store.consume_resume(session.resume_token)

        self.assertEqual(resumed.session_token, session.session_token)
        self.assertNotEqual(resumed.resume_token, session.resume_token)
        self.assertEqual(resumed.expires_at_ms, 11_500)
        self.assertIsNone(self.store.consume_resume(session.resume_token))
        self.assertIsNotNone(self.store.consume_resume(resumed.resume_token))

    def test_expired_sessions_are_dropped(self):
        session = self.store.create("u1")
        self.clock.now = 11_000

        self.assertIsNone(self.store.consume_resume(session.resume_token))
        self.assertIsNone(self.store.get_by_session(session.session_token))

    def test_invalidate(self):
        session = self.store.create("u1")
        self.store.invalidate(session)

        self.assertIsNone(self.store.get_by_session(session.session_token))
        self.assertIsNone(self.store.consume_resume(session.resume_token))


class InMemorySessionStoreTests(SessionStoreContract, unittest.TestCase):
    def make_store(self, clock):
        return SessionStore(ttl_ms=1_000, now_func=clock)


class SQLiteSessionStoreTests(SessionStoreContract, unittest.TestCase):
    def make_store(self, clock):
        self.backend = SQLiteBackend(":memory:")
        return SQLiteSessionStore(self.backend, ttl_ms=1_000, now_func=clock)

    def tearDown(self) -> None:
        self.backend.close()


if __name__ == "__main__":
    unittest.main()
