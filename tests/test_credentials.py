from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from config import Config
from pipeline import storage as storage_mod
from pipeline.credentials import CredentialResolver, canonical_service
from pipeline.errors import CredentialMissing


class _SystemStore:
    def __init__(self, values=None, fail=False):
        self.values = dict(values or {})
        self.fail = fail
        self.lookups: list[str] = []

    def get(self, setting_key):
        self.lookups.append(setting_key)
        if self.fail:
            raise RuntimeError("system table unavailable")
        return self.values.get(setting_key)


class _UserStore:
    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, caller_id, service):
        return self.values.get((caller_id, service))


class CredentialResolverTests(unittest.TestCase):
    def _resolver(self, *, system=None, user=None, env=None, system_fails=False):
        return CredentialResolver(
            Config(env_keys=env or {}),
            _SystemStore(system, fail=system_fails),
            _UserStore(user),
        )

    def test_explicit_key_wins_and_is_trimmed(self):
        resolver = self._resolver(
            system={"openai_api_key": "sys"},
            user={("u1", "openai"): "usr"},
            env={"openai": "env"},
        )
        cred = resolver.resolve("openai", "u1", "  sk-explicit \n")
        self.assertEqual(cred.value, "sk-explicit")
        self.assertEqual(cred.origin, "explicit")

    def test_sentinels_fall_through_to_system_wide(self):
        resolver = self._resolver(
            system={"openai_api_key": " sys-key "},
            user={("u1", "openai"): "usr"},
            env={"openai": "env"},
        )
        for sentinel in ("configured", "use_env_vars", "", "   ", None):
            with self.subTest(sentinel=sentinel):
                cred = resolver.resolve("openai", "u1", sentinel)
                self.assertEqual(cred.value, "sys-key")
                self.assertEqual(cred.origin, "system_wide")

    def test_user_key_used_when_no_system_key(self):
        resolver = self._resolver(user={("u1", "runway"): "usr-key"}, env={"runway": "env"})
        cred = resolver.resolve("runway", "u1", "configured")
        self.assertEqual((cred.value, cred.origin), ("usr-key", "user_stored"))

    def test_system_lookup_failure_is_treated_as_absent(self):
        resolver = self._resolver(user={("u1", "runway"): "usr-key"}, system_fails=True)
        with self.assertLogs("pipeline.credentials", level="WARNING"):
            cred = resolver.resolve("runway", "u1", None)
        self.assertEqual(cred.origin, "user_stored")

    def test_whitespace_user_key_skipped_for_environment(self):
        resolver = self._resolver(user={("u1", "kling"): "   "}, env={"kling": " ak:sk "})
        cred = resolver.resolve("kling", "u1", "")
        self.assertEqual((cred.value, cred.origin), ("ak:sk", "environment"))

    def test_no_caller_skips_user_store(self):
        resolver = self._resolver(user={("u1", "openai"): "usr"}, env={"openai": "env"})
        self.assertEqual(resolver.resolve("openai", None, "configured").origin, "environment")

    def test_missing_everywhere_raises_with_remediation(self):
        resolver = self._resolver()
        with self.assertRaises(CredentialMissing) as ctx:
            resolver.resolve("anthropic", "u1", "configured")
        self.assertEqual(ctx.exception.http_status, 400)
        self.assertIn("Settings → AI Settings", str(ctx.exception))
        self.assertIn("ANTHROPIC_API_KEY", str(ctx.exception))

    def test_service_aliases_share_one_key(self):
        system = _SystemStore({"openai_api_key": "sys"})
        resolver = CredentialResolver(Config(), system, _UserStore())
        cred = resolver.resolve("DALLE", "u1", "configured")
        self.assertEqual(cred.service, "openai")
        self.assertEqual(system.lookups, ["openai_api_key"])
        self.assertEqual(canonical_service("claude"), "anthropic")

    def test_masked_value_hides_key(self):
        cred = self._resolver().resolve("openai", "u1", "sk-secret-1234")
        self.assertEqual(cred.masked(), "***1234")
        self.assertNotIn("sk-secret", repr(cred))


class SqliteCredentialStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

        self._old_db_path = storage_mod.DB_PATH
        storage_mod.reset_storage_connection_for_tests()
        storage_mod.DB_PATH = Path(self.tmpdir.name) / "cinema_test.db"
        storage_mod.init_db()

    def tearDown(self):
        storage_mod.reset_storage_connection_for_tests()
        storage_mod.DB_PATH = self._old_db_path

    def test_sqlite_stores_feed_resolver(self):
        storage_mod.save_user_api_key("u1", "leonardo", "usr-leo")
        resolver = CredentialResolver(
            Config(),
            storage_mod.SqliteSystemConfigStore(),
            storage_mod.SqliteUserKeyStore(),
        )
        self.assertEqual(resolver.resolve("leonardo", "u1", "configured").origin, "user_stored")

        storage_mod.set_system_setting("leonardo_api_key", "  sys-leo  ")
        cred = resolver.resolve("leonardo", "u1", "configured")
        self.assertEqual((cred.value, cred.origin), ("sys-leo", "system_wide"))

    def test_user_keys_upsert_and_delete(self):
        storage_mod.save_user_api_key("u1", "openai", "first")
        storage_mod.save_user_api_key("u1", "openai", "second")
        self.assertEqual(storage_mod.get_user_api_key("u1", "openai"), "second")
        self.assertTrue(storage_mod.delete_user_api_key("u1", "openai"))
        self.assertIsNone(storage_mod.get_user_api_key("u1", "openai"))
        self.assertIsNone(storage_mod.get_system_setting("missing_key"))


if __name__ == "__main__":
    unittest.main()
