import os
import unittest
from unittest import mock

from bakchod_sync.config import DEFAULT_CELEBRATION_TEMPLATES, SyncConfig, load_sync_config_from_env


class SyncConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_sync_config_from_env()

        self.assertEqual(config, SyncConfig())
        self.assertEqual(config.typing_stale_ms, 5000)
        self.assertEqual(config.typing_idle_s, 3.0)
        self.assertEqual(config.celebration_templates, DEFAULT_CELEBRATION_TEMPLATES)

    def test_environment_overrides(self):
        env = {
            "BAKCHOD_TYPING_STALE_MS": "8000",
            "BAKCHOD_NOVELTY_WINDOW_MS": "0",
            "BAKCHOD_HISTORY_LIMIT": "50",
            "BAKCHOD_COUNTRY_CODE": "+1",
            "BAKCHOD_CELEBRATION_TEMPLATES": "yay| congrats! |",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_sync_config_from_env()

        self.assertEqual(config.typing_stale_ms, 8000)
        self.assertEqual(config.novelty_window_ms, 0)
        self.assertEqual(config.history_limit, 50)
        self.assertEqual(config.country_code, "1")
        self.assertEqual(config.celebration_templates, ("yay", "congrats!"))

    def test_invalid_values_name_the_variable(self):
        for name, value in (
            ("BAKCHOD_TYPING_IDLE_MS", "soon"),
            ("BAKCHOD_HISTORY_LIMIT", "-1"),
            ("BAKCHOD_COUNTRY_CODE", "india"),
            ("BAKCHOD_CELEBRATION_TEMPLATES", " | "),
        ):
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError) as ctx:
                        load_sync_config_from_env()
                self.assertIn(name, str(ctx.exception))

    def test_celebration_match_is_exact(self):
        config = SyncConfig()

        self.assertTrue(config.is_celebration("🎉"))
        self.assertTrue(config.is_celebration("happy birthday!"))
        self.assertFalse(config.is_celebration("Happy Birthday!"))
        self.assertFalse(config.is_celebration("🎉🎉"))
        self.assertFalse(config.is_celebration(""))
        self.assertFalse(config.is_celebration(None))


if __name__ == "__main__":
    unittest.main()
