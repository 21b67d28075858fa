"""
Secure Ward - Config Loader Tests

Covers: deep merge, overlay files, WARD_ env overrides, dotted lookups,
and the packaged defaults.
"""

import os
import sys
import tempfile
import unittest
from unittest import mock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from clinic.config import (
    DEFAULT_BASE_PATH, _load_env_overrides, deep_merge, get_config_value, load_config,
)


class TestDeepMerge(unittest.TestCase):

    def test_overlay_wins(self):
        self.assertEqual(deep_merge({"a": 1}, {"a": 2}), {"a": 2})

    def test_nested_merge(self):
        base = {"advisory": {"provider": "cohere", "temperature": 0.7}}
        result = deep_merge(base, {"advisory": {"provider": "openai"}})
        self.assertEqual(result["advisory"], {"provider": "openai", "temperature": 0.7})

    def test_lists_replaced(self):
        result = deep_merge({"departments": ["A", "B"]}, {"departments": ["C"]})
        self.assertEqual(result["departments"], ["C"])

    def test_base_not_mutated(self):
        base = {"logging": {"level": "INFO"}}
        deep_merge(base, {"logging": {"level": "DEBUG"}})
        self.assertEqual(base["logging"]["level"], "INFO")


class TestEnvOverrides(unittest.TestCase):

    def test_section_key(self):
        env = {"WARD_ADVISORY_PROVIDER": "openai", "WARD_ADVISORY_TIMEOUT_SECONDS": "5"}
        with mock.patch.dict(os.environ, env, clear=True):
            overrides = _load_env_overrides()
        self.assertEqual(overrides, {"advisory": {"provider": "openai", "timeout_seconds": 5}})

    def test_meta_keys_skipped(self):
        env = {"WARD_ENV": "demo", "WARD_CONFIG_DIR": "/tmp", "WARD_VERSION": "1.0"}
        with mock.patch.dict(os.environ, env, clear=True):
            self.assertEqual(_load_env_overrides(), {})

    def test_override_applied_by_loader(self):
        with mock.patch.dict(os.environ, {"WARD_LOGGING_LEVEL": "DEBUG"}, clear=True):
            cfg = load_config()
        self.assertEqual(cfg["logging"]["level"], "DEBUG")

    def test_env_vars_can_be_ignored(self):
        with mock.patch.dict(os.environ, {"WARD_LOGGING_LEVEL": "DEBUG"}, clear=True):
            cfg = load_config(include_env_vars=False)
        self.assertEqual(cfg["logging"]["level"], "INFO")


class TestOverlayFiles(unittest.TestCase):

    def test_overlay_merged(self):
        with tempfile.TemporaryDirectory() as d:
            with open(os.path.join(d, "demo.yaml"), "w") as f:
                f.write("advisory:\n  timeout_seconds: 3\n")
            with mock.patch.dict(os.environ, {}, clear=True):
                cfg = load_config(env="demo", config_dir=d)
        self.assertEqual(cfg["advisory"]["timeout_seconds"], 3)
        self.assertEqual(cfg["advisory"]["provider"], "cohere")
        self.assertEqual(cfg["_active_env"], "demo")

    def test_missing_overlay_is_fine(self):
        with tempfile.TemporaryDirectory() as d:
            with mock.patch.dict(os.environ, {}, clear=True):
                cfg = load_config(env="nowhere", config_dir=d)
        self.assertIn("roles", cfg)

    def test_missing_base_gives_empty(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = load_config(base_path="/nonexistent/ward.yaml")
        self.assertNotIn("roles", cfg)
        self.assertEqual(cfg["_config_source"], "/nonexistent/ward.yaml")


class TestDefaults(unittest.TestCase):

    def setUp(self):
        self.cfg = load_config(include_env_vars=False)

    def test_packaged_defaults_exist(self):
        self.assertTrue(os.path.exists(DEFAULT_BASE_PATH))
        self.assertEqual(self.cfg["_config_source"], DEFAULT_BASE_PATH)

    def test_all_roles_present(self):
        self.assertEqual(set(self.cfg["roles"]), {
            "PATIENT", "GENERAL_DOCTOR", "SPECIALIST",
            "MEDICAL_LAB", "BILLING", "HUMAN_DOCTOR",
        })

    def test_dotted_lookup(self):
        self.assertEqual(get_config_value("facility.name", self.cfg),
                         "St. Zama Memorial Hospital")
        self.assertEqual(get_config_value("advisory.roles.SPECIALIST.fallback_amount", self.cfg), 250)
        self.assertEqual(get_config_value("advisory.nope", self.cfg, "x"), "x")
        self.assertEqual(get_config_value("facility.name.deeper", self.cfg, None), None)


if __name__ == "__main__":
    unittest.main()
