import json
import os
import tempfile
import unittest
from unittest.mock import patch

from BotLink.prefs import PreferenceStore


class PreferenceStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "nested", "prefs.json")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_put_is_written_before_returning(self):
        store = PreferenceStore(self.path)
        store.put("device_addr", "AA:BB:CC:DD:EE:FF")
        with open(self.path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f), {"device_addr": "AA:BB:CC:DD:EE:FF"})

    def test_values_survive_reopen(self):
        PreferenceStore(self.path).put("pref_scanBLE", False)
        self.assertFalse(PreferenceStore(self.path).get_bool("pref_scanBLE", True))

    def test_defaults_for_missing_keys(self):
        store = PreferenceStore()
        self.assertTrue(store.get_bool("pref_scanBT", True))
        self.assertEqual(store.get_string("device_name"), "")

    def test_get_bool_accepts_strings(self):
        store = PreferenceStore()
        store.put("a", "true")
        store.put("b", "0")
        self.assertTrue(store.get_bool("a"))
        self.assertFalse(store.get_bool("b", True))

    def test_unreadable_file_starts_empty(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        self.assertEqual(PreferenceStore(self.path).as_dict(), {})

    def test_edit_commits_once(self):
        store = PreferenceStore(self.path)
        with patch.object(store, "_commit", wraps=store._commit) as commit:
            with store.edit() as editor:
                editor.put("device_addr", "11:22:33:44:55:66")
                editor.put("device_name", "Mobbob")
        self.assertEqual(commit.call_count, 1)
        self.assertEqual(PreferenceStore(self.path).get_string("device_name"), "Mobbob")

    def test_memory_store_never_touches_disk(self):
        store = PreferenceStore()
        store.put("x", 1)
        self.assertIsNone(store.path)
        self.assertEqual(store.get("x"), 1)


if __name__ == "__main__":
    unittest.main()
