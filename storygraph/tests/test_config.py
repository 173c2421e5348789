import tempfile
import unittest
from pathlib import Path

from storygraph.config import ConfigError, Settings, load_settings
from storygraph.synthesis_client import DEFAULT_MODEL


class TestLoadSettings(unittest.TestCase):
    def test_defaults_live_under_home(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            s = load_settings(env={"STORYGRAPH_HOME": td})
            self.assertEqual(s.db_path, Path(td) / "data" / "storygraph.sqlite3")
            self.assertEqual((s.window_hours, s.max_articles, s.min_cluster_size), (48, 100, 2))
            self.assertEqual(s.similarity_threshold, 0.35)
            self.assertEqual(s.synthesis_timeout_seconds, 90.0)
            self.assertEqual(s.llm_model, DEFAULT_MODEL)
            self.assertIsNone(s.llm_api_key)
            self.assertIsNone(s.lock_dir)

    def test_yaml_then_env_precedence(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = Path(td) / "custom.yaml"
            cfg.write_text(
                "storygraph:\n"
                "  window_hours: 24\n"
                "  similarity_threshold: 0.5\n"
                "  db_path: ~/graphs/sg.sqlite3\n"
                "  llm_api_key: from-yaml\n",
                encoding="utf-8",
            )
            env = {
                "STORYGRAPH_HOME": td,
                "STORYGRAPH_WINDOW_HOURS": "12",
                "GROQ_API_KEY": "from-env",
            }
            s = load_settings(cfg, env=env)
            self.assertEqual(s.window_hours, 12)
            self.assertEqual(s.similarity_threshold, 0.5)
            self.assertEqual(s.db_path, Path("~/graphs/sg.sqlite3").expanduser())
            self.assertEqual(s.llm_api_key, "from-env")
            self.assertEqual(s.max_articles, 100)

    def test_home_yaml_top_level_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "storygraph.yaml").write_text("max_articles: 40\nlock_dir: locks\n", encoding="utf-8")
            s = load_settings(env={"STORYGRAPH_HOME": td})
            self.assertEqual(s.max_articles, 40)
            self.assertEqual(s.lock_dir, Path("locks"))

    def test_api_key_from_dotenv(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / ".env").write_text("# keys\nOTHER=1\nGROQ_API_KEY=\"from-dotenv\"\n", encoding="utf-8")
            s = load_settings(env={"STORYGRAPH_HOME": td})
            self.assertEqual(s.llm_api_key, "from-dotenv")
            s = load_settings(env={"STORYGRAPH_HOME": td, "STORYGRAPH_LLM_API_KEY": "explicit"})
            self.assertEqual(s.llm_api_key, "explicit")

    def test_dotenv_export_prefix_and_empty_value(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            env_file = Path(td) / ".env"
            env_file.write_text("export GROQ_API_KEY='exported-key'\n", encoding="utf-8")
            self.assertEqual(load_settings(env={"STORYGRAPH_HOME": td}).llm_api_key, "exported-key")
            env_file.write_text("#GROQ_API_KEY=commented\nGROQ_API_KEY=\n", encoding="utf-8")
            self.assertIsNone(load_settings(env={"STORYGRAPH_HOME": td}).llm_api_key)

    def test_invalid_values_raise(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            bad_envs = [
                {"STORYGRAPH_SIMILARITY_THRESHOLD": "abc"},
                {"STORYGRAPH_SIMILARITY_THRESHOLD": "1.5"},
                {"STORYGRAPH_MIN_CLUSTER_SIZE": "1"},
                {"STORYGRAPH_WINDOW_HOURS": "0"},
                {"STORYGRAPH_SYNTHESIS_TIMEOUT_SECONDS": "-1"},
            ]
            for extra in bad_envs:
                with self.assertRaises(ConfigError):
                    load_settings(env={"STORYGRAPH_HOME": td, **extra})

    def test_bad_config_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_settings(Path(td) / "missing.yaml", env={"STORYGRAPH_HOME": td})
            broken = Path(td) / "broken.yaml"
            broken.write_text("storygraph: [unclosed\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_settings(broken, env={"STORYGRAPH_HOME": td})
            listy = Path(td) / "list.yaml"
            listy.write_text("- 1\n- 2\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_settings(listy, env={"STORYGRAPH_HOME": td})

    def test_unknown_yaml_keys_are_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = Path(td) / "c.yaml"
            cfg.write_text("storygraph:\n  colour: blue\n", encoding="utf-8")
            with self.assertLogs("storygraph.config", level="WARNING"):
                s = load_settings(cfg, env={"STORYGRAPH_HOME": td})
            self.assertEqual(s.window_hours, 48)

    def test_redacted_masks_api_key(self) -> None:
        s = Settings(db_path=Path("/tmp/sg.sqlite3"), llm_api_key="secret")
        out = s.redacted()
        self.assertEqual(out["llm_api_key"], "***")
        self.assertEqual(out["db_path"], "/tmp/sg.sqlite3")


if __name__ == "__main__":
    unittest.main()
