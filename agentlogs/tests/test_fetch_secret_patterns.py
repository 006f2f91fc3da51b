import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests
import yaml

from agentlogs.scripts import fetch_secret_patterns as script

UPSTREAM_YAML = """patterns:
- pattern:
    name: Slack Token
    regex: 'xox[baprs]-[0-9a-zA-Z]{10,48}'
    confidence: high
- pattern:
    name: openai api key
    regex: 'sk-.*'
- pattern:
    name: Lookbehind
    regex: '(?<=a+)b'
- pattern: not-a-mapping
- pattern:
    name: No regex
"""


def _response(text: str) -> MagicMock:
    response = MagicMock()
    response.text = text
    response.raise_for_status.return_value = None
    return response


class FetchUpstreamTests(unittest.TestCase):
    @patch("agentlogs.scripts.fetch_secret_patterns.requests.get")
    def test_parses_nested_pattern_entries(self, get: MagicMock) -> None:
        get.return_value = _response(UPSTREAM_YAML)
        patterns = script.fetch_upstream_patterns("https://example.test/rules.yml")
        get.assert_called_once_with("https://example.test/rules.yml", timeout=script.REQUEST_TIMEOUT_SECONDS)
        self.assertEqual(
            [pattern["name"] for pattern in patterns],
            ["Slack Token", "openai api key", "Lookbehind"],
        )
        self.assertEqual(patterns[0], {"name": "Slack Token", "regex": "xox[baprs]-[0-9a-zA-Z]{10,48}"})

    @patch("agentlogs.scripts.fetch_secret_patterns.requests.get")
    def test_empty_document(self, get: MagicMock) -> None:
        get.return_value = _response("")
        self.assertEqual(script.fetch_upstream_patterns(), [])


class BuildPatternListTests(unittest.TestCase):
    def test_merge_keeps_first_name(self) -> None:
        merged = script.merge_patterns(
            [{"name": "Token", "regex": "a"}],
            [{"name": "TOKEN", "regex": "b"}, {"name": "Other", "regex": "c"}],
        )
        self.assertEqual(merged, [{"name": "Token", "regex": "a"}, {"name": "Other", "regex": "c"}])

    def test_curated_patterns_win_and_bad_regexes_drop(self) -> None:
        upstream = [
            {"name": "OpenAI API Key", "regex": "sk-.*"},
            {"name": "Lookbehind", "regex": "(?<=a+)b"},
            {"name": "Slack Token", "regex": "xox[baprs]-[0-9a-zA-Z]{10,48}"},
        ]
        with self.assertLogs("agentlogs", level="WARNING"):
            patterns = script.build_pattern_list(upstream)
        names = [pattern["name"] for pattern in patterns]
        self.assertEqual(len(patterns), len(script.CURATED_PATTERNS) + 1)
        self.assertEqual(names[-1], "Slack Token")
        self.assertNotIn("Lookbehind", names)
        openai = next(pattern for pattern in patterns if pattern["name"] == "OpenAI API Key")
        self.assertEqual(openai["regex"], r"sk-[a-zA-Z0-9]{20,}")

    def test_rendered_yaml_loads_back(self) -> None:
        patterns = [{"name": "Quoted", "regex": "it's \"here\"\\d+"}]
        rendered = script.render_patterns(patterns)
        self.assertTrue(rendered.startswith("# Generated by"))
        self.assertIn("# Total patterns: 1", rendered)
        self.assertEqual(yaml.safe_load(rendered), {"patterns": patterns})


class MainTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.output = Path(tmpdir.name) / "secret_patterns.yaml"

    @patch("agentlogs.scripts.fetch_secret_patterns.logging.basicConfig")
    @patch("agentlogs.scripts.fetch_secret_patterns.requests.get")
    def test_writes_output_file(self, get: MagicMock, _basic_config: MagicMock) -> None:
        get.return_value = _response(UPSTREAM_YAML)
        with patch.object(sys, "argv", ["fetch_secret_patterns.py", "--output", str(self.output)]):
            self.assertEqual(script.main(), 0)
        loaded = yaml.safe_load(self.output.read_text(encoding="utf-8"))
        names = [pattern["name"] for pattern in loaded["patterns"]]
        self.assertEqual(names[0], "OpenAI API Key")
        self.assertIn("Slack Token", names)

    @patch("agentlogs.scripts.fetch_secret_patterns.logging.basicConfig")
    @patch("agentlogs.scripts.fetch_secret_patterns.requests.get")
    def test_network_failure_exits_nonzero(self, get: MagicMock, _basic_config: MagicMock) -> None:
        get.side_effect = requests.ConnectionError("offline")
        with patch.object(sys, "argv", ["fetch_secret_patterns.py", "--output", str(self.output)]):
            with self.assertLogs("agentlogs.scripts.fetch_secret_patterns", level="ERROR"):
                self.assertEqual(script.main(), 1)
        self.assertFalse(self.output.exists())


if __name__ == "__main__":
    unittest.main()
