import json
import tempfile
import unittest
from pathlib import Path

from agentlogs.date_utils import file_mtime
from agentlogs.models import AgentMessage, ToolCallMessage, UserMessage
from agentlogs.parsers.platforms.cline.parser import convert_cline_file, convert_cline_transcript

TASK_DIR = Path(__file__).resolve().parent / "fixtures" / "cline" / "1769336400000"
HISTORY = TASK_DIR / "api_conversation_history.json"
CWD = "/Users/bob/work/site"


class ClineFixtureTests(unittest.TestCase):
    def setUp(self) -> None:
        transcript = convert_cline_file(HISTORY, cwd=CWD)
        self.assertIsNotNone(transcript)
        assert transcript is not None
        self.transcript = transcript

    def test_task_directory_names_the_transcript(self) -> None:
        self.assertEqual(self.transcript.id, "1769336400000")
        self.assertEqual(self.transcript.source, "cline")
        self.assertEqual(self.transcript.clientVersion, "3.32.5")
        self.assertEqual(self.transcript.model, "anthropic/claude-sonnet-4-5")
        self.assertEqual(self.transcript.cwd, "~/work/site")
        self.assertIsNone(self.transcript.git)

    def test_timestamp_falls_back_to_file_mtime(self) -> None:
        self.assertEqual(self.transcript.timestamp, file_mtime(HISTORY))

    def test_injected_context_is_removed(self) -> None:
        users = [message for message in self.transcript.messages if isinstance(message, UserMessage)]
        self.assertEqual([message.text for message in users], ["List the Python files and fix the typo in README.md"])
        self.assertEqual(self.transcript.preview, "List the Python files and fix the typo in README.md")

    def test_message_sequence_and_tool_mapping(self) -> None:
        messages = self.transcript.messages
        self.assertEqual(
            [message.type for message in messages],
            ["user", "agent", "tool-call", "tool-call", "tool-call", "agent"],
        )
        calls = [message for message in messages if isinstance(message, ToolCallMessage)]
        self.assertEqual([call.toolName for call in calls], ["Glob", "Read", "Edit"])

        glob, read, edit = calls
        self.assertEqual(glob.input, {"recursive": "false", "file_path": "."})
        self.assertEqual(glob.output, "app.py\nREADME.md")
        self.assertEqual(read.input, {"file_path": "./README.md"})
        self.assertEqual(read.output, "# Site\nTeh best site.\n")
        self.assertEqual(edit.input["file_path"], "./README.md")
        self.assertIn("SEARCH", edit.input["diff"])

        final = messages[-1]
        assert isinstance(final, AgentMessage)
        self.assertEqual(final.text, "Listed the files and fixed the typo in README.md.")

    def test_counters_and_usage(self) -> None:
        transcript = self.transcript
        self.assertEqual(transcript.messageCount, 6)
        self.assertEqual(transcript.toolCount, 3)
        self.assertEqual(transcript.userMessageCount, 1)
        self.assertEqual(transcript.filesChanged, 1)
        self.assertEqual(transcript.tokenUsage.inputTokens, 5700)
        self.assertEqual(transcript.tokenUsage.cachedInputTokens, 3900)
        self.assertEqual(transcript.tokenUsage.outputTokens, 270)
        self.assertEqual(transcript.tokenUsage.totalTokens, 5970)
        self.assertEqual(transcript.blendedTokens, 2070)


class ClineConversionTests(unittest.TestCase):
    def test_missing_task_id_returns_none(self) -> None:
        messages = json.loads(HISTORY.read_text(encoding="utf-8"))
        self.assertIsNone(convert_cline_transcript(messages, task_id=None))

    def test_empty_history_returns_none(self) -> None:
        self.assertIsNone(convert_cline_transcript([], task_id="1"))

    def test_unreadable_history_returns_none(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "42" / "api_conversation_history.json"
        path.parent.mkdir()
        path.write_text("[{not json", encoding="utf-8")
        self.assertIsNone(convert_cline_file(path))

    def test_tool_result_errors_and_search_regex(self) -> None:
        messages = [
            {"role": "user", "content": [{"type": "text", "text": "<task>Find TODOs</task>"}]},
            {
                "role": "assistant",
                "content": [
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "search_files",
                        "input": {"path": "/repo/src", "regex": "TODO"},
                    }
                ],
                "modelInfo": {"providerId": "openrouter", "modelId": "x-ai/grok-code-fast-1"},
            },
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "denied", "is_error": True}],
            },
        ]
        transcript = convert_cline_transcript(messages, task_id="7", cwd="/repo", git=None)
        assert transcript is not None
        call = transcript.messages[1]
        assert isinstance(call, ToolCallMessage)
        self.assertEqual(call.toolName, "Grep")
        self.assertEqual(call.input, {"file_path": "./src", "pattern": "TODO"})
        self.assertTrue(call.isError)
        self.assertEqual(transcript.model, "x-ai/grok-code-fast-1")
        self.assertEqual(transcript.preview, "Find TODOs")

    def test_usage_without_model_info_is_kept_under_unknown(self) -> None:
        messages = [
            {"role": "user", "content": [{"type": "text", "text": "<task>Say hi</task>"}]},
            {
                "role": "assistant",
                "content": [{"type": "text", "text": "Hi."}],
                "metrics": {"tokens": {"prompt": 100, "completion": 10, "cached": 0}},
            },
            {
                "role": "assistant",
                "content": [{"type": "text", "text": "Anything else?"}],
                "modelInfo": {"providerId": "anthropic", "modelId": "claude-sonnet-4-5"},
                "metrics": {"tokens": {"prompt": 50, "completion": 5, "cached": 0}},
            },
        ]
        transcript = convert_cline_transcript(messages, task_id="8", git=None)
        assert transcript is not None
        by_model = {entry.model: entry.usage.totalTokens for entry in transcript.modelUsage}
        self.assertEqual(by_model["unknown"], 110)
        self.assertEqual(sum(by_model.values()), transcript.tokenUsage.totalTokens)


if __name__ == "__main__":
    unittest.main()
