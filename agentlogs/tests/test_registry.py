import tempfile
import unittest
from pathlib import Path

from agentlogs.date_utils import timestamp_ms
from agentlogs.models import ToolCallMessage
from agentlogs.parsers.platforms.registry import convert_transcript_file, detect_source

FIXTURES = Path(__file__).resolve().parent / "fixtures"
FIXTURE_FILES = {
    "claude-code": FIXTURES / "claude_code" / "health_check.jsonl",
    "codex": FIXTURES / "codex" / "crud.jsonl",
    "cline": FIXTURES / "cline" / "1769336400000" / "api_conversation_history.json",
    "opencode": FIXTURES / "opencode" / "retry_export.json",
    "pi": FIXTURES / "pi" / "branched.jsonl",
}


class DetectSourceTests(unittest.TestCase):
    def test_fixtures_are_detected(self) -> None:
        for source, path in FIXTURE_FILES.items():
            with self.subTest(source=source):
                self.assertEqual(detect_source(path), source)

    def test_unknown_extension(self) -> None:
        self.assertIsNone(detect_source(Path("notes.txt")))

    def test_unreadable_jsonl_defaults_to_claude_code(self) -> None:
        self.assertEqual(detect_source(FIXTURES / "missing.jsonl"), "claude-code")


class ConvertTranscriptFileTests(unittest.TestCase):
    def test_every_fixture_converts_with_consistent_counters(self) -> None:
        for source, path in FIXTURE_FILES.items():
            with self.subTest(source=source):
                transcript = convert_transcript_file(path)
                assert transcript is not None
                self.assertEqual(transcript.source, source)
                self.assertEqual(transcript.messageCount, len(transcript.messages))
                self.assertEqual(
                    transcript.toolCount,
                    sum(1 for message in transcript.messages if isinstance(message, ToolCallMessage)),
                )
                times = [timestamp_ms(message.timestamp) for message in transcript.messages if message.timestamp]
                self.assertEqual(times, sorted(times))
                self.assertLessEqual(transcript.tokenUsage.cachedInputTokens, transcript.tokenUsage.inputTokens)

    def test_explicit_source_skips_detection(self) -> None:
        transcript = convert_transcript_file(FIXTURE_FILES["codex"], source="codex")
        assert transcript is not None
        self.assertEqual(transcript.id, "019bf4b5-e7b0-75a0-8bf2-05fbf1b13c9b")

    def test_unknown_source_returns_none(self) -> None:
        self.assertIsNone(convert_transcript_file(FIXTURE_FILES["codex"], source="cursor"))

    def test_unrecognized_file_returns_none(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "notes.txt"
        path.write_text("hello", encoding="utf-8")
        self.assertIsNone(convert_transcript_file(path))


if __name__ == "__main__":
    unittest.main()
