import unittest
from datetime import datetime, timezone

from agentlogs.analyzer import (
    analyze_transcript,
    calculate_health_score,
    count_context_overflows,
    count_retries,
    is_tool_error,
)
from agentlogs.models import (
    AgentMessage,
    AnalysisMetrics,
    AntiPattern,
    ThinkingMessage,
    TokenUsage,
    ToolCallMessage,
    Transcript,
    UserMessage,
)


def _transcript(messages: list, total_tokens: int = 0) -> Transcript:
    return Transcript(
        id="session-1",
        source="codex",
        timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        messages=messages,
        tokenUsage=TokenUsage(totalTokens=total_tokens),
    )


def _at(minute: int, second: int = 0) -> str:
    hour, minute = divmod(minute, 60)
    return f"2026-01-01T{10 + hour:02d}:{minute:02d}:{second:02d}.000Z"


class ToolErrorTests(unittest.TestCase):
    def test_error_signals(self) -> None:
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", isError=True)))
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", error="denied")))
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", output={"error": "boom"})))
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", output={"status": "failed"})))
        self.assertFalse(is_tool_error(ToolCallMessage(toolName="Bash", error="  ")))
        self.assertFalse(is_tool_error(ToolCallMessage(toolName="Bash", output={"status": "ok", "message": "x"})))
        self.assertFalse(is_tool_error(ToolCallMessage(toolName="Bash", output="Error: plain text")))

    def test_nonzero_exit_code_is_an_error(self) -> None:
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", output={"stdout": "", "exitCode": 1})))
        self.assertTrue(is_tool_error(ToolCallMessage(toolName="Bash", output={"exit_code": "2"})))
        self.assertFalse(is_tool_error(ToolCallMessage(toolName="Bash", output={"stdout": "ok", "exitCode": 0})))

        result = analyze_transcript(_transcript([ToolCallMessage(toolName="Bash", output={"exitCode": 1})]))
        self.assertEqual(result.metrics.errors, 1)


class RetryTests(unittest.TestCase):
    def test_distinct_calls_without_errors_are_not_retries(self) -> None:
        calls = [ToolCallMessage(toolName="Read", input={"file_path": f"./src/{name}.py"}) for name in "abcd"]
        self.assertEqual(count_retries(calls), 0)
        result = analyze_transcript(_transcript(calls))
        self.assertEqual(result.antiPatterns, [])
        self.assertEqual(result.healthScore, 100)

    def test_repeat_after_error_with_same_input(self) -> None:
        calls = [
            ToolCallMessage(toolName="Bash", input={"command": "npm test"}, output={"exitCode": 1}),
            ToolCallMessage(toolName="Bash", input={"command": "npm  test"}, output={"exitCode": 0}),
            ToolCallMessage(toolName="Bash", input={"command": "npm test"}),
        ]
        # Only the call following the failure counts.
        self.assertEqual(count_retries(calls), 1)

    def test_repeat_after_error_needs_similar_input(self) -> None:
        failed = ToolCallMessage(toolName="Edit", input={"file_path": "./app.py", "diff": "-a\n+b\n"}, isError=True)
        near = ToolCallMessage(toolName="Edit", input={"file_path": "./app.py", "diff": "-a\n+c\n"})
        different = ToolCallMessage(toolName="Edit", input={"file_path": "./docs/guide/setup.md", "diff": "+x\n"})
        other_tool = ToolCallMessage(toolName="Read", input={"file_path": "./app.py", "diff": "-a\n+b\n"})
        self.assertEqual(count_retries([failed, near]), 1)
        self.assertEqual(count_retries([failed, different]), 0)
        self.assertEqual(count_retries([failed, other_tool]), 0)


class ContextOverflowTests(unittest.TestCase):
    def test_markers_in_outputs_and_errors(self) -> None:
        calls = [
            ToolCallMessage(toolName="Bash", error="prompt is too long: 210000 tokens > 200000 maximum"),
            ToolCallMessage(toolName="Bash", output={"stdout": "...", "note": "Output truncated to 30000 characters"}),
            ToolCallMessage(
                toolName="Read",
                input={"file_path": "./big.log"},
                output="File content exceeds maximum allowed tokens (token limit 25000)",
                isError=True,
            ),
        ]
        self.assertEqual(count_context_overflows(calls), 3)

    def test_inputs_and_file_content_are_not_markers(self) -> None:
        calls = [
            ToolCallMessage(toolName="Read", input={"file_path": "./src/context.py"}, output="CONTEXT_LIMIT = 5"),
            ToolCallMessage(toolName="Grep", input={"pattern": "token limit"}, output="docs.md:1:token limit"),
            ToolCallMessage(toolName="Bash", input={"command": "cat context_window.txt | wc -l"}, output="3"),
        ]
        self.assertEqual(count_context_overflows(calls), 0)
        result = analyze_transcript(_transcript(calls))
        self.assertEqual(result.metrics.contextOverflows, 0)
        self.assertEqual(result.healthScore, 100)


class AnalyzeTranscriptTests(unittest.TestCase):
    def test_clean_session_scores_full_health(self) -> None:
        result = analyze_transcript(
            _transcript(
                [
                    UserMessage(text="Explain the parser", timestamp=_at(0)),
                    ToolCallMessage(toolName="Read", input={"file_path": "./a.py"}, timestamp=_at(1)),
                    AgentMessage(text="It parses.", timestamp=_at(2)),
                ]
            )
        )
        self.assertEqual(result.transcriptId, "session-1")
        self.assertEqual(result.healthScore, 100)
        self.assertEqual(result.antiPatterns, [])
        self.assertEqual(result.recommendations, [])
        self.assertEqual(result.metrics.duration, 120_000)

    def test_troubled_session(self) -> None:
        messages = [
            UserMessage(text="Refactor the build", timestamp=_at(0)),
            ThinkingMessage(text="x" * 500, timestamp=_at(0, 10)),
            ToolCallMessage(toolName="Bash", input={"command": "make"}, output="exit 1", isError=True, timestamp=_at(0, 20)),
            ToolCallMessage(toolName="Bash", input={"command": "make"}, output={"stdout": "ok"}, timestamp=_at(0, 30)),
            ToolCallMessage(toolName="Bash", input={"command": "make all"}, error="prompt is too large", timestamp=_at(0, 40)),
            ToolCallMessage(toolName="Read", input={"file_path": "./Makefile"}, output="all:", timestamp=_at(0, 50)),
            AgentMessage(text="Done.", timestamp=_at(60)),
        ]
        result = analyze_transcript(_transcript(messages, total_tokens=150_000))

        metrics = result.metrics
        self.assertEqual(
            (metrics.totalEvents, metrics.toolCalls, metrics.errors, metrics.retries, metrics.contextOverflows),
            (7, 4, 2, 1, 1),
        )
        self.assertEqual(metrics.duration, 3_600_000)
        self.assertEqual(
            [(pattern.type, pattern.severity) for pattern in result.antiPatterns],
            [
                ("context_overflow", "high"),
                ("tool_failures", "medium"),
                ("extended_reasoning", "low"),
                ("large_token_usage", "low"),
                ("long_idle_gap", "low"),
            ],
        )
        self.assertIn("longest 59 min", result.antiPatterns[-1].description)
        self.assertEqual(len(result.recommendations), 5)
        # 100 - 1*5 - 2*3 - 10 - (15 + 10 + 5 + 5 + 5)
        self.assertEqual(result.healthScore, 39)

    def test_retry_loop_severity(self) -> None:
        def failing_greps(count: int) -> list[ToolCallMessage]:
            return [
                ToolCallMessage(toolName="Grep", input={"pattern": "x("}, output={"error": "regex parse error"})
                for _ in range(count)
            ]

        result = analyze_transcript(_transcript(failing_greps(4)))
        self.assertEqual(result.metrics.retries, 3)
        self.assertIn(("retry_loops", "medium"), [(p.type, p.severity) for p in result.antiPatterns])

        result = analyze_transcript(_transcript(failing_greps(7)))
        self.assertEqual(result.metrics.retries, 6)
        self.assertIn(("retry_loops", "high"), [(p.type, p.severity) for p in result.antiPatterns])

    def test_failure_rate_needs_enough_calls(self) -> None:
        calls = [
            ToolCallMessage(toolName="Read", isError=True),
            ToolCallMessage(toolName="Bash", isError=True),
        ]
        result = analyze_transcript(_transcript(calls))
        self.assertEqual([pattern.type for pattern in result.antiPatterns], [])
        self.assertEqual(result.healthScore, 94)

    def test_score_is_clamped_at_zero(self) -> None:
        metrics = AnalysisMetrics(toolCalls=10, errors=10, retries=9)
        patterns = [AntiPattern(type="retry_loops", description="", severity="high")]
        self.assertEqual(calculate_health_score(metrics, patterns), 0)


if __name__ == "__main__":
    unittest.main()
