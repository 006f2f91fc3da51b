import unittest

from agentlogs.models import ToolCallMessage
from agentlogs.parsers.shell_reclassify import (
    extract_shell_command,
    has_control_operators,
    reclassify_command,
    reclassify_shell_call,
    split_shell_args,
    strip_shell_wrapper,
)


class ShellParsingTests(unittest.TestCase):
    def test_split_honors_quotes_and_escapes(self) -> None:
        self.assertEqual(split_shell_args("rg -n 'foo bar' src\\ dir"), ["rg", "-n", "foo bar", "src dir"])
        self.assertEqual(split_shell_args('echo "a \\"b\\""'), ["echo", 'a "b"'])

    def test_control_operators_outside_quotes(self) -> None:
        self.assertTrue(has_control_operators("rg foo | head"))
        self.assertTrue(has_control_operators("cat a && cat b"))
        self.assertFalse(has_control_operators("rg 'a|b' src"))

    def test_extract_command_shapes(self) -> None:
        self.assertEqual(extract_shell_command({"cmd": "ls"}), "ls")
        self.assertEqual(extract_shell_command({"command": "pwd"}), "pwd")
        self.assertEqual(extract_shell_command({"command": ["bash", "-lc", "make"]}), "make")
        self.assertIsNone(extract_shell_command({"command": ["python", "x.py"]}))
        self.assertEqual(extract_shell_command("git status"), "git status")
        self.assertIsNone(extract_shell_command(None))

    def test_strip_login_shell_wrapper(self) -> None:
        self.assertEqual(strip_shell_wrapper("bash -lc 'cat notes.md'"), "cat notes.md")
        self.assertEqual(strip_shell_wrapper("cat notes.md"), "cat notes.md")


class ReclassifierTests(unittest.TestCase):
    def test_heredoc_becomes_write(self) -> None:
        rewrite = reclassify_command("cat <<'EOF' > notes.md\nhello\nEOF", cwd="/w")
        assert rewrite is not None
        self.assertEqual(rewrite.tool_name, "Write")
        self.assertEqual(rewrite.input, {"file_path": "./notes.md", "content": "hello\n"})
        self.assertIsNone(rewrite.output)

    def test_cat_becomes_read(self) -> None:
        rewrite = reclassify_command("cat /w/notes.md", output={"stdout": "hello\n", "exitCode": 0}, cwd="/w")
        assert rewrite is not None
        self.assertEqual(rewrite.tool_name, "Read")
        self.assertEqual(rewrite.input, {"file_path": "./notes.md"})
        self.assertEqual(rewrite.output, "hello\n")

    def test_cat_with_pipe_is_not_a_read(self) -> None:
        self.assertIsNone(reclassify_command("cat notes.md | wc -l", cwd="/w"))

    def test_rg_becomes_grep(self) -> None:
        rewrite = reclassify_command("rg -i -l TODO src", output="src/a.py\nsrc/b.py\n", cwd="/w")
        assert rewrite is not None
        self.assertEqual(rewrite.tool_name, "Grep")
        self.assertEqual(
            rewrite.input,
            {"-i": True, "output_mode": "files_with_matches", "pattern": "TODO", "path": "./src"},
        )
        self.assertEqual(
            rewrite.output,
            {"mode": "files_with_matches", "filenames": ["src/a.py", "src/b.py"], "numMatches": 2},
        )

    def test_rg_content_output(self) -> None:
        rewrite = reclassify_command("rg -C 2 -e 'def main' app.py", output="1:def main():\n", cwd=None)
        assert rewrite is not None
        self.assertEqual(rewrite.input, {"-C": "2", "pattern": "def main", "path": "app.py"})
        self.assertEqual(rewrite.output["mode"], "content")
        self.assertEqual(rewrite.output["numMatches"], 1)

    def test_sed_range_becomes_read(self) -> None:
        rewrite = reclassify_command("sed -n '10,12p' src/app.py", output="a\nb\nc", cwd="/w")
        assert rewrite is not None
        self.assertEqual(rewrite.tool_name, "Read")
        self.assertEqual(rewrite.input, {"file_path": "./src/app.py"})
        self.assertEqual(rewrite.output, {"file": {"content": "a\nb\nc", "numLines": 3, "startLine": 10}})

    def test_sed_substitution_is_left_alone(self) -> None:
        self.assertIsNone(reclassify_command("sed -n 's/a/b/p' file.txt"))
        self.assertIsNone(reclassify_command("sed -n '0p' file.txt"))

    def test_other_commands_stay_bash(self) -> None:
        self.assertIsNone(reclassify_command("npm test"))


class ReclassifyCallTests(unittest.TestCase):
    def test_rewrites_bash_call_in_place(self) -> None:
        call = ToolCallMessage(
            id="call_1",
            toolName="Bash",
            input={"command": "bash -lc 'cat README.md'"},
            output={"stdout": "# Readme", "exitCode": 0},
            timestamp="2026-01-01T00:00:00.000Z",
        )
        rewritten = reclassify_shell_call(call, "/w")
        self.assertEqual(rewritten.toolName, "Read")
        self.assertEqual(rewritten.id, "call_1")
        self.assertEqual(rewritten.timestamp, "2026-01-01T00:00:00.000Z")
        self.assertEqual(rewritten.output, "# Readme")

    def test_non_bash_calls_are_untouched(self) -> None:
        call = ToolCallMessage(toolName="Read", input={"command": "cat x"})
        self.assertIs(reclassify_shell_call(call, "/w"), call)


if __name__ == "__main__":
    unittest.main()
