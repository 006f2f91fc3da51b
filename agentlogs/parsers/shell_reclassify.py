"""Reclassify raw shell tool calls into higher-level file operations.

Each reclassifier is a pure ``(command, output, cwd) -> ShellRewrite | None``
function. :data:`SHELL_RECLASSIFIERS` is tried in order and the first match
wins; commands that no reclassifier accepts stay ``Bash`` calls.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agentlogs.models import ToolCallMessage
from agentlogs.paths import relativize_path

_LOGIN_SHELLS = {"bash", "zsh", "/bin/bash", "/bin/zsh"}
_SHELL_WRAPPER_PATTERN = re.compile(r"^(?:bash|zsh)\s+-lc\s+['\"](.*)['\"]$", re.DOTALL)
_HEREDOC_WRITE_PATTERN = re.compile(
    r"^cat\s+<<-?\s*(['\"]?)(?P<tag>[A-Za-z_][A-Za-z0-9_]*)\1\s*>\s*(?P<path>[^\s;&|]+)[ \t]*\n"
    r"(?P<content>(?:[\s\S]*?\n)?)(?P=tag)\s*\Z"
)
_CAT_READ_PATTERN = re.compile(r"^cat\s+(?P<path>[^\s;&|<>$`]+)\s*\Z")
_SED_RANGE_PATTERN = re.compile(r"^(\d+)(?:,(\d+))?p$")


@dataclass(frozen=True)
class ShellRewrite:
    tool_name: str
    input: dict[str, Any]
    output: Any = None


Reclassifier = Callable[[str, Any, Optional[str]], Optional[ShellRewrite]]


def split_shell_args(command: str) -> list[str]:
    """Split a command line on unquoted whitespace, honoring quotes and escapes."""
    args: list[str] = []
    current = ""
    quote: str | None = None
    escape_next = False
    for char in command:
        if escape_next:
            current += char
            escape_next = False
            continue
        if char == "\\" and quote != "'":
            escape_next = True
            continue
        if quote:
            if char == quote:
                quote = None
            else:
                current += char
            continue
        if char in {"'", '"'}:
            quote = char
            continue
        if char.isspace():
            if current:
                args.append(current)
                current = ""
            continue
        current += char
    if current:
        args.append(current)
    return args


def has_control_operators(command: str) -> bool:
    """True when the command chains, pipes or redirects outside of quotes."""
    quote: str | None = None
    escape_next = False
    for char in command:
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and quote != "'":
            escape_next = True
            continue
        if quote:
            if char == quote:
                quote = None
            continue
        if char in {"'", '"'}:
            quote = char
            continue
        if char in "|;&<>\n`$":
            return True
    return False


def extract_shell_command(tool_input: Any) -> str | None:
    """Recover the command string from the input shapes agents emit."""
    if isinstance(tool_input, str):
        return tool_input or None
    if not isinstance(tool_input, dict):
        return None
    cmd = tool_input.get("cmd")
    if isinstance(cmd, str) and cmd:
        return cmd
    command = tool_input.get("command")
    if isinstance(command, str) and command:
        return command
    if isinstance(command, list) and len(command) >= 3:
        if command[0] in _LOGIN_SHELLS and command[1] == "-lc" and isinstance(command[2], str):
            return command[2] or None
    return None


def strip_shell_wrapper(command: str) -> str:
    match = _SHELL_WRAPPER_PATTERN.match(command)
    return match.group(1) if match else command


def extract_stdout(output: Any) -> str | None:
    if isinstance(output, str):
        return output or None
    if isinstance(output, dict):
        stdout = output.get("stdout")
        if isinstance(stdout, str) and stdout:
            return stdout
    return None


def reclassify_heredoc_write(command: str, output: Any, cwd: str | None) -> ShellRewrite | None:
    match = _HEREDOC_WRITE_PATTERN.match(command)
    if not match:
        return None
    return ShellRewrite(
        tool_name="Write",
        input={"file_path": relativize_path(match.group("path"), cwd), "content": match.group("content")},
        output=None,
    )


def reclassify_cat_read(command: str, output: Any, cwd: str | None) -> ShellRewrite | None:
    match = _CAT_READ_PATTERN.match(command)
    if not match:
        return None
    return ShellRewrite(
        tool_name="Read",
        input={"file_path": relativize_path(match.group("path"), cwd)},
        output=extract_stdout(output),
    )


def _parse_rg_args(args: list[str], cwd: str | None) -> dict[str, Any] | None:
    tool_input: dict[str, Any] = {}
    pattern: str | None = None
    path_arg: str | None = None
    value_flags = {"-A": "-A", "-B": "-B", "-C": "-C", "-g": "glob", "--glob": "glob", "-t": "type", "--type": "type"}

    index = 1
    while index < len(args):
        arg = args[index]
        index += 1
        if arg == "--":
            continue
        if arg.startswith("-"):
            if arg == "-i":
                tool_input["-i"] = True
            elif arg == "-U":
                tool_input["multiline"] = True
            elif arg in {"-l", "--files-with-matches"}:
                tool_input["output_mode"] = "files_with_matches"
            elif arg in {"-c", "--count"}:
                tool_input["output_mode"] = "count"
            elif arg in {"-e", "--regexp"}:
                if index < len(args):
                    pattern = args[index]
                    index += 1
            elif arg in value_flags:
                if index < len(args):
                    tool_input[value_flags[arg]] = args[index]
                    index += 1
            continue
        if pattern is None:
            pattern = arg
        elif path_arg is None:
            path_arg = arg

    if not pattern:
        return None
    tool_input["pattern"] = pattern
    if path_arg:
        tool_input["path"] = relativize_path(path_arg, cwd) if cwd else path_arg
    return tool_input


def reclassify_rg_search(command: str, output: Any, cwd: str | None) -> ShellRewrite | None:
    if has_control_operators(command):
        return None
    args = split_shell_args(command)
    if len(args) < 2 or args[0] != "rg":
        return None
    tool_input = _parse_rg_args(args, cwd)
    if tool_input is None:
        return None

    grep_output: dict[str, Any] | None = None
    stdout = extract_stdout(output)
    if stdout:
        lines = [line for line in stdout.split("\n") if line.strip()]
        if tool_input.get("output_mode") == "files_with_matches":
            grep_output = {"mode": "files_with_matches", "filenames": lines, "numMatches": len(lines)}
        else:
            grep_output = {
                "mode": "content",
                "content": stdout,
                "numMatches": len(lines),
                "numLines": len(lines),
            }
    return ShellRewrite(tool_name="Grep", input=tool_input, output=grep_output)


def reclassify_sed_range_read(command: str, output: Any, cwd: str | None) -> ShellRewrite | None:
    if has_control_operators(command):
        return None
    args = split_shell_args(command)
    if len(args) < 4 or args[0] != "sed" or "-n" not in args:
        return None
    n_index = args.index("-n")
    if n_index + 2 >= len(args):
        return None
    range_arg = args[n_index + 1]
    file_arg = args[n_index + 2]
    match = _SED_RANGE_PATTERN.match(range_arg)
    if not match:
        return None
    start_line = int(match.group(1))
    if start_line <= 0:
        return None

    read_output: dict[str, Any] | None = None
    stdout = extract_stdout(output)
    if stdout:
        read_output = {
            "file": {
                "content": stdout,
                "numLines": len(stdout.split("\n")),
                "startLine": start_line,
            }
        }
    return ShellRewrite(
        tool_name="Read",
        input={"file_path": relativize_path(file_arg, cwd) if cwd else file_arg},
        output=read_output,
    )


# Order matters: heredoc writes also start with ``cat``.
SHELL_RECLASSIFIERS: tuple[tuple[str, Reclassifier], ...] = (
    ("heredoc_write", reclassify_heredoc_write),
    ("cat_read", reclassify_cat_read),
    ("rg_search", reclassify_rg_search),
    ("sed_range_read", reclassify_sed_range_read),
)


def reclassify_command(
    command: str,
    output: Any = None,
    cwd: str | None = None,
    reclassifiers: tuple[tuple[str, Reclassifier], ...] = SHELL_RECLASSIFIERS,
) -> ShellRewrite | None:
    command = strip_shell_wrapper(command.strip())
    for _name, reclassifier in reclassifiers:
        rewrite = reclassifier(command, output, cwd)
        if rewrite is not None:
            return rewrite
    return None


def reclassify_shell_call(call: ToolCallMessage, cwd: str | None) -> ToolCallMessage:
    """Return a rewritten copy of a Bash call, or the call unchanged."""
    if call.toolName != "Bash":
        return call
    command = extract_shell_command(call.input)
    if not command:
        return call
    rewrite = reclassify_command(command, call.output, cwd)
    if rewrite is None:
        return call
    return call.model_copy(
        update={"toolName": rewrite.tool_name, "input": rewrite.input, "output": rewrite.output}
    )
