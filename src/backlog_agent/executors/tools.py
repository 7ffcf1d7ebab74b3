"""Local tools exposed to API-backed agents.

Tool definitions use the OpenAI function-calling schema, which litellm
translates for every provider. All file paths are relative to the task's
working directory and may not escape it.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

BASH_TIMEOUT = 120
GREP_MAX_RESULTS = 50
GLOB_MAX_RESULTS = 100
MAX_OUTPUT_LENGTH = 10000

DANGEROUS_COMMANDS = (
    "rm -rf /",
    "rm -rf /*",
    "sudo",
    "> /dev/",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "chmod -R 777 /",
    "chown -R",
)

_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}

TASK_COMPLETE = "task_complete"


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function(
        "read_file", "Read the contents of a file",
        {"file_path": {"type": "string", "description": "Path relative to the repository root"}},
        ["file_path"],
    ),
    _function(
        "write_file", "Create or overwrite a file with the given content",
        {
            "file_path": {"type": "string", "description": "Path relative to the repository root"},
            "content": {"type": "string", "description": "Full file content"},
        },
        ["file_path", "content"],
    ),
    _function(
        "edit_file", "Replace the first occurrence of old_string with new_string in a file",
        {
            "file_path": {"type": "string"},
            "old_string": {"type": "string", "description": "Exact text to replace"},
            "new_string": {"type": "string", "description": "Replacement text"},
        },
        ["file_path", "old_string", "new_string"],
    ),
    _function(
        "run_bash", "Run a shell command in the repository root",
        {"command": {"type": "string"}},
        ["command"],
    ),
    _function(
        "glob_files", "List files matching a glob pattern, e.g. src/**/*.py",
        {"pattern": {"type": "string"}},
        ["pattern"],
    ),
    _function(
        "grep_search", "Search file contents for a regular expression",
        {
            "pattern": {"type": "string"},
            "file_pattern": {"type": "string", "description": "Optional glob limiting which files are searched"},
        },
        ["pattern"],
    ),
    _function(
        TASK_COMPLETE, "Call when the task is finished, with a summary of what was done",
        {"summary": {"type": "string"}},
        ["summary"],
    ),
]

READ_ONLY_TOOLS = ("read_file", "glob_files", "grep_search")

# Offered during the planning turn, before any edit is allowed
PLANNING_TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    d for d in TOOL_DEFINITIONS if d["function"]["name"] in READ_ONLY_TOOLS
]


@dataclass
class ToolResult:
    success: bool
    result: str
    changed_path: Optional[str] = None


def is_dangerous_command(command: str) -> bool:
    lowered = command.lower()
    return any(pattern.lower() in lowered for pattern in DANGEROUS_COMMANDS)


def truncate_output(output: str, max_length: int = MAX_OUTPUT_LENGTH) -> str:
    if len(output) <= max_length:
        return output
    return output[:max_length] + "\n\n[... output truncated]"


class ToolRunner:
    """Executes tool calls against one working directory."""

    def __init__(self, root: Path, bash_timeout: int = BASH_TIMEOUT):
        self.root = Path(root).resolve()
        self.bash_timeout = bash_timeout
        self._handlers: Dict[str, Callable[[Dict[str, Any]], ToolResult]] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "edit_file": self._edit_file,
            "run_bash": self._run_bash,
            "glob_files": self._glob_files,
            "grep_search": self._grep_search,
            TASK_COMPLETE: lambda args: ToolResult(True, "Task marked complete"),
        }

    def execute(self, name: str, args: Dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(False, f"Unknown tool: {name}")
        try:
            return handler(args)
        except KeyError as e:
            return ToolResult(False, f"Error: missing argument {e}")
        except (OSError, ValueError, UnicodeDecodeError) as e:
            return ToolResult(False, f"Error: {e}")

    def _resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Path escapes the repository: {relative}")
        return path

    def _read_file(self, args: Dict[str, Any]) -> ToolResult:
        return ToolResult(True, self._resolve(args["file_path"]).read_text())

    def _write_file(self, args: Dict[str, Any]) -> ToolResult:
        path = self._resolve(args["file_path"])
        existed = path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(args["content"])
        action = "updated" if existed else "created"
        return ToolResult(True, f"File {action}: {args['file_path']}", changed_path=args["file_path"])

    def _edit_file(self, args: Dict[str, Any]) -> ToolResult:
        path = self._resolve(args["file_path"])
        content = path.read_text()
        if args["old_string"] not in content:
            return ToolResult(False, "Error: Could not find the specified string in file")
        path.write_text(content.replace(args["old_string"], args["new_string"], 1))
        return ToolResult(True, f"File edited: {args['file_path']}", changed_path=args["file_path"])

    def _run_bash(self, args: Dict[str, Any]) -> ToolResult:
        command = args["command"]
        if is_dangerous_command(command):
            logger.warning(f"Blocked dangerous command: {command}")
            return ToolResult(False, "Error: Command blocked by safety policy")
        try:
            proc = subprocess.run(
                command, shell=True, cwd=self.root, capture_output=True, text=True,
                timeout=self.bash_timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(False, f"Error: Command timed out after {self.bash_timeout}s")
        if proc.returncode != 0:
            return ToolResult(False, f"Error: {proc.stderr or proc.stdout or 'Command failed'}")
        return ToolResult(True, proc.stdout or "(no output)")

    def _iter_files(self, pattern: str):
        for path in sorted(self.root.glob(pattern)):
            if path.is_file() and not _SKIP_DIRS.intersection(path.relative_to(self.root).parts):
                yield path

    def _glob_files(self, args: Dict[str, Any]) -> ToolResult:
        files = [str(p.relative_to(self.root)) for p in self._iter_files(args["pattern"])]
        listing = "\n".join(files[:GLOB_MAX_RESULTS]) or "(no matches)"
        if len(files) > GLOB_MAX_RESULTS:
            listing += f"\n\n[... {len(files) - GLOB_MAX_RESULTS} more files truncated]"
        return ToolResult(True, listing)

    def _grep_search(self, args: Dict[str, Any]) -> ToolResult:
        try:
            regex = re.compile(args["pattern"])
        except re.error as e:
            return ToolResult(False, f"Error: invalid pattern: {e}")

        matches: List[str] = []
        for path in self._iter_files(args.get("file_pattern") or "**/*"):
            try:
                lines = path.read_text().splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    matches.append(f"{path.relative_to(self.root)}:{number}:{line}")
                    if len(matches) >= GREP_MAX_RESULTS:
                        return ToolResult(True, "\n".join(matches))
        return ToolResult(True, "\n".join(matches) or "(no matches)")
