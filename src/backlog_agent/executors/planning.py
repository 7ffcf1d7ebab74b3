"""Implementation plans produced by an API agent before it edits anything.

The model explores the repository with read-only tools and answers with a
JSON plan in a fenced block. The plan is posted to the task and then handed
to the execution turn as part of its prompt.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

PLAN_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

PLAN_REQUEST = """## Planning Phase

Before making any changes, explore the codebase with the available tools
(read_file, glob_files, grep_search) and decide how to implement the task.

When you are ready, reply with the plan as a JSON block:

```json
{
  "summary": "One sentence describing the change",
  "approach": "How you will implement it",
  "files": [
    {"path": "relative/path", "purpose": "Why this file", "changes": "What changes"}
  ],
  "estimatedComplexity": "simple | medium | complex",
  "considerations": ["Risks or follow-ups"]
}
```

List every file you will create or modify. Do not edit files yet."""

EXPLORE_NUDGE = "Please explore the codebase with the tools before writing the plan."
NO_FILES_NUDGE = "Your plan has no files. List at least one file you will create or modify."
FORMAT_NUDGE = "Please provide the implementation plan as a JSON block with at least one file."
IMPLEMENT_REQUEST = "Please implement the changes according to the plan."


class PlanningError(Exception):
    """The agent did not produce a usable plan."""


@dataclass
class PlannedFile:
    path: str
    purpose: str = ""
    changes: str = ""


@dataclass
class ImplementationPlan:
    summary: str
    approach: str = ""
    files: List[PlannedFile] = field(default_factory=list)
    complexity: str = "medium"
    considerations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "approach": self.approach,
            "files": [asdict(f) for f in self.files],
            "estimatedComplexity": self.complexity,
            "considerations": self.considerations,
        }

    def to_markdown(self) -> str:
        lines = [f"**Summary:** {self.summary}"]
        if self.approach:
            lines.append(f"\n**Approach:** {self.approach}")
        lines.append(f"\n**Files ({len(self.files)}):**")
        for planned in self.files:
            purpose = f" - {planned.purpose}" if planned.purpose else ""
            lines.append(f"- `{planned.path}`{purpose}")
        lines.append(f"\n**Complexity:** {self.complexity}")
        if self.considerations:
            lines.append("\n**Considerations:**")
            lines.extend(f"- {c}" for c in self.considerations)
        return "\n".join(lines)

    def to_prompt_section(self) -> str:
        return f"## Implementation Plan\n\n```json\n{json.dumps(self.to_dict(), indent=2)}\n```"


def _as_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_plan(text: str, max_files: Optional[int] = None) -> Optional[ImplementationPlan]:
    """
    The last JSON plan in ``text``, or None if there isn't a readable one.

    A bare JSON object is accepted when there is no fenced block. Entries in
    ``files`` without a path are dropped, and the list is cut at ``max_files``.
    """
    candidates = PLAN_BLOCK_PATTERN.findall(text or "")
    if not candidates and text and text.strip().startswith("{"):
        candidates = [text.strip()]

    for raw in reversed(candidates):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or "summary" not in data:
            continue

        files = []
        for entry in data.get("files") or []:
            if isinstance(entry, str):
                entry = {"path": entry}
            if not isinstance(entry, dict) or not _as_text(entry.get("path")):
                continue
            files.append(PlannedFile(
                path=_as_text(entry["path"]),
                purpose=_as_text(entry.get("purpose")),
                changes=_as_text(entry.get("changes")),
            ))
        if max_files is not None:
            files = files[:max_files]

        considerations = data.get("considerations") or []
        if not isinstance(considerations, list):
            considerations = [considerations]
        return ImplementationPlan(
            summary=_as_text(data.get("summary")),
            approach=_as_text(data.get("approach")),
            files=files,
            complexity=_as_text(data.get("estimatedComplexity")) or "medium",
            considerations=[str(c) for c in considerations],
        )
    return None
