"""
Structured outcome of a subagent run, and the heuristics used to build it.
"""

from dataclasses import dataclass, field
from typing import Optional

from foreman.core.subagent_types import SubagentSession
from foreman.core.types import TokenUsage

SUMMARY_MARKERS = (
    "## summary for orchestrator",
    "### tasks completed",
    "### key findings",
    "### status: completed",
    "status: completed",
    "## summary",
    "### summary",
    "## final summary",
    "### final summary",
)

# Tools whose output names a file they wrote.
FILE_WRITING_TOOLS = frozenset({"Create", "Edit", "ApplyPatch", "MultiEdit"})

_PATH_PREFIXES = ("Created file: ", "Created: ", "Edited ", "Modified ", "Wrote ", "to ")


def has_summary_output(response: str) -> bool:
    """True if *response* already contains a structured summary."""
    if not response.strip():
        return False
    lowered = response.lower()
    return any(marker in lowered for marker in SUMMARY_MARKERS)


def split_summary(response: str) -> tuple[str, Optional[str]]:
    """Split *response* into ``(work_log, summary)`` at the orchestrator
    summary heading.  ``summary`` is None when there is no such heading."""
    idx = response.lower().find(SUMMARY_MARKERS[0])
    if idx < 0:
        return response.strip(), None
    return response[:idx].strip(), response[idx:].strip()


def extract_next_steps(summary: Optional[str]) -> list[str]:
    """Bullet items under the summary's ``Recommendations`` heading."""
    if not summary:
        return []
    steps = []
    in_section = False
    for line in summary.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            in_section = stripped.lstrip("#").strip().lower().startswith("recommendations")
            continue
        if in_section and stripped[:2] in ("- ", "* "):
            step = stripped[2:].strip()
            if step:
                steps.append(step)
    return steps


def extract_file_path(output: str) -> Optional[str]:
    """Best-effort guess at the file a write tool reported touching."""
    for prefix in _PATH_PREFIXES:
        idx = output.find(prefix)
        if idx < 0:
            continue
        rest = output[idx + len(prefix):].split()
        if not rest:
            continue
        candidate = rest[0].strip("'\"`,;:")
        if "/" in candidate or "\\" in candidate or "." in candidate:
            return candidate
    return None


@dataclass
class FileChange:
    path: str
    change_type: str = "modified"


@dataclass
class TokenUsageBreakdown:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    per_turn: list[TokenUsage] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add_turn(self, usage: TokenUsage) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cached_tokens += usage.cached_tokens
        self.reasoning_tokens += usage.reasoning_tokens
        self.per_turn.append(usage)


@dataclass
class SubagentResult:
    session: SubagentSession
    success: bool
    output: str = ""
    error: Optional[str] = None
    summary: Optional[str] = None
    token_usage: TokenUsageBreakdown = field(default_factory=TokenUsageBreakdown)
    files_modified: list[FileChange] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    continuable: bool = False

    @property
    def session_id(self) -> str:
        return self.session.id

    def to_tool_output(self) -> str:
        """Render the result as the tool output fed back to the parent model."""
        s = self.session
        lines = [
            f"{'[OK]' if self.success else '[FAIL]'} Subagent ({s.agent_type.name}) "
            f"{'completed' if self.success else 'failed'}",
            f"Session ID: {s.id}",
            "",
        ]
        if self.summary:
            lines += ["## Summary", self.summary, ""]
        elif self.error:
            lines += ["## Error", self.error, ""]

        if self.output:
            lines += ["## Output", self.output, ""]

        lines += [
            "## Statistics",
            f"- Turns: {s.turns_completed}",
            f"- Tool calls: {s.tool_calls_made}",
            f"- Total tokens: {s.tokens_used.total_tokens}",
            f"- Input tokens: {self.token_usage.input_tokens}",
            f"- Output tokens: {self.token_usage.output_tokens}",
            "",
        ]

        if self.files_modified:
            lines.append("## Files Modified")
            lines += [f"- {fc.path} ({fc.change_type})" for fc in self.files_modified]
            lines.append("")

        if self.next_steps:
            lines.append("## Suggested Next Steps")
            lines += [f"{i}. {step}" for i, step in enumerate(self.next_steps, 1)]
            lines.append("")

        if self.continuable:
            lines.append(f'Hint: To continue this task, use session_id: "{s.id}"')

        return "\n".join(lines).rstrip() + "\n"
