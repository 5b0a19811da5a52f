"""
Status Signal Parser
====================

Extracts the terminal STATUS signal and its structured fields from an
agent's free-text output.

Agents end every turn with a marker line followed by zero or more
``KEY: value`` lines::

    STATUS: NEEDS_REVIEW
    PR_NUMBER: 42
    FILES_CHANGED:
      - src/app.py
      - tests/test_app.py
    FEEDBACK_FOR_AGENT: |
      Multi-line text,
      kept verbatim.

Output without a recognized marker is ``Unparseable``; the decision
engine treats that as BLOCKED, never as COMPLETE.
"""

import re
import textwrap
from dataclasses import dataclass, field
from typing import Optional, Union

from autopilot.core.models import StatusSignal


# ==========================================================================
# Parse Results
# ==========================================================================

@dataclass(frozen=True)
class ParsedSignal:
    """A recognized STATUS line plus captured fields."""
    signal: StatusSignal
    fields: dict[str, str] = field(default_factory=dict)
    line_number: int = 0

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(key.upper(), default)

    def get_list(self, key: str) -> list[str]:
        """Return a list-valued field (indented ``- item`` lines or comma-separated)."""
        raw = self.get(key)
        if not raw:
            return []
        items = []
        for line in raw.splitlines():
            line = line.strip()
            if line.startswith("- "):
                items.append(line[2:].strip())
            elif line:
                items.extend(part.strip() for part in line.split(",") if part.strip())
        return items

    @property
    def detail(self) -> Optional[str]:
        return self.fields.get("DETAIL")


@dataclass(frozen=True)
class Unparseable:
    """No recognized STATUS marker was found."""
    reason: str = "no status signal"


ParseResult = Union[ParsedSignal, Unparseable]


# ==========================================================================
# Parser
# ==========================================================================

class SignalParser:
    """
    Line-oriented, prose-tolerant STATUS parser.

    When several marker lines appear the last one wins, since agents
    often quote earlier status lines while reasoning.
    """

    # STATUS:, **STATUS**:, **STATUS:**, [STATUS]:
    MARKER_PATTERN = re.compile(
        r"^\s*(?:\*\*STATUS\*\*:|\*\*STATUS:\*\*|\[STATUS\]:|STATUS:)\s*(\w+)(?:\s*[-:.]\s*(.*))?\s*$",
        re.IGNORECASE,
    )
    FIELD_PATTERN = re.compile(r"^([A-Z][A-Z0-9_]*):\s*(.*?)\s*$")

    ALIASES = {
        "COMPLETED": StatusSignal.COMPLETE,
        "DONE": StatusSignal.COMPLETE,
        "STUCK": StatusSignal.BLOCKED,
        "WAIT": StatusSignal.WAITING,
        "PENDING": StatusSignal.WAITING,
    }

    BLOCK_INDICATORS = ("|", ">", "|-", ">-")

    def parse(self, output: Optional[str]) -> ParseResult:
        if not output:
            return Unparseable()

        lines = output.splitlines()
        marker_index = None
        marker_match = None
        for index, line in enumerate(lines):
            match = self.MARKER_PATTERN.match(line)
            if match:
                marker_index, marker_match = index, match

        if marker_match is None:
            return Unparseable()

        signal = self._resolve_signal(marker_match.group(1))
        if signal is None:
            return Unparseable(reason=f"unknown status signal: {marker_match.group(1)}")

        fields = self.capture_fields(lines[marker_index + 1:])
        detail = (marker_match.group(2) or "").strip()
        if detail and "DETAIL" not in fields:
            fields["DETAIL"] = detail

        return ParsedSignal(signal=signal, fields=fields, line_number=marker_index + 1)

    def _resolve_signal(self, word: str) -> Optional[StatusSignal]:
        word = word.upper()
        if word in self.ALIASES:
            return self.ALIASES[word]
        try:
            return StatusSignal(word)
        except ValueError:
            return None

    def capture_fields(self, lines: list[str]) -> dict[str, str]:
        """Greedy KEY: value capture until a blank line or unrelated prose."""
        fields: dict[str, str] = {}
        index = 0
        while index < len(lines):
            line = lines[index]
            if not line.strip():
                break
            match = self.FIELD_PATTERN.match(line.strip()) if not line[:1].isspace() else None
            if not match:
                break

            key, value = match.group(1), match.group(2)
            index += 1

            if value in self.BLOCK_INDICATORS or value == "":
                block, index = self._read_block(lines, index)
                if value.startswith(">"):
                    value = " ".join(part.strip() for part in block.splitlines() if part.strip())
                else:
                    value = block
            fields[key] = value
        return fields

    def _read_block(self, lines: list[str], index: int) -> tuple[str, int]:
        block: list[str] = []
        while index < len(lines):
            line = lines[index]
            if line.strip() and not line[:1].isspace():
                break
            if not line.strip():
                # Blank lines inside a block continue it only when more indented text follows
                following = lines[index + 1] if index + 1 < len(lines) else ""
                if not following[:1].isspace() or not following.strip():
                    break
            block.append(line)
            index += 1
        return textwrap.dedent("\n".join(block)).strip("\n"), index


_default_parser = SignalParser()


def parse_signal(output: Optional[str]) -> ParseResult:
    """Parse agent output with the default parser."""
    return _default_parser.parse(output)


FILE_CHANGE_PATTERN = re.compile(
    r"(?:modified|created|updated|deleted|wrote|edited):\s+`?([\w./-]+\.\w+)`?",
    re.IGNORECASE,
)


def extract_changed_files(result: ParseResult, output: str = "") -> list[str]:
    """Files changed per the FILES_CHANGED field, falling back to prose mentions."""
    if isinstance(result, ParsedSignal):
        files = result.get_list("FILES_CHANGED")
        if files:
            return files
    seen: list[str] = []
    for match in FILE_CHANGE_PATTERN.finditer(output or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen
