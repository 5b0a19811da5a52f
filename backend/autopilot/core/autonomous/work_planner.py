"""
Work Planner
============

Discovers epics and their stories from markdown files, builds the story
dependency graph, and emits a topologically ordered work queue.

Epic file format::

    ---
    title: Authentication
    depends_on: [epic-001-core]
    ---
    # Epic: Authentication

    ## Overview
    Free text.

    ### Story 1: Login endpoint
    Touches `src/auth/login.py`.

    **Depends on:** story-2, epic-001-core/story-3

    **Acceptance Criteria:**
    - [ ] POST /login returns a token
    - [x] Invalid password returns 401

Ties in the topological order break by epic declaration order, then by
story number.
"""

import fnmatch
import heapq
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import yaml

from autopilot.core.config import settings
from autopilot.core.exceptions import (
    CyclicDependencyError,
    EpicNotFoundError,
    PlanningError,
    UnknownDependencyError,
)

logger = logging.getLogger(__name__)


# ==========================================================================
# Discovered Structures
# ==========================================================================

@dataclass
class AcceptanceCriterion:
    text: str
    done: bool = False

    def to_dict(self) -> dict:
        return {"text": self.text, "done": self.done}


@dataclass
class DiscoveredStory:
    """A story parsed from an epic file."""
    number: int
    title: str
    criteria: list[AcceptanceCriterion] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)  # As written: story-2 or epic-x/story-3
    referenced_files: list[str] = field(default_factory=list)
    description: str = ""

    @property
    def story_id(self) -> str:
        return f"story-{self.number}"


@dataclass
class DiscoveredEpic:
    """An epic parsed from one markdown file."""
    id: str
    title: str
    path: Optional[Path] = None
    overview: Optional[str] = None
    stories: list[DiscoveredStory] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)  # Epic-level dependencies

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stories if s.criteria and all(c.done for c in s.criteria))


@dataclass
class PlannedItem:
    """A story ready to be queued, with resolved full-id dependencies."""
    epic_id: str
    story_id: str
    full_id: str
    title: str
    criteria: list[AcceptanceCriterion] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    referenced_files: list[str] = field(default_factory=list)
    dependency_depth: int = 0
    position: int = 0
    source_path: Optional[str] = None

    @property
    def criteria_count(self) -> int:
        return len(self.criteria)

    def can_execute(self, completed: set[str]) -> bool:
        return all(dep in completed for dep in self.dependencies)


@dataclass
class ExecutionPlan:
    """Result of planning; an empty queue plus ``cycle`` when the graph is cyclic."""
    epics: list[str] = field(default_factory=list)
    work_queue: list[PlannedItem] = field(default_factory=list)
    cycle: Optional[list[str]] = None
    dry_run: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_stories(self) -> int:
        return len(self.work_queue)

    @property
    def dependency_count(self) -> int:
        return sum(len(item.dependencies) for item in self.work_queue)

    @property
    def has_cycle(self) -> bool:
        return self.cycle is not None

    def summary(self) -> str:
        text = (
            f"Execution Plan: {len(self.epics)} epics, {self.total_stories} stories, "
            f"{self.dependency_count} dependencies"
        )
        if self.cycle:
            text += f" (cyclic: {' -> '.join(self.cycle)})"
        return text


# ==========================================================================
# Dependency Graph
# ==========================================================================

class DependencyGraph:
    """Directed graph of story full ids; edges point from a story to its dependencies."""

    def __init__(self):
        self._deps: dict[str, list[str]] = {}

    def add(self, node: str, dependencies: Iterable[str] = ()) -> None:
        self._deps.setdefault(node, [])
        for dep in dependencies:
            if dep not in self._deps[node]:
                self._deps[node].append(dep)
            self._deps.setdefault(dep, [])

    @property
    def nodes(self) -> list[str]:
        return list(self._deps)

    def dependencies_of(self, node: str) -> list[str]:
        return list(self._deps.get(node, []))

    def dependents_of(self, node: str) -> list[str]:
        """All stories that transitively depend on ``node``."""
        reverse: dict[str, list[str]] = {}
        for n, deps in self._deps.items():
            for dep in deps:
                reverse.setdefault(dep, []).append(n)

        found: list[str] = []
        stack = list(reverse.get(node, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.append(current)
            stack.extend(reverse.get(current, []))
        return found

    def find_cycle(self) -> Optional[list[str]]:
        """Return one cycle as a closed path (``[a, b, a]``), or None."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node: WHITE for node in self._deps}
        path: list[str] = []

        def visit(node: str) -> Optional[list[str]]:
            color[node] = GREY
            path.append(node)
            for dep in self._deps[node]:
                if color[dep] == GREY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == WHITE:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            path.pop()
            color[node] = BLACK
            return None

        for node in self._deps:
            if color[node] == WHITE:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def topological_order(self, priority: Optional[dict[str, tuple]] = None) -> list[str]:
        """Kahn's algorithm; among ready nodes the lowest ``priority`` key goes first."""
        cycle = self.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

        priority = priority or {}
        remaining = {node: len(deps) for node, deps in self._deps.items()}
        dependents: dict[str, list[str]] = {}
        for node, deps in self._deps.items():
            for dep in deps:
                dependents.setdefault(dep, []).append(node)

        ready = [(priority.get(n, (float("inf"), n)), n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in dependents.get(node, []):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (priority.get(dependent, (float("inf"), dependent)), dependent))
        return order

    def depth(self, node: str) -> int:
        """Length of the longest dependency chain below ``node``."""
        memo: dict[str, int] = {}

        def walk(current: str) -> int:
            if current in memo:
                return memo[current]
            deps = self._deps.get(current, [])
            memo[current] = 0 if not deps else 1 + max(walk(dep) for dep in deps)
            return memo[current]

        return walk(node)


# ==========================================================================
# Planner
# ==========================================================================

class WorkPlanner:
    """
    Epic discovery and work-queue planning.

    Epics are read from ``epics_dir`` files matching ``file_pattern``; the
    file stem is the epic id and sorted file order is declaration order.
    """

    STORY_HEADING = re.compile(r"^###\s+Story\s+(\d+)[:\s]+(.+?)\s*$", re.IGNORECASE)
    DEPENDS_LINE = re.compile(r"^\**\s*Depends\s+on\s*(?::\**|\**:)\s*(.*)$", re.IGNORECASE)
    CRITERIA_HEADING = re.compile(r"^\**\s*Acceptance\s+Criteria\s*:?\**\s*:?\s*$", re.IGNORECASE)
    FILE_REFERENCE = re.compile(r"`([\w./-]+\.[A-Za-z0-9]+)`")
    STORY_REFERENCE = re.compile(r"(?:([\w.-]+)/)?story-(\d+)", re.IGNORECASE)

    def __init__(
        self,
        epics_dir: Optional[str | Path] = None,
        file_pattern: Optional[str] = None,
    ):
        self.epics_dir = Path(epics_dir or settings.EPICS_DIR)
        self.file_pattern = file_pattern or settings.EPIC_FILE_PATTERN

    # ----------------------------------------------------------------------
    # Parsing
    # ----------------------------------------------------------------------

    def load_epics(self) -> list[DiscoveredEpic]:
        """Parse every epic file in the epics directory, in sorted file order."""
        if not self.epics_dir.is_dir():
            logger.warning(f"Epics directory not found: {self.epics_dir}")
            return []

        epics = []
        for path in sorted(self.epics_dir.glob(self.file_pattern)):
            content = path.read_text(encoding="utf-8")
            epics.append(self.parse_epic(path.stem, content, path))
        logger.info(f"Loaded {len(epics)} epics from {self.epics_dir}")
        return epics

    def parse_epic(self, epic_id: str, content: str, path: Optional[Path] = None) -> DiscoveredEpic:
        front_matter, body = self._split_front_matter(content)

        epic = DiscoveredEpic(
            id=epic_id,
            title=str(front_matter.get("title") or self._extract_title(body) or epic_id),
            path=path,
            overview=self._extract_overview(body),
            depends_on=self._as_list(front_matter.get("depends_on")),
        )
        epic.stories = self._extract_stories(body)
        return epic

    def _split_front_matter(self, content: str) -> tuple[dict, str]:
        if not content.startswith("---"):
            return {}, content
        parts = content.split("\n---", 1)
        if len(parts) != 2:
            return {}, content
        header = parts[0][3:]
        try:
            data = yaml.safe_load(header) or {}
        except yaml.YAMLError as e:
            raise PlanningError(f"Invalid epic front matter: {e}") from e
        if not isinstance(data, dict):
            return {}, content
        return data, parts[1].lstrip("-\n")

    @staticmethod
    def _as_list(value) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [str(v) for v in value]

    @staticmethod
    def _extract_title(body: str) -> Optional[str]:
        for line in body.splitlines():
            stripped = line.strip()
            if stripped.startswith("# "):
                title = stripped[2:].strip()
                if title.lower().startswith("epic:"):
                    title = title[5:].strip()
                return title
        return None

    @staticmethod
    def _extract_overview(body: str) -> Optional[str]:
        lines = []
        inside = False
        for line in body.splitlines():
            stripped = line.strip()
            if stripped.startswith("## Overview"):
                inside = True
                continue
            if inside and (stripped.startswith("## ") or stripped.startswith("### ")):
                break
            if inside and stripped:
                lines.append(stripped)
        return "\n".join(lines) or None

    def _extract_stories(self, body: str) -> list[DiscoveredStory]:
        stories: list[DiscoveredStory] = []
        current: Optional[DiscoveredStory] = None
        in_criteria = False
        description: list[str] = []

        def close() -> None:
            if current is not None:
                current.description = "\n".join(description).strip()

        for line in body.splitlines():
            stripped = line.strip()

            heading = self.STORY_HEADING.match(stripped)
            if heading:
                close()
                current = DiscoveredStory(number=int(heading.group(1)), title=heading.group(2))
                stories.append(current)
                in_criteria = False
                description = []
                continue

            if current is None:
                continue

            if stripped.startswith("## ") or stripped.startswith("### "):
                close()
                current = None
                continue

            if self.CRITERIA_HEADING.match(stripped):
                in_criteria = True
                continue

            depends = self.DEPENDS_LINE.match(stripped)
            if depends:
                current.dependencies.extend(
                    d.strip().strip("`") for d in depends.group(1).split(",") if d.strip()
                )
                in_criteria = False
                continue

            for ref in self.FILE_REFERENCE.findall(stripped):
                if ref not in current.referenced_files:
                    current.referenced_files.append(ref)

            if in_criteria:
                criterion = self._parse_criterion(stripped)
                if criterion:
                    current.criteria.append(criterion)
                    continue
                if stripped.startswith("**"):
                    in_criteria = False

            if stripped:
                description.append(stripped)

        close()
        return stories

    @staticmethod
    def _parse_criterion(line: str) -> Optional[AcceptanceCriterion]:
        if line.startswith("- [ ] "):
            return AcceptanceCriterion(line[6:].strip(), done=False)
        if line.startswith("- [x] ") or line.startswith("- [X] "):
            return AcceptanceCriterion(line[6:].strip(), done=True)
        if line.startswith("- ") and not line.startswith("- ["):
            return AcceptanceCriterion(line[2:].strip(), done=False)
        return None

    # ----------------------------------------------------------------------
    # Matching
    # ----------------------------------------------------------------------

    @staticmethod
    def matches_pattern(epic_id: str, pattern: str) -> bool:
        """``*``, exact id, ``prefix*`` or ``*suffix``."""
        if pattern in ("*", "", epic_id):
            return True
        if pattern.endswith("*") and not pattern.startswith("*"):
            return epic_id.startswith(pattern[:-1])
        if pattern.startswith("*") and not pattern.endswith("*"):
            return epic_id.endswith(pattern[1:])
        if "*" in pattern or "?" in pattern:
            return fnmatch.fnmatchcase(epic_id, pattern)
        return False

    # ----------------------------------------------------------------------
    # Planning
    # ----------------------------------------------------------------------

    def discover(
        self,
        pattern: str = "*",
        epics: Optional[list[DiscoveredEpic]] = None,
    ) -> list[PlannedItem]:
        """
        Ordered work items for every epic matching ``pattern``.

        Raises:
            EpicNotFoundError: If no epic matches
            CyclicDependencyError: If the dependency graph has a cycle
            UnknownDependencyError: If a story depends on a story that does not exist
        """
        all_epics = epics if epics is not None else self.load_epics()
        selected = [e for e in all_epics if self.matches_pattern(e.id, pattern)]
        if not selected:
            raise EpicNotFoundError(f"No epics match pattern '{pattern}'")

        known = {f"{e.id}/{s.story_id}" for e in all_epics for s in e.stories}
        stories_by_epic = {e.id: [f"{e.id}/{s.story_id}" for s in e.stories] for e in all_epics}

        items: dict[str, PlannedItem] = {}
        priority: dict[str, tuple] = {}
        graph = DependencyGraph()

        for epic_index, epic in enumerate(selected):
            epic_deps: list[str] = []
            for dep_epic in epic.depends_on:
                if dep_epic not in stories_by_epic:
                    raise UnknownDependencyError(epic.id, dep_epic)
                epic_deps.extend(stories_by_epic[dep_epic])

            for story in epic.stories:
                full_id = f"{epic.id}/{story.story_id}"
                deps = [self._resolve_reference(epic.id, ref) for ref in story.dependencies]
                for dep in deps:
                    if dep not in known:
                        raise UnknownDependencyError(full_id, dep)
                deps.extend(d for d in epic_deps if d not in deps)

                items[full_id] = PlannedItem(
                    epic_id=epic.id,
                    story_id=story.story_id,
                    full_id=full_id,
                    title=story.title,
                    criteria=list(story.criteria),
                    dependencies=deps,
                    referenced_files=list(story.referenced_files),
                    source_path=str(epic.path) if epic.path else None,
                )
                priority[full_id] = (epic_index, story.number)

        # Dependencies on stories outside the selection are owned by another session
        for full_id, item in items.items():
            external = [d for d in item.dependencies if d not in items]
            if external:
                logger.warning(f"{full_id}: dependencies outside pattern '{pattern}' ignored: {external}")
                item.dependencies = [d for d in item.dependencies if d in items]
            graph.add(full_id, item.dependencies)

        order = graph.topological_order(priority)

        queue = []
        for position, full_id in enumerate(order):
            item = items[full_id]
            item.position = position
            item.dependency_depth = graph.depth(full_id)
            queue.append(item)
        return queue

    def plan(
        self,
        pattern: str = "*",
        dry_run: bool = False,
        epics: Optional[list[DiscoveredEpic]] = None,
    ) -> ExecutionPlan:
        """Like ``discover`` but a cycle yields a plan with an empty queue instead of raising."""
        all_epics = epics if epics is not None else self.load_epics()
        epic_ids = [e.id for e in all_epics if self.matches_pattern(e.id, pattern)]
        try:
            queue = self.discover(pattern, epics=all_epics)
        except CyclicDependencyError as e:
            logger.error(f"Planning failed for pattern '{pattern}': {e}")
            return ExecutionPlan(epics=epic_ids, work_queue=[], cycle=e.cycle, dry_run=dry_run)

        plan = ExecutionPlan(epics=epic_ids, work_queue=queue, dry_run=dry_run)
        logger.info(plan.summary())
        return plan

    @classmethod
    def _resolve_reference(cls, epic_id: str, reference: str) -> str:
        match = cls.STORY_REFERENCE.search(reference)
        if not match:
            return reference if "/" in reference else f"{epic_id}/{reference}"
        return f"{match.group(1) or epic_id}/story-{int(match.group(2))}"

    def refresh_criteria(self, source_path: Optional[str], story_id: str) -> Optional[list[AcceptanceCriterion]]:
        """Re-read a story's criteria from its epic file; None when the file is gone."""
        if not source_path:
            return None
        path = Path(source_path)
        if not path.is_file():
            return None
        epic = self.parse_epic(path.stem, path.read_text(encoding="utf-8"), path)
        for story in epic.stories:
            if story.story_id == story_id:
                return list(story.criteria)
        return None
