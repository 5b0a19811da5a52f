"""
Autonomous Controller
=====================

The autonomous orchestration layer.

Components:
- SignalParser: STATUS signal protocol parsing
- WorkPlanner: Epic discovery and dependency-ordered work queues
- ModelSelector: Complexity scoring and model tier selection
- DecisionEngine: Pure (state, signal, evaluation) -> decision mapping
- WorkEvaluator: Criteria, CI, review and mergeability judgement
- StuckMonitor: Stall detection over active agents
- RecoveryEngine: Bounded recovery ladder
- AutonomousController: Session state machine and control loop
- GitHubCodeHost: Code host over the GitHub REST API
"""

from autopilot.core.autonomous.controller import AutonomousController, SessionStatus
from autopilot.core.autonomous.decision_engine import DecisionEngine
from autopilot.core.autonomous.github import GitHubCodeHost
from autopilot.core.autonomous.model_selector import ModelSelector
from autopilot.core.autonomous.recovery import RecoveryEngine
from autopilot.core.autonomous.signal_parser import SignalParser, parse_signal
from autopilot.core.autonomous.store import SessionStore
from autopilot.core.autonomous.stuck_detector import StuckDetector, StuckMonitor
from autopilot.core.autonomous.work_evaluator import WorkEvaluator
from autopilot.core.autonomous.work_planner import WorkPlanner

__all__ = [
    "AutonomousController",
    "SessionStatus",
    "DecisionEngine",
    "GitHubCodeHost",
    "ModelSelector",
    "RecoveryEngine",
    "SignalParser",
    "parse_signal",
    "SessionStore",
    "StuckDetector",
    "StuckMonitor",
    "WorkEvaluator",
    "WorkPlanner",
]
