"""
Autopilot
=========

Autonomous software-delivery orchestrator: discovers epics, plans the
story queue and drives coding agents through review, CI and merge.
"""

__version__ = "0.1.0"
