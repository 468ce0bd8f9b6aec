"""Autonomous AI development loops driven from a work item backlog."""

__version__ = "0.1.0"
