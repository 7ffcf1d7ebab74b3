"""Autonomous coding agent for tracker tasks."""

__version__ = "0.1.0"
