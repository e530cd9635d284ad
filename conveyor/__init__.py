"""Conveyor - build, deploy and provisioning orchestration engine."""

__version__ = "0.1.0"
