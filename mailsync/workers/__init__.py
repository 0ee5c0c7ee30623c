"""
Email sync workers module.

Schedules and coordinates the per-account sync runs.
"""

from mailsync.workers.sync_orchestrator import SyncOrchestrator

__all__ = ["SyncOrchestrator"]
