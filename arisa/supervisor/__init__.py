"""Arisa core supervision and self-repair.

Components:
- ProcessSupervisor: spawns, watches, and restarts the core process
- DiagnosticBuffer: bounded tail of the core's error stream
- RemediationOrchestrator: rate-limited auto-fix through an agent CLI
- SupervisorNotifier: user-facing notices for supervisor events
- PidFile: one live process per role, claimed at startup
- AuditLog: JSONL trail of supervisor actions
"""

from arisa.supervisor.audit import AuditLog
from arisa.supervisor.diagnostics import DiagnosticBuffer
from arisa.supervisor.monitor import DesiredState, ProcessSupervisor
from arisa.supervisor.notifier import SupervisorNotifier
from arisa.supervisor.ports import PidFile, bind_with_retry, claim_process, release_process
from arisa.supervisor.repair import RemediationOrchestrator, RemediationWindow

__all__ = [
    "AuditLog",
    "DesiredState",
    "DiagnosticBuffer",
    "PidFile",
    "ProcessSupervisor",
    "RemediationOrchestrator",
    "RemediationWindow",
    "SupervisorNotifier",
    "bind_with_retry",
    "claim_process",
    "release_process",
]
