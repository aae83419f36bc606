"""CronMaster core components."""

from cronmaster.core.locks import LockManager, SQLiteLockProvider
from cronmaster.core.playbooks import PlaybookMatcher, RemediationRunner
from cronmaster.core.proof import ProofEngine
from cronmaster.core.registry import HandlerRegistry, HandlerResult, JobHandler
from cronmaster.core.scheduler import Scheduler, TickReport
from cronmaster.core.workitems import WorkItemStore

__all__ = [
    "HandlerRegistry",
    "HandlerResult",
    "JobHandler",
    "LockManager",
    "PlaybookMatcher",
    "ProofEngine",
    "RemediationRunner",
    "SQLiteLockProvider",
    "Scheduler",
    "TickReport",
    "WorkItemStore",
]
