"""Dev server supervision for devpreview."""

from devpreview.dev.detector import ProjectDetector, SimpleProjectDetector
from devpreview.dev.lock import LockFileCoordinator
from devpreview.dev.manager import DevServerManager, build_command
from devpreview.dev.ports import (
    find_available_port,
    is_port_available,
    test_port_listening,
)
from devpreview.dev.process_control import is_process_alive
from devpreview.dev.reaper import IdleReaper
from devpreview.dev.supervisor import (
    ErrorCategory,
    ProcessSupervisor,
    ReadyPredicate,
    classify_output,
    marker_ready_predicate,
)

__all__ = [
    "DevServerManager",
    "ErrorCategory",
    "IdleReaper",
    "LockFileCoordinator",
    "ProcessSupervisor",
    "ProjectDetector",
    "ReadyPredicate",
    "SimpleProjectDetector",
    "build_command",
    "classify_output",
    "find_available_port",
    "is_port_available",
    "is_process_alive",
    "marker_ready_predicate",
    "test_port_listening",
]
