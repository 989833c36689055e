"""Service discovery, selection and supervision.

Data flows strictly left to right:
    ServiceRegistry → resolve_selection → ScriptResolver → ProcessSupervisor

Public API:
    ServiceDescriptor: One discovered service
    ServiceRegistry: Workspace scanner
    Selection: Result of operator selection
    ScriptResolver: Picks the command to run per service
    ProcessSupervisor: Spawns, relays output and terminates children
    ManagedProcess: Supervisor record of one child
"""

from .output import OutputRelay, StreamName
from .process_context import ManagedProcess, ProcessState
from .process_supervisor import LaunchFailure, ProcessSupervisor, SupervisorState
from .registry import ServiceRegistry, discover
from .resolver import ResolvedLaunch, ScriptResolver
from .selector import Selection, resolve_selection
from .service import CommandClassifier, ServiceDescriptor

__all__ = [
    "CommandClassifier",
    "LaunchFailure",
    "ManagedProcess",
    "OutputRelay",
    "ProcessState",
    "ProcessSupervisor",
    "ResolvedLaunch",
    "ScriptResolver",
    "Selection",
    "ServiceDescriptor",
    "ServiceRegistry",
    "StreamName",
    "SupervisorState",
    "discover",
    "resolve_selection",
]
