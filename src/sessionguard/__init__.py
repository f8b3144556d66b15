"""
sessionguard - supervision for a messaging session plus a throttled work queue
"""

__version__ = "0.1.0"

from sessionguard.queue import BatchQueue
from sessionguard.supervisor import ConnectionSupervisor, ReconnectPolicy
from sessionguard.version import VersionCache
from sessionguard.types import (
    ConnectionState,
    ConnectionUpdate,
    Message,
    SessionEvent,
    VersionDescriptor,
)

__all__ = [
    "BatchQueue",
    "ConnectionState",
    "ConnectionSupervisor",
    "ConnectionUpdate",
    "Message",
    "ReconnectPolicy",
    "SessionEvent",
    "VersionCache",
    "VersionDescriptor",
    "__version__",
]
