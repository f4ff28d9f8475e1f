"""Execution backends that run commands on behalf of a session.

Provides the ExecutionBackend protocol with a local subprocess
implementation and a Docker container implementation.
"""

from sandboxer.terminal.protocol import ExecutionBackend, ServerHandle
from sandboxer.terminal.result import ExecutionResult
from sandboxer.terminal.subprocess_executor import LocalProcessBackend

__all__ = [
    "ExecutionBackend",
    "ExecutionResult",
    "LocalProcessBackend",
    "ServerHandle",
]

# ContainerBackend is imported separately from
# sandboxer.terminal.container_executor so the docker client is only
# touched in container mode
