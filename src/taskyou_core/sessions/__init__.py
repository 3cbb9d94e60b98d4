from .manager import InteractiveSession, SessionClient, SessionManager
from .sandbox import ProcessSandboxProvider, ProcessSandboxStream, SandboxProvider, SandboxStream

__all__ = [
    "InteractiveSession",
    "ProcessSandboxProvider",
    "ProcessSandboxStream",
    "SandboxProvider",
    "SandboxStream",
    "SessionClient",
    "SessionManager",
]
