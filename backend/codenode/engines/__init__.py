"""
Engines: code execution over workflow items.

CodeExecutor is the entry point; the code engine holds both backends
(RestrictedPython in-process and the isolated runner).
"""

from codenode.engines.code import InProcessSandbox, IsolatedRunnerClient
from codenode.engines.executor import CodeExecutor, SandboxBackend

__all__ = [
    "CodeExecutor",
    "InProcessSandbox",
    "IsolatedRunnerClient",
    "SandboxBackend",
]
