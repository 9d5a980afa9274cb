"""
Code engine: user code over workflow items (RestrictedPython in-process, or the isolated runner).

Exports: InProcessSandbox, IsolatedRunnerClient, HelperContext, build_helper_context, Whitelist, get_whitelist.
"""

from .context import ExecutionContext, HelperContext, build_execution_context, build_helper_context
from .executor import InProcessSandbox, SandboxState
from .runner import IsolatedRunnerClient
from .whitelist import Whitelist, get_whitelist

__all__ = [
    "ExecutionContext",
    "HelperContext",
    "InProcessSandbox",
    "IsolatedRunnerClient",
    "SandboxState",
    "Whitelist",
    "build_execution_context",
    "build_helper_context",
    "get_whitelist",
]
