"""
Helper modules exposed to user code: log capture, env, http.
"""

from codenode.engines.code.modules.env import make_env_module
from codenode.engines.code.modules.http import make_http_module
from codenode.engines.code.modules.log import (
    LogCapture,
    make_log_module,
    make_print_collector,
    make_print_function,
)

__all__ = [
    "LogCapture",
    "make_log_module",
    "make_print_collector",
    "make_print_function",
    "make_env_module",
    "make_http_module",
]
