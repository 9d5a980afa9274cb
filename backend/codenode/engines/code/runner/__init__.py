"""
Isolated runner backend: a worker subprocess speaking line-delimited JSON.

Exports: IsolatedRunnerClient, encode_message, decode_message, ProtocolError.
"""

from .client import IsolatedRunnerClient
from .protocol import ProtocolError, decode_message, encode_message

__all__ = [
    "IsolatedRunnerClient",
    "ProtocolError",
    "decode_message",
    "encode_message",
]
