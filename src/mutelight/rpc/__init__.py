"""Voice client RPC clients."""

from .base import RpcClient, RpcConnectionError, RpcError, is_expected_absence
from .ipc import DiscordIpcClient

__all__ = [
    "RpcClient",
    "RpcConnectionError",
    "RpcError",
    "is_expected_absence",
    "DiscordIpcClient",
]
