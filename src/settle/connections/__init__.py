"""
Settle Connections Module

Remote execution channels: SSH (asyncssh) and local.
"""

from settle.connections.base import Connection, RunResult, create_connection
from settle.connections.local import LocalConnection

__all__ = [
    'Connection',
    'RunResult',
    'LocalConnection',
    'create_connection',
]
