"""
Settle Modules

Built-in idempotent modules, one per task kind.
"""

from settle.modules.base import Module, Probe, get_module, list_modules, register_module

__all__ = [
    'Module',
    'Probe',
    'get_module',
    'list_modules',
    'register_module',
]
