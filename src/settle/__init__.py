# Copyright (c) 2024 Settle Contributors
# MIT License

"""
Settle: minimal idempotent remote-configuration applier.

Reads a static inventory and a YAML play file, discovers host facts, and
converges every host to the declared state through idempotent modules.

Features:
    - Probe / apply / re-probe reconciliation for every task
    - Per-host fail-fast with independent, concurrent hosts
    - SSH (asyncssh) and local connections
    - Check mode that never mutates remote state

This package exposes the CLI entry point and release metadata.
"""

from __future__ import annotations

from settle.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
