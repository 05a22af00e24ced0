# Copyright (c) 2024 Settle Contributors
# MIT License

"""Settle release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Settle Contributors"
__codename__ = "Steady"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)
