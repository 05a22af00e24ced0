"""
Settle Facts

Per-host facts are the read-only input to guard evaluation and parameter
templating. They are assembled once at play start and never change.
"""

from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from settle.engine.inventory import Host

FactSet = Mapping[str, Any]

# Facts reported by the setup module
DISCOVERED_FACTS = (
    'os_family',
    'system',
    'distribution',
    'distribution_version',
    'hostname',
    'architecture',
    'pkg_mgr',
    'service_mgr',
)


def build_facts(
    host: Host,
    play_vars: Optional[Mapping[str, Any]] = None,
    discovered: Optional[Mapping[str, Any]] = None,
) -> FactSet:
    """
    Assemble the immutable fact mapping for a host.

    Precedence (lowest first): inventory vars, play vars, discovered facts.
    Discovered facts are also exposed under ``facts`` as a nested mapping.
    """
    merged: Dict[str, Any] = host.get_vars()
    if play_vars:
        merged.update(play_vars)
    if discovered:
        merged.update(discovered)
        merged['facts'] = MappingProxyType(dict(discovered))
    return MappingProxyType(merged)
