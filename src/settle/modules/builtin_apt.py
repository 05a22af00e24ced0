"""
Settle apt module

Manage packages with apt on Debian/Ubuntu hosts.
"""

from settle.engine.playbook import ModuleKind
from settle.modules.base import register_module, to_bool
from settle.modules.builtin_package import AptBackend, PackageBackend, PackageModule


@register_module
class AptModule(PackageModule):
    """
    Manage apt packages.

    Same semantics as ``package`` with the backend fixed to apt, plus
    ``purge`` for removals.
    """

    kind = ModuleKind.APT
    required_args = ["name"]
    optional_args = {
        "state": "present",
        "version": None,
        "update_cache": False,
        "purge": False,
    }
    choices = {
        "state": ("present", "absent", "latest"),
    }
    bool_args = ["update_cache", "purge"]

    async def _backend(self) -> PackageBackend:
        return AptBackend(self)

    def _purge(self) -> bool:
        return to_bool(self.get_arg("purge"), "purge")
