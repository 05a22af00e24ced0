"""
Settle ping module

A trivial test module that returns 'pong' on success.
"""

from settle.engine.playbook import ModuleKind
from settle.modules.base import Module, Probe, register_module


@register_module
class PingModule(Module):
    """
    Verify that a host is reachable and can run commands.

    Always matches; the probe fails only when the channel cannot run ``true``.
    """

    kind = ModuleKind.PING
    required_args = []
    optional_args = {
        "data": "pong",
    }

    async def probe(self) -> Probe:
        await self.check("true", "remote shell not usable", become=False)
        data = self.get_arg("data")
        self.data["ping"] = data
        return Probe(matches=True, msg=data)

    async def apply(self, probe: Probe) -> None:
        # Nothing to change; probe always matches
        return None
