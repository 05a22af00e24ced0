"""
Settle command module

Execute commands on target hosts.
"""

import shlex

from settle.engine.playbook import ModuleKind
from settle.modules.base import Module, Probe, register_module


@register_module
class CommandModule(Module):
    """
    Execute a command on target hosts.

    A command has no observable desired state, so without ``creates`` or
    ``removes`` it never matches and always reports changed. With them,
    the presence (or absence) of a path stands in for "already done".
    """

    kind = ModuleKind.COMMAND
    required_args = ["cmd"]
    optional_args = {
        "chdir": None,
        "creates": None,
        "removes": None,
    }
    verify_after_apply = False

    async def probe(self) -> Probe:
        cmd = self.args["cmd"]
        creates = self.get_arg("creates")
        removes = self.get_arg("removes")

        # Check 'creates' - done if file exists
        if creates:
            stat_result = await self.connection.stat(creates)
            if stat_result and stat_result.get("exists"):
                return Probe(matches=True, msg=f"skipped, since {creates} exists")

        # Check 'removes' - done if file doesn't exist
        if removes:
            stat_result = await self.connection.stat(removes)
            if not stat_result or not stat_result.get("exists"):
                return Probe(matches=True, msg=f"skipped, since {removes} does not exist")

        return Probe(
            matches=False,
            diff={"before": {}, "after": {"command": cmd}},
            msg=f"would run: {cmd}",
        )

    async def apply(self, probe: Probe) -> None:
        cmd = self.args["cmd"]
        chdir = self.get_arg("chdir")
        if chdir:
            cmd = f"cd {shlex.quote(chdir)} && {cmd}"

        result = await self.run(cmd)
        self.data.update({
            "rc": result.rc,
            "stdout": result.stdout.rstrip("\n"),
            "stderr": result.stderr.rstrip("\n"),
        })
        if result.rc != 0:
            raise self.fail(f"non-zero return code {result.rc}", result)
