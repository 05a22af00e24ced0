"""
Settle copy module

Copy files to remote hosts.
"""

import hashlib
import shlex
import uuid
from pathlib import Path
from typing import Optional

from settle.engine.playbook import ModuleKind
from settle.modules.base import Module, Probe, normalize_mode, register_module

# Mode given to newly created files when none is requested
DEFAULT_MODE = "0644"


@register_module
class CopyModule(Module):
    """
    Copy files from the control node to target hosts.

    Supports:
    - File copying (``src``, relative to the play file)
    - Content-based copying (inline ``content``)
    - Idempotency via SHA-1 checksum and mode comparison
    """

    kind = ModuleKind.COPY
    required_args = ["dest"]
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("src") is None and self.get_arg("content") is None:
            return "Either 'src' or 'content' is required"
        if self.get_arg("src") is not None and self.get_arg("content") is not None:
            return "'src' and 'content' are mutually exclusive"
        return None

    def _payload(self) -> bytes:
        content = self.get_arg("content")
        if content is not None:
            if isinstance(content, bytes):
                return content
            return str(content).encode("utf-8")

        src = Path(self.get_arg("src")).expanduser()
        if not src.is_absolute():
            src = self.context.base_dir / src
        try:
            return src.read_bytes()
        except OSError as e:
            raise self.fail(f"cannot read source {src}: {e.strerror or e}")

    async def probe(self) -> Probe:
        dest = self.args["dest"]
        payload = self._payload()
        checksum = hashlib.sha1(payload).hexdigest()
        mode = normalize_mode(self.get_arg("mode"))
        self.data["checksum"] = checksum

        stat = await self.connection.stat(dest)
        if stat and stat["isdir"]:
            raise self.fail(f"dest {dest} is a directory")

        current = {"exists": bool(stat), "checksum": None, "mode": None}
        if stat:
            result = await self.check(f"sha1sum {shlex.quote(dest)}", "cannot checksum dest")
            current["checksum"] = result.stdout.split()[0] if result.stdout.strip() else None
            current["mode"] = stat["mode"]

        before = {"dest": dest, "checksum": current["checksum"]}
        after = {"dest": dest, "checksum": checksum}
        matches = current["checksum"] == checksum
        if mode:
            before["mode"] = current["mode"]
            after["mode"] = mode
            matches = matches and current["mode"] == mode

        return Probe(matches=matches, diff={"before": before, "after": after}, current=current)

    async def apply(self, probe: Probe) -> None:
        dest = self.args["dest"]
        mode = normalize_mode(self.get_arg("mode"))
        checksum = self.data.get("checksum")

        if probe.current["checksum"] == checksum:
            # Only the mode differs
            await self.check(f"chmod {mode} {shlex.quote(dest)}", "cannot set mode")
            return

        target_mode = mode or probe.current["mode"] or DEFAULT_MODE
        tmp = f"/tmp/.settle-{uuid.uuid4().hex}"
        await self.connection.put_content(self._payload(), tmp, mode="0600")
        try:
            await self.check(
                f"install -m {target_mode} {shlex.quote(tmp)} {shlex.quote(dest)}",
                f"cannot write {dest}",
            )
        finally:
            await self.run(f"rm -f {shlex.quote(tmp)}", become=False)
