"""
Command execution, locally or on the target host over SSH.

execute() never raises for a non-zero exit: the exit code, stdout and
stderr are handed back and the caller decides what they mean.
"""

from __future__ import annotations

import dataclasses
import os
import subprocess
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .util import MASK, URL_CREDENTIALS, eprint, shell_escape, shell_join

TIMEOUT_EXIT = 124
NOT_FOUND_EXIT = 127


@dataclasses.dataclass(frozen=True)
class CommandResult:
    argv: List[str]
    exit_code: int
    stdout: str
    stderr: str
    # values that must never be shown, e.g. a password passed on argv
    secrets: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def mask(self, text: str) -> str:
        for s in self.secrets:
            if s:
                text = text.replace(s, MASK)
        return URL_CREDENTIALS.sub(rf"\1{MASK}@", text)

    def display(self) -> str:
        return shell_join(self.mask(str(a)) for a in self.argv)


# -------------------------
# SSH transport
# -------------------------


@dataclasses.dataclass
class SSH:
    host: str
    user: str
    port: int
    timeout: int
    proxy_jump: Optional[str]

    def cmd_base(self) -> List[str]:
        cmd = [
            "ssh",
            "-p",
            str(self.port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self.timeout}",
        ]
        if self.proxy_jump:
            cmd += ["-J", self.proxy_jump]
        return cmd

    def wrap(
        self, argv: Sequence[str], env: Mapping[str, str], *, sudo: bool
    ) -> List[str]:
        exports = "".join(
            f"export {k}={shell_escape(v)}; " for k, v in sorted(env.items())
        )
        remote_cmd = exports + shell_join(argv)
        if sudo:
            remote_cmd = f"sudo -n bash -lc {shell_escape(remote_cmd)}"
        else:
            remote_cmd = f"bash -lc {shell_escape(remote_cmd)}"
        return self.cmd_base() + [f"{self.user}@{self.host}", remote_cmd]


# -------------------------
# Runner
# -------------------------


@dataclasses.dataclass
class Runner:
    sudo: bool = False
    timeout: int = 120
    dry_run: bool = False
    verbose: bool = False
    env: Dict[str, str] = dataclasses.field(default_factory=dict)
    ssh: Optional[SSH] = None

    def build(self, command: str, args: Sequence[str]) -> List[str]:
        argv = [command] + [str(a) for a in args]
        if self.ssh is not None:
            return self.ssh.wrap(argv, self.env, sudo=self.sudo)
        if self.sudo:
            prefix = ["sudo", "-n"]
            if self.env:
                prefix += ["env"] + [f"{k}={v}" for k, v in sorted(self.env.items())]
            return prefix + argv
        return argv

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        input: Optional[str] = None,
        mutating: bool = True,
        timeout: Optional[int] = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        argv = [command] + [str(a) for a in args]
        full = self.build(command, args)
        hidden = tuple(str(s) for s in secrets if s)
        shown = CommandResult(argv, 0, "", "", hidden)

        if mutating and self.dry_run:
            eprint(f"DRY-RUN: {shown.display()}")
            return shown
        if self.verbose:
            eprint(f"+ {shown.display()}")

        env = None
        if self.env and self.ssh is None and not self.sudo:
            env = dict(os.environ)
            env.update(self.env)

        try:
            cp = subprocess.run(
                full,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(argv, TIMEOUT_EXIT, "", "timeout", hidden)
        except FileNotFoundError:
            return CommandResult(argv, NOT_FOUND_EXIT, "", f"{full[0]}: command not found", hidden)
        return CommandResult(
            argv, cp.returncode, (cp.stdout or "").strip(), (cp.stderr or "").strip(), hidden
        )
