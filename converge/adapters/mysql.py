"""
MariaDB/MySQL: a schema plus the grants of its service user.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import ConfigError
from ..model import ProbeResult, ResourceDescriptor
from ..runner import Runner
from .base import Adapter

DEFAULT_HOSTS = ("localhost", "%")


def sql_quote(s: str) -> str:
    return "'" + str(s).replace("\\", "\\\\").replace("'", "\\'") + "'"


def sql_ident(s: str) -> str:
    return "`" + str(s).replace("`", "``") + "`"


class DatabaseAdapter(Adapter):
    kind = "database"
    system = "mysql"
    attributes = ("grants",)

    def __init__(
        self,
        runner: Runner,
        *,
        defaults_file: Optional[str] = None,
        host: Optional[str] = None,
        user: Optional[str] = None,
    ) -> None:
        super().__init__(runner)
        self.defaults_file = defaults_file
        self.host = host
        self.user = user

    def validate(self, desc: ResourceDescriptor) -> None:
        if not desc.get("user"):
            raise ConfigError(f"{desc.key}: 'user' is required")
        if not desc.get("password"):
            raise ConfigError(f"{desc.key}: 'password' is required")

    def hosts(self, desc: ResourceDescriptor) -> List[str]:
        return list(desc.get("hosts") or DEFAULT_HOSTS)

    def expected(self, desc: ResourceDescriptor) -> Dict[str, Any]:
        return {"exists": True, "grants": sorted(self.hosts(desc))}

    def diff(self, desc: ResourceDescriptor, observed: ProbeResult):
        if not observed.exists:
            return {"exists": (True, observed.exists)}
        want = sorted(self.hosts(desc))
        got = sorted(observed.attributes.get("grants") or [])
        missing = [h for h in want if h not in got]
        return {"grants": (want, got)} if missing else {}

    def base_args(self) -> List[str]:
        args: List[str] = []
        # --defaults-file must come first on the mysql command line
        if self.defaults_file:
            args.append(f"--defaults-file={self.defaults_file}")
        if self.host:
            args += ["-h", self.host]
        if self.user:
            args += ["-u", self.user]
        return args + ["-N", "-B"]

    def sql(self, statement: str) -> List[str]:
        cp = self.query("mysql", *self.base_args(), "-e", statement)
        return [line for line in cp.stdout.splitlines() if line.strip()]

    def probe(self, desc: ResourceDescriptor) -> ProbeResult:
        name = desc.identifier
        rows = self.sql(
            "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA "
            f"WHERE SCHEMA_NAME = {sql_quote(name)}"
        )
        if not rows:
            return ProbeResult.missing()
        hosts = self.sql(
            "SELECT Host FROM mysql.db "
            f"WHERE Db = {sql_quote(name)} AND User = {sql_quote(desc.get('user'))}"
        )
        return ProbeResult(True, {"grants": sorted(h.strip() for h in hosts)})

    def apply(self, desc: ResourceDescriptor, observed: ProbeResult) -> None:
        name = desc.identifier
        user = desc.get("user")
        password = desc.get("password")
        statements = [f"CREATE DATABASE IF NOT EXISTS {sql_ident(name)};"]
        for host in self.hosts(desc):
            account = f"{sql_quote(user)}@{sql_quote(host)}"
            statements.append(
                f"CREATE USER IF NOT EXISTS {account} IDENTIFIED BY {sql_quote(password)};"
            )
            statements.append(f"GRANT ALL PRIVILEGES ON {sql_ident(name)}.* TO {account};")
        statements.append("FLUSH PRIVILEGES;")
        # Fed on stdin so the password never shows up in the process list
        self.act("mysql", *self.base_args(), input="\n".join(statements) + "\n")
