"""member_etl.context

Explicit run context.  Everything a workflow needs to know about the run,
credentials included, travels in a RunContext built once by the CLI; nothing
is kept in module-level state.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

DEFAULT_DSN_ENV = "MEMBER_DB_DSN"


class MissingCredentialError(Exception):
    """Raised when no database credential can be resolved."""


@dataclass(frozen=True)
class RunContext:
    mode: str
    dry_run: bool = False
    db_dsn: str | None = field(default=None, repr=False)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def require_dsn(self) -> str:
        if not self.db_dsn:
            raise MissingCredentialError(f"mode '{self.mode}' needs a database DSN")
        return self.db_dsn


def resolve_db_dsn(
    explicit: str | None,
    env_name: str = DEFAULT_DSN_ENV,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Return the DSN: explicit value first, then the named env var.

    Raises:
        MissingCredentialError: If neither is set.
    """
    if explicit:
        return explicit
    env = os.environ if environ is None else environ
    dsn = env.get(env_name, "")
    if not dsn:
        raise MissingCredentialError(
            f"no --db-dsn given and env var {env_name} is not set"
        )
    return dsn
