from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Phase(str, Enum):
    """Lifecycle tag of the stored record."""

    INIT = "init"
    DONE = "done"


class Credential(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", description="Human label, e.g. an account identifier")
    secret: str = Field(default="", description="Raw shared-secret material")


class Record(BaseModel):
    """
    The single persisted unit of state, serialized to JSON and encrypted at rest.

    Fields
    - phase: `init` while no usable secret is stored, `done` once one is.
    - credential: the `{name, secret}` pair submitted in the current cycle.

    Notes
    - While `phase` is `init` the credential is logically unset. Its fields may
      still hold the previous cycle's values (reset only flips the phase), so
      readers must go through `active_credential`.
    - Persisted by phase name; there is no numeric encoding of the phase.
    """

    model_config = ConfigDict(extra="forbid")

    phase: Phase = Field(default=Phase.INIT)
    credential: Credential = Field(default_factory=Credential)

    @classmethod
    def initial(cls) -> "Record":
        """Fresh record as created at instantiation."""
        return cls()

    @property
    def active_credential(self) -> Optional[Credential]:
        if self.phase == Phase.DONE:
            return self.credential
        return None
