from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol, Tuple

from common.totp import Instant, derive_code, seconds_remaining

from .models import Credential, Phase, Record


logger = logging.getLogger(__name__)


class LifecycleError(RuntimeError):
    """Base for domain errors; `kind` is a stable identifier for callers."""

    kind = "lifecycle_error"


class AlreadyHasSecret(LifecycleError):
    """A secret is already stored; reset before submitting another."""

    kind = "already_has_secret"


class SecretNotReady(LifecycleError):
    """No secret is stored yet, so no code can be derived."""

    kind = "secret_not_ready"


class RecordStore(Protocol):
    def read(self) -> Tuple[Record, Optional[str]]: ...

    def write(self, record: Record, *, if_match: Optional[str] = None) -> str: ...


class SecretLifecycle:
    """
    Two-phase state machine over the single stored record.

        init --submit_secret--> done --reset--> init
        init --reset--> init

    Each operation reads the record, decides, and writes back conditionally
    on the ETag it read. Store failures propagate unchanged and nothing is
    retried; a rejected operation never writes.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._record: Optional[Record] = None
        self._etag: Optional[str] = None

    def _load(self) -> Record:
        self._record, self._etag = self._store.read()
        return self._record

    def _persist(self, record: Record) -> None:
        self._etag = self._store.write(record, if_match=self._etag)
        self._record = record

    def instantiate(self) -> None:
        """Persist a fresh `init` record, replacing whatever was stored."""
        record = Record.initial()
        self._etag = self._store.write(record)
        self._record = record
        logger.info("Record instantiated")

    def current_phase(self) -> Phase:
        return self._load().phase

    def submit_secret(self, name: str, secret: str) -> None:
        if not secret:
            raise ValueError("secret must be non-empty")

        record = self._load()
        if record.phase == Phase.DONE:
            logger.warning("Rejected secret for %r: a secret is already stored", name)
            raise AlreadyHasSecret("Cannot add more than one secret; reset first")

        updated = record.model_copy(
            update={"phase": Phase.DONE, "credential": Credential(name=name, secret=secret)}
        )
        self._persist(updated)
        logger.info("Stored secret for %r", name)

    def reset(self) -> None:
        record = self._load()
        # Credential fields stay in place; `init` makes them unreachable.
        self._persist(record.model_copy(update={"phase": Phase.INIT}))
        logger.info("Record reset (previous phase: %s)", record.phase.value)

    def issue_token(
        self,
        now: Optional[Instant] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> Tuple[str, int]:
        """Return `(token, valid_for)` for the stored secret at `now`.

        Raises SecretNotReady while no secret is stored.
        """
        credential = self._load().active_credential
        if credential is None:
            logger.warning("Token requested before a secret was submitted")
            raise SecretNotReady("Can't compute a token until the secret is loaded")

        if now is None:
            now = clock()
        token = derive_code(credential.secret.encode("utf-8"), now)
        return token, seconds_remaining(now)
