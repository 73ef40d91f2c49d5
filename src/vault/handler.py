from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from state.lifecycle import LifecycleError, RecordStore, SecretLifecycle
from state.s3_store import S3RecordStore
from vault.messages import (
    ErrorResponse,
    GetTokenMsg,
    InstantiateMsg,
    ResetMsg,
    SubmitSecretMsg,
    TokenResponse,
    UnknownOperation,
    parse_request,
)


logger = logging.getLogger(__name__)

# Environment configuration
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_KEY = "STATE_KEY"  # optional; defaults to "record.json"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_LOG_LEVEL = "LOG_LEVEL"

# Prefixed fallbacks
FALLBACK_ENV_STATE_BUCKET = "VAULT_STATE_BUCKET"
FALLBACK_ENV_STATE_KEY = "VAULT_STATE_KEY"
FALLBACK_ENV_PARAM_PREFIX = "VAULT_PARAM_PREFIX"

DEFAULT_STATE_KEY = "record.json"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    import boto3
    from botocore.exceptions import ClientError

    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def _configure_logging() -> None:
    level = _getenv(ENV_LOG_LEVEL)
    if not level:
        return
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        logger.warning("Ignoring unknown %s=%r", ENV_LOG_LEVEL, level)
        return
    logging.getLogger().setLevel(value)


def _store_from_env() -> S3RecordStore:
    bucket = _getenv(ENV_STATE_BUCKET) or _getenv(FALLBACK_ENV_STATE_BUCKET)
    key = _getenv(ENV_STATE_KEY) or _getenv(FALLBACK_ENV_STATE_KEY, DEFAULT_STATE_KEY)
    prefix = _getenv(ENV_PARAM_PREFIX) or _getenv(FALLBACK_ENV_PARAM_PREFIX)

    bucket = _require(bucket, ENV_STATE_BUCKET)
    prefix = _require(prefix, ENV_PARAM_PREFIX)

    params = _load_ssm_params(prefix, ["fernet_key"])
    fernet_key = _require(params.get("fernet_key"), f"{prefix}fernet_key")
    return S3RecordStore(bucket=bucket, key=key, fernet_key=fernet_key)


def _error(kind: str, message: str) -> Dict[str, Any]:
    return ErrorResponse(error=kind, message=message).model_dump()


def run_once(
    event: Dict[str, Any],
    *,
    store: Optional[RecordStore] = None,
    clock: Callable[[], float] = time.time,
) -> Dict[str, Any]:
    """
    Dispatch one request against the stored record.

    - `{"instantiate": {}}` writes a fresh record.
    - `{"submit_secret": {"name": ..., "secret": ...}}` stores a secret.
    - `{"reset": {}}` returns the record to the init phase.
    - `{"get_token": {}}` returns `{"token": "123456", "valid_for": N}`.

    Domain and request errors come back as `{"ok": False, "error": kind, "message": ...}`.
    Store errors propagate so the invocation fails without a partial write.
    """
    try:
        msg = parse_request(event)
    except (UnknownOperation, ValidationError) as e:
        logger.warning("Invalid request: %s", e)
        return _error("invalid_request", str(e))

    lifecycle = SecretLifecycle(store if store is not None else _store_from_env())

    try:
        if isinstance(msg, InstantiateMsg):
            lifecycle.instantiate()
            return {"ok": True}
        if isinstance(msg, SubmitSecretMsg):
            lifecycle.submit_secret(msg.name, msg.secret)
            return {"ok": True}
        if isinstance(msg, ResetMsg):
            lifecycle.reset()
            return {"ok": True, "action": "reset state"}
        if isinstance(msg, GetTokenMsg):
            token, valid_for = lifecycle.issue_token(clock=clock)
            resp = TokenResponse(token=token, valid_for=valid_for)
            return {"ok": True, **resp.model_dump()}
    except LifecycleError as e:
        return _error(e.kind, str(e))

    raise AssertionError(f"unhandled request type: {type(msg).__name__}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for the single-secret authenticator.

    Environment:
    - STATE_BUCKET, STATE_KEY (default: record.json), PARAM_PREFIX, LOG_LEVEL
    - Fallbacks: VAULT_STATE_BUCKET, VAULT_STATE_KEY, VAULT_PARAM_PREFIX
    - SSM under PARAM_PREFIX must provide: fernet_key
    """
    _configure_logging()
    return run_once(event)
