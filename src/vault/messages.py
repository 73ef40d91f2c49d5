from __future__ import annotations

from typing import Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Msg(BaseModel):
    model_config = ConfigDict(extra="forbid")


class InstantiateMsg(_Msg):
    op: Literal["instantiate"] = "instantiate"


class SubmitSecretMsg(_Msg):
    op: Literal["submit_secret"] = "submit_secret"
    name: str = Field(..., description="Account label")
    secret: str = Field(..., min_length=1, description="Raw shared secret")


class ResetMsg(_Msg):
    op: Literal["reset"] = "reset"


class GetTokenMsg(_Msg):
    op: Literal["get_token"] = "get_token"


Request = Union[InstantiateMsg, SubmitSecretMsg, ResetMsg, GetTokenMsg]

_BY_NAME = {
    "instantiate": InstantiateMsg,
    "submit_secret": SubmitSecretMsg,
    "reset": ResetMsg,
    "get_token": GetTokenMsg,
}


class TokenResponse(BaseModel):
    token: str = Field(..., pattern=r"^[0-9]{6}$")
    valid_for: int = Field(..., ge=1, le=30, description="Seconds until the code rolls over")


class ErrorResponse(BaseModel):
    ok: Literal[False] = False
    error: str
    message: str


class UnknownOperation(ValueError):
    """The request does not name exactly one known operation."""


def parse_request(event: Dict[str, Any]) -> Request:
    """Parse `{"<operation>": {...args}}` into a typed request.

    Raises UnknownOperation for an unrecognized shape and
    pydantic.ValidationError for bad arguments.
    """
    if not isinstance(event, dict) or len(event) != 1:
        raise UnknownOperation("request must contain exactly one operation")
    name, args = next(iter(event.items()))
    model = _BY_NAME.get(name)
    if model is None:
        raise UnknownOperation(f"unknown operation: {name!r}")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise UnknownOperation(f"arguments for {name!r} must be an object")
    return model.model_validate(args)
