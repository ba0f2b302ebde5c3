"""JSON-RPC 2.0 request/reply contracts."""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from signerproxy.errors import GatewayError

RequestId = Optional[Union[int, str]]

# Deeper bodies are refused before json.loads sees them
MAX_REQUEST_DEPTH = 256
MAX_REPLY_DEPTH = 2048


def _nesting_exceeds(body: bytes, limit: int) -> bool:
    depth = 0
    in_string = escaped = False
    for byte in body:
        if in_string:
            if escaped:
                escaped = False
            elif byte == 0x5C:  # backslash
                escaped = True
            elif byte == 0x22:
                in_string = False
        elif byte == 0x22:
            in_string = True
        elif byte in b"[{":
            depth += 1
            if depth > limit:
                return True
        elif byte in b"]}":
            depth -= 1
    return False


def parse_json(body: bytes, max_depth: int = MAX_REQUEST_DEPTH) -> Any:
    """Decode a JSON document with bounded nesting.

    Raises:
        ValueError: If the body is not JSON or nests deeper than max_depth
    """
    if _nesting_exceeds(body, max_depth):
        raise ValueError(f"JSON nested deeper than {max_depth} levels")
    try:
        return json.loads(body)
    except RecursionError:
        raise ValueError("JSON nested too deeply")


class JsonRpcRequest(BaseModel):
    """An incoming JSON-RPC call."""

    jsonrpc: str = Field(default="2.0", description="Protocol version")
    method: str = Field(..., description="Method name")
    id: RequestId = Field(default=None, description="Echoed back in the reply")
    params: Optional[Union[list[Any], dict[str, Any]]] = Field(
        default=None, description="Positional (or named) parameters"
    )


class JsonRpcErrorObject(BaseModel):
    code: int
    message: str


class JsonRpcReply(BaseModel):
    """A JSON-RPC reply carrying exactly one of result or error."""

    id: RequestId = None
    jsonrpc: str = "2.0"
    result: Any = None
    error: Optional[JsonRpcErrorObject] = None

    @classmethod
    def success(cls, request: JsonRpcRequest, result: Any) -> "JsonRpcReply":
        return cls(id=request.id, jsonrpc=request.jsonrpc, result=result)

    @classmethod
    def failure(
        cls,
        request_id: RequestId,
        error: GatewayError,
        jsonrpc: str = "2.0",
    ) -> "JsonRpcReply":
        return cls(
            id=request_id,
            jsonrpc=jsonrpc,
            error=JsonRpcErrorObject(code=error.code, message=error.message),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "jsonrpc": self.jsonrpc}
        if self.error is not None:
            data["error"] = self.error.model_dump()
        else:
            data["result"] = self.result
        return data


@dataclass(frozen=True)
class RawReply:
    """Reply bytes relayed verbatim from the upstream node."""

    body: bytes
    status_code: int = 200
    media_type: str = "application/json"


class AddressResponse(BaseModel):
    """Response for the per-key address lookup."""

    address: str = Field(..., description="EIP-55 checksummed account address")
