"""Error taxonomy for the signing gateway.

Every per-request failure is a GatewayError carrying a JSON-RPC error code,
so the dispatcher can render it into a reply that echoes the request id.
ConfigError is the only error allowed to stop the process from serving.
"""


class ConfigError(Exception):
    """Invalid startup configuration."""
    pass


class GatewayError(Exception):
    """Base class for errors rendered as JSON-RPC error objects."""

    code = -32603

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ParseError(GatewayError):
    """Request body is not valid JSON."""
    code = -32700


class InvalidRequest(GatewayError):
    """Request body is not a JSON-RPC request object."""
    code = -32600


class InvalidParams(GatewayError):
    """Malformed or missing call parameters (client-caused)."""
    code = -32602


class InternalError(GatewayError):
    """Unexpected fault while handling a call."""
    code = -32603


class BackendConnectError(GatewayError):
    """Resolving a key identifier against the backend failed."""
    code = -32001


class KeyNotFoundError(BackendConnectError):
    """The backend does not hold the requested key."""
    pass


class SigningFailed(GatewayError):
    """Backend rejected or faulted while producing a signature."""
    code = -32002


class UpstreamUnavailable(GatewayError):
    """Upstream node unreachable or returned an unparsable reply."""
    code = -32003


class RequestTimeout(GatewayError):
    """Local handling exceeded the configured request timeout."""
    code = -32004
