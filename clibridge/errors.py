from typing import Any, Dict, Optional

# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined codes
SECURITY_REJECTED = -32001
NOT_INITIALIZED = -32002

class BridgeError(Exception):
    """Base class for errors that are reported to the client as JSON-RPC errors."""
    code = INTERNAL_ERROR

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        err: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err

class InvalidParamsError(BridgeError):
    code = INVALID_PARAMS

class NegotiationError(InvalidParamsError):
    pass

class SequenceError(BridgeError):
    code = NOT_INITIALIZED

class SecurityError(BridgeError):
    code = SECURITY_REJECTED

class UnknownToolError(InvalidParamsError):
    pass

class InvalidArgumentsError(InvalidParamsError):
    pass

class ParseError(BridgeError):
    code = PARSE_ERROR

class InvalidRequestError(BridgeError):
    code = INVALID_REQUEST

class MethodNotFoundError(BridgeError):
    code = METHOD_NOT_FOUND

class ConfigurationError(Exception):
    """Malformed command tree or policy. Fatal at startup, never sent on the wire."""
    pass
