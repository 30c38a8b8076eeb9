"""Protocol sessions.

One ProtocolSession per client connection. A session walks
uninitialized -> negotiated -> closed and answers the JSON-RPC subset the
bridge implements: initialize, notifications/initialized, ping, tools/list
and tools/call. The Bridge object it reads from is shared by every session
and never mutated after startup.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from .catalog import Catalog
from .errors import (
    BridgeError, InvalidParamsError, InvalidRequestError, MethodNotFoundError,
    NegotiationError, SequenceError,
)
from .executor import ExecutionMapper
from .models import SessionState
from .utils import logger

UNINITIALIZED = "uninitialized"
NEGOTIATED = "negotiated"
CLOSED = "closed"

SUPPORTED_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

class Bridge:
    """Immutable state shared by all sessions."""

    def __init__(self, catalog: Catalog, mapper: ExecutionMapper,
                 supported_versions: Iterable[str] = SUPPORTED_VERSIONS,
                 server_name: str = "clibridge", server_version: str = "0.1.0"):
        self.catalog = catalog
        self.mapper = mapper
        self.supported_versions = tuple(supported_versions)
        self.server_info = {"name": server_name, "version": server_version}

def response(req_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": result}

def error_response(req_id: Any, error: BridgeError) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": error.to_dict()}

class ProtocolSession:
    def __init__(self, bridge: Bridge, session_id: Optional[str] = None):
        self.bridge = bridge
        self.session_id = session_id or uuid.uuid4().hex
        self.state = UNINITIALIZED
        self.info = SessionState()
        self._lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task] = set()
        self.last_active = time.monotonic()

    @property
    def negotiated(self) -> bool:
        return self.state == NEGOTIATED

    def _require_negotiated(self, operation: str):
        if self.state == CLOSED:
            raise SequenceError(f"Session is closed: '{operation}' is no longer available.")
        if self.state != NEGOTIATED:
            raise SequenceError(f"Session not initialized: send 'initialize' before '{operation}'.")

    def initialize(self, protocol_version: Any, client_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.state == CLOSED:
            raise SequenceError("Session is closed.")
        if protocol_version not in self.bridge.supported_versions:
            logger.info(f"Session {self.session_id}: rejected protocol version {protocol_version!r}")
            raise NegotiationError(
                f"Unsupported protocol version: {protocol_version!r}",
                data={"supported": list(self.bridge.supported_versions), "requested": protocol_version},
            )
        self.state = NEGOTIATED
        self.info = SessionState(negotiated=True, protocol_version=protocol_version,
                                 client_info=dict(client_info or {}))
        client = self.info.client_info.get("name", "unknown client")
        logger.info(f"Session {self.session_id}: negotiated {protocol_version} with {client}")
        return {
            "protocolVersion": protocol_version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": dict(self.bridge.server_info),
        }

    def list_tools(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """Single-page listing: any cursor is accepted and ignored."""
        self._require_negotiated("tools/list")
        return {
            "tools": [tool.to_dict() for tool in self.bridge.catalog],
            "nextCursor": None,
        }

    async def call_tool(self, name: Any, arguments: Any = None) -> Dict[str, Any]:
        self._require_negotiated("tools/call")
        task = asyncio.ensure_future(self.bridge.mapper.execute(name, arguments))
        self._inflight.add(task)
        try:
            result = await task
        except asyncio.CancelledError:
            if self.state == CLOSED:
                raise SequenceError(f"Session closed while '{name}' was running.")
            raise
        finally:
            self._inflight.discard(task)
            self.last_active = time.monotonic()
        return result.to_dict()

    @property
    def busy(self) -> bool:
        return bool(self._inflight)

    def close(self):
        """Moves to the terminal state and cancels in-flight calls, which kills their processes."""
        if self.state == CLOSED:
            return
        self.state = CLOSED
        for task in list(self._inflight):
            task.cancel()
        logger.info(f"Session {self.session_id}: closed ({len(self._inflight)} in-flight calls cancelled)")

    async def _dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        if method == "initialize":
            version = params.get("protocolVersion")
            if not isinstance(version, str):
                raise InvalidParamsError("'protocolVersion' must be a string.")
            client_info = params.get("clientInfo")
            if client_info is not None and not isinstance(client_info, dict):
                raise InvalidParamsError("'clientInfo' must be an object.")
            return self.initialize(version, client_info)
        if method == "ping":
            if self.state == CLOSED:
                raise SequenceError("Session is closed.")
            return {}
        if method == "tools/list":
            return self.list_tools(params.get("cursor"))
        if method == "tools/call":
            return await self.call_tool(params.get("name"), params.get("arguments"))
        if method.startswith("notifications/"):
            return None
        raise MethodNotFoundError(f"Method not found: {method}")

    async def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Handles one JSON-RPC message. Returns None for notifications and client responses."""
        if not isinstance(message, dict):
            return error_response(None, InvalidRequestError("Invalid Request: expected a JSON object."))
        req_id = message.get("id")
        method = message.get("method")
        if method is None and ("result" in message or "error" in message):
            return None
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return error_response(req_id, InvalidRequestError("Invalid Request"))
        is_notification = "id" not in message
        self.last_active = time.monotonic()

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            if is_notification:
                return None
            return error_response(req_id, InvalidParamsError("'params' must be an object."))

        async with self._lock:
            try:
                result = await self._dispatch(method, params)
            except BridgeError as e:
                if is_notification:
                    logger.debug(f"Session {self.session_id}: notification {method} failed: {e.message}")
                    return None
                return error_response(req_id, e)
            except Exception as e:
                logger.exception(f"Session {self.session_id}: unexpected error handling {method}")
                err = BridgeError(f"Internal error: {e}")
                return None if is_notification else error_response(req_id, err)

        if is_notification:
            return None
        return response(req_id, result)

class SessionRegistry:
    """Live sessions by id. Sessions share nothing but the Bridge.

    Sessions idle for longer than idle_timeout seconds (and running nothing)
    are closed the next time a session is created. None disables expiry.
    """

    def __init__(self, bridge: Bridge, idle_timeout: Optional[float] = None):
        self.bridge = bridge
        self.idle_timeout = idle_timeout
        self._sessions: Dict[str, ProtocolSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> ProtocolSession:
        self.expire()
        session = ProtocolSession(self.bridge)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: Optional[str]) -> Optional[ProtocolSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def expire(self, now: Optional[float] = None) -> List[str]:
        if not self.idle_timeout:
            return []
        now = time.monotonic() if now is None else now
        stale = [sid for sid, s in self._sessions.items()
                 if not s.busy and now - s.last_active > self.idle_timeout]
        for session_id in stale:
            self.close(session_id)
        if stale:
            logger.info(f"Expired {len(stale)} idle sessions")
        return stale

    def close_all(self) -> List[str]:
        ids = list(self._sessions)
        for session_id in ids:
            self.close(session_id)
        return ids
