import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, TextIO

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .catalog import build_catalog
from .config import Config
from .descriptor import load_command_tree
from .errors import InvalidRequestError, ParseError
from .executor import ExecutionMapper, Spawner, SubprocessSpawner
from .policy import SecurityPolicy
from .session import Bridge, ProtocolSession, SessionRegistry, error_response
from .utils import logger

SESSION_HEADER = "Mcp-Session-Id"
DISCONNECT_POLL_INTERVAL = 0.5

def create_bridge(cfg: Config, spawner: Optional[Spawner] = None) -> Bridge:
    """Builds the shared bridge state. Raises ConfigurationError if the command tree is unusable."""
    policy = SecurityPolicy(cfg.get("security.sensitive_prefixes") or [])
    root = load_command_tree(cfg.get("cli.descriptor"), cfg.get("cli.parser"))
    catalog = build_catalog(root, policy)
    if spawner is None:
        spawner = SubprocessSpawner(cwd=cfg.get("cli.cwd"), max_output_chars=cfg.get("execution.max_output_chars"))
    mapper = ExecutionMapper(catalog, policy, spawner, command=cfg.command(),
                             timeout=float(cfg.get("execution.timeout")))
    return Bridge(
        catalog,
        mapper,
        supported_versions=cfg.get("protocol.supported_versions"),
        server_name=cfg.get("server.name", "clibridge"),
        server_version=str(cfg.get("server.version", "0.1.0")),
    )

def parse_error(detail: str) -> Dict[str, Any]:
    return error_response(None, ParseError(f"Parse error: {detail}"))

# HTTP transport

async def _until_disconnect(request: Request, session: ProtocolSession, message: Any) -> Optional[Dict[str, Any]]:
    """Runs one message, cancelling it (and any spawned command) if the client goes away."""
    task = asyncio.ensure_future(session.handle_message(message))
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
        if done:
            return task.result()
        if await request.is_disconnected():
            logger.info(f"Session {session.session_id}: client disconnected, cancelling request")
            task.cancel()
            await asyncio.wait({task})
            return None

def create_app(bridge: Bridge, path: str = "/mcp", session_idle_timeout: Optional[float] = None) -> FastAPI:
    registry = SessionRegistry(bridge, idle_timeout=session_idle_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        closed = registry.close_all()
        if closed:
            logger.info(f"Shutdown: closed {len(closed)} sessions")

    app = FastAPI(title="clibridge", lifespan=lifespan)
    app.state.bridge = bridge
    app.state.registry = registry

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "tools": len(bridge.catalog), "sessions": len(registry)}

    @app.post(path)
    async def rpc(request: Request):
        body = await request.body()
        try:
            message = json.loads(body)
        except ValueError as e:
            return JSONResponse(parse_error(str(e)), status_code=400)

        session_id = request.headers.get(SESSION_HEADER)
        is_initialize = isinstance(message, dict) and message.get("method") == "initialize"
        req_id = message.get("id") if isinstance(message, dict) else None

        if session_id:
            session = registry.get(session_id)
            if session is None:
                err = InvalidRequestError(f"Unknown session: {session_id}")
                return JSONResponse(error_response(req_id, err), status_code=404)
        elif is_initialize:
            session = registry.create()
        else:
            err = InvalidRequestError(f"Missing {SESSION_HEADER} header: send 'initialize' first.")
            return JSONResponse(error_response(req_id, err), status_code=400)

        reply = await _until_disconnect(request, session, message)
        if not session_id and not session.negotiated:
            # A first initialize that failed leaves nothing behind: the client starts over.
            registry.close(session.session_id)
            if reply is None:
                return Response(status_code=202)
            return JSONResponse(reply)
        headers = {SESSION_HEADER: session.session_id}
        if reply is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(reply, headers=headers)

    @app.delete(path)
    async def close_session(request: Request):
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return JSONResponse({"detail": f"Missing {SESSION_HEADER} header"}, status_code=400)
        if not registry.close(session_id):
            return JSONResponse({"detail": f"Unknown session: {session_id}"}, status_code=404)
        return Response(status_code=204)

    return app

def run_http(bridge: Bridge, host: str = "127.0.0.1", port: int = 8765, path: str = "/mcp",
             log_level: str = "info", session_idle_timeout: Optional[float] = None):
    app = create_app(bridge, path, session_idle_timeout)
    logger.info(f"Serving {len(bridge.catalog)} tools at http://{host}:{port}{path}")
    uvicorn.run(app, host=host, port=port, log_level=str(log_level).lower())

# stdio transport

def _write(stdout: TextIO, obj: Dict[str, Any]):
    stdout.write(json.dumps(obj) + "\n")
    stdout.flush()

async def serve_stdio(bridge: Bridge, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None):
    """Newline-delimited JSON-RPC over stdin/stdout with a single session.

    The next line is read while a message is being handled, so end of input
    during a call cancels it (and kills its command) like an HTTP disconnect.
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    session = ProtocolSession(bridge)
    loop = asyncio.get_running_loop()

    def read_line() -> "asyncio.Future[str]":
        return loop.run_in_executor(None, stdin.readline)

    next_line = read_line()
    try:
        while True:
            line = await next_line
            if not line:
                break
            next_line = read_line()
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError as e:
                _write(stdout, parse_error(str(e)))
                continue

            task = asyncio.ensure_future(session.handle_message(message))
            await asyncio.wait({task, next_line}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done() and next_line.result() == "":
                logger.info(f"Session {session.session_id}: end of input, cancelling request")
                task.cancel()
                await asyncio.wait({task})
                break
            reply = await task
            if reply is not None:
                _write(stdout, reply)
    finally:
        session.close()

def run_stdio(bridge: Bridge):
    logger.info(f"Serving {len(bridge.catalog)} tools over stdio")
    asyncio.run(serve_stdio(bridge))
