import asyncio
import os
import signal
from typing import Any, Dict, List, Optional, Sequence

from jsonschema import Draft202012Validator

from .catalog import Catalog
from .errors import InvalidArgumentsError, SecurityError, UnknownToolError
from .models import CommandNode, SpawnResult, ToolCallResult
from .policy import SecurityPolicy, split_path
from .utils import logger, truncate

DEFAULT_TIMEOUT = 60.0

class Spawner:
    """Launches the host CLI. spawn() must not involve a shell."""

    async def spawn(self, command: Sequence[str], argv: Sequence[str], timeout: float) -> SpawnResult:
        raise NotImplementedError

async def _terminate(process: asyncio.subprocess.Process):
    """Kills the command and everything it started. The child leads its own process group."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        elif process.returncode is None:
            process.kill()
    except (ProcessLookupError, PermissionError):
        # Group already gone (or only zombies left on some BSDs).
        pass
    await process.wait()

class SubprocessSpawner(Spawner):
    def __init__(self, cwd: Optional[str] = None, max_output_chars: Optional[int] = None):
        self.cwd = cwd
        self.max_output_chars = max_output_chars

    def _decode(self, data: bytes) -> str:
        return truncate(data.decode("utf-8", errors="replace"), self.max_output_chars)

    async def spawn(self, command: Sequence[str], argv: Sequence[str], timeout: float) -> SpawnResult:
        cmd = list(command) + list(argv)
        logger.debug(f"Spawning {cmd!r} (timeout {timeout}s)")
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate(process)
            return SpawnResult(exit_code=None, timed_out=True)
        except asyncio.CancelledError:
            # Client went away: never leave the command running unattended.
            await _terminate(process)
            raise
        return SpawnResult(exit_code=process.returncode, stdout=self._decode(stdout), stderr=self._decode(stderr))

def option_tokens(flag: str, value: str) -> List[str]:
    """Attaches the value to its option so a value starting with '-' is never read as a flag."""
    if len(flag) > 2:
        return [f"{flag}={value}"]
    # single-letter short option: -ovalue
    if not value:
        return [flag, value]
    return [f"{flag}{value}"]

class ExecutionMapper:
    """Turns a tool call into a host CLI invocation and classifies the outcome.

    Security, lookup and argument errors are raised before anything is
    spawned. Once the command runs, its failure is reported as a result with
    is_error set, never as an exception.
    """

    def __init__(self, catalog: Catalog, policy: SecurityPolicy, spawner: Optional[Spawner] = None,
                 command: Sequence[str] = (), timeout: float = DEFAULT_TIMEOUT):
        self.catalog = catalog
        self.policy = policy
        self.spawner = spawner or SubprocessSpawner()
        self.command = list(command)
        self.timeout = timeout

    def resolve(self, name: Any) -> CommandNode:
        if not isinstance(name, str) or not name.strip():
            raise InvalidArgumentsError("Tool name must be a non-empty string.")
        path = split_path(name)
        if self.policy.is_sensitive(path):
            logger.warning(f"Rejected call to sensitive command '{' '.join(path)}'")
            raise SecurityError(f"Tool '{name}' is not available: command is restricted by security policy.")
        node = self.catalog.node(name)
        if node is None:
            raise UnknownToolError(f"Unknown tool: '{name}'")
        return node

    def validate(self, name: str, node: CommandNode, arguments: Any) -> Dict[str, Any]:
        """Returns the arguments with null optional values dropped."""
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(f"Arguments for '{name}' must be an object.")

        known = {arg.flag_name for arg in node.arguments}
        unknown = sorted(k for k in arguments if k not in known)
        if unknown:
            raise InvalidArgumentsError(
                f"Unknown argument(s) for '{name}': {', '.join(unknown)}",
                data={"unknown": unknown, "allowed": sorted(known)},
            )

        missing = [arg.flag_name for arg in node.arguments
                   if arg.required and arguments.get(arg.flag_name) in (None, "")]
        if missing:
            raise InvalidArgumentsError(
                f"Missing required argument(s) for '{name}': {', '.join(missing)}",
                data={"missing": missing},
            )

        cleaned = {}
        for key, value in arguments.items():
            if value is None:
                continue
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            cleaned[key] = value

        tool = self.catalog.get(name)
        errors = sorted(Draft202012Validator(tool.input_schema).iter_errors(cleaned), key=lambda e: list(e.path))
        if errors:
            first = errors[0]
            loc = ".".join([str(x) for x in first.path]) if first.path else "<arguments>"
            raise InvalidArgumentsError(f"Invalid value for '{loc}': {first.message}")
        return cleaned

    def build_argv(self, node: CommandNode, arguments: Dict[str, Any]) -> List[str]:
        """Path segments, then flags in declaration order, then positionals after '--'."""
        argv = list(node.path)
        positionals = []
        for arg in node.arguments:
            if arg.flag_name not in arguments:
                continue
            value = arguments[arg.flag_name]
            if arg.positional:
                positionals.append(str(value))
            elif arg.value_kind == "boolean":
                if value:
                    argv.append(arg.flag)
            else:
                argv.extend(option_tokens(arg.flag, str(value)))
        if positionals:
            argv.append("--")
            argv.extend(positionals)
        return argv

    def prepare(self, name: Any, arguments: Any) -> List[str]:
        node = self.resolve(name)
        cleaned = self.validate(name, node, arguments)
        return self.build_argv(node, cleaned)

    async def execute(self, name: Any, arguments: Any = None) -> ToolCallResult:
        argv = self.prepare(name, arguments)
        logger.info(f"Executing tool '{name}'")
        try:
            result = await self.spawner.spawn(self.command, argv, self.timeout)
        except OSError as e:
            logger.error(f"Failed to launch '{name}': {e}")
            return ToolCallResult.text(f"Failed to launch command '{name}': {e}", is_error=True)
        return self.classify(name, result)

    def classify(self, name: str, result: SpawnResult) -> ToolCallResult:
        if result.timed_out:
            logger.warning(f"Tool '{name}' timed out after {self.timeout}s")
            return ToolCallResult.text(f"Command '{name}' timed out after {self.timeout:g}s and was terminated.", is_error=True)
        if result.exit_code == 0:
            return ToolCallResult.text(result.stdout)
        logger.warning(f"Tool '{name}' exited with status {result.exit_code}")
        message = result.stderr if result.stderr.strip() else f"Command '{name}' exited with status {result.exit_code}"
        return ToolCallResult.text(message, is_error=True)
