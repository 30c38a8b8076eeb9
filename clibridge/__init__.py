from .models import ArgumentSpec, CommandNode, ToolDescriptor, ToolCallRequest, ToolCallResult, SpawnResult, SessionState
from .policy import SecurityPolicy, DEFAULT_SENSITIVE_PREFIXES
from .catalog import Catalog, build_catalog
from .descriptor import load_command_tree, load_descriptor, from_parser, parse_argv
from .executor import ExecutionMapper, Spawner, SubprocessSpawner
from .session import Bridge, ProtocolSession, SessionRegistry
from .utils import logger, setup_logging

__version__ = "0.1.0"
