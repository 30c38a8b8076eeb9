from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import ConfigurationError
from .models import VALUE_KINDS, ArgumentSpec, CommandNode, ToolDescriptor
from .policy import SecurityPolicy
from .utils import logger

SCHEMA_TYPES = {
    "string": "string",
    "integer": "integer",
    "boolean": "boolean",
    "enumeration": "string",
}

class Catalog:
    """Ordered tool descriptors plus the command nodes they were derived from."""

    def __init__(self, tools: List[ToolDescriptor], nodes: Dict[str, CommandNode]):
        self.tools = tuple(tools)
        self._nodes = dict(nodes)
        self._by_name = {t.name: t for t in self.tools}

    def __len__(self) -> int:
        return len(self.tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.tools)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def names(self) -> List[str]:
        return [t.name for t in self.tools]

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._by_name.get(name)

    def node(self, name: str) -> Optional[CommandNode]:
        return self._nodes.get(name)

def argument_schema(arg: ArgumentSpec) -> Dict[str, Any]:
    prop: Dict[str, Any] = {"type": SCHEMA_TYPES[arg.value_kind]}
    if arg.value_kind == "enumeration":
        prop["enum"] = list(arg.choices)
    elif arg.value_kind == "string" and arg.required:
        prop["minLength"] = 1
    if arg.help:
        prop["description"] = arg.help
    return prop

def input_schema(node: CommandNode) -> Dict[str, Any]:
    """JSON Schema describing the arguments object accepted by a tool."""
    properties = {arg.flag_name: argument_schema(arg) for arg in node.arguments}
    required = [arg.flag_name for arg in node.arguments if arg.required]
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema

def describe(node: CommandNode) -> str:
    summary = (node.summary or "").strip()
    return summary or f"Run '{node.name}'"

def build_tool(node: CommandNode) -> ToolDescriptor:
    return ToolDescriptor(name=node.name, description=describe(node), input_schema=input_schema(node))

def _check_node(node: CommandNode, seen: Set[Tuple[str, ...]]):
    for seg in node.path:
        if not seg or seg != seg.strip() or len(seg.split()) != 1:
            raise ConfigurationError(f"Invalid path segment {seg!r} in command {list(node.path)!r}")
    if node.path in seen:
        raise ConfigurationError(f"Duplicate command path: '{node.name}'")
    seen.add(node.path)

    flags = set()
    for arg in node.arguments:
        if arg.value_kind not in VALUE_KINDS:
            raise ConfigurationError(f"Unknown value kind '{arg.value_kind}' for {arg.flag} in '{node.name}'")
        if not arg.flag_name or arg.flag_name.startswith("-") or len(arg.flag_name.split()) != 1:
            raise ConfigurationError(f"Invalid flag name {arg.flag_name!r} in '{node.name}'")
        if arg.flag_name in flags:
            raise ConfigurationError(f"Duplicate argument '{arg.flag_name}' in '{node.name}'")
        if arg.value_kind == "enumeration" and not arg.choices:
            raise ConfigurationError(f"Enumeration {arg.flag} in '{node.name}' has no choices")
        if arg.positional and arg.value_kind == "boolean":
            raise ConfigurationError(f"Boolean argument '{arg.flag_name}' in '{node.name}' cannot be positional")
        flags.add(arg.flag_name)

    for child in node.children:
        if child.path[:-1] != node.path:
            raise ConfigurationError(f"Command '{child.name}' is not a direct child of '{node.name}'")

def build_catalog(root: CommandNode, policy: SecurityPolicy) -> Catalog:
    """Walks the command tree depth-first and publishes every invocable, non-sensitive command.

    A sensitive node prunes its whole subtree, grouping nodes are skipped but
    their children are still visited. The whole tree is checked for
    consistency, sensitive branches included, so a malformed tree is always
    reported here rather than at call time.
    """
    tools: List[ToolDescriptor] = []
    nodes: Dict[str, CommandNode] = {}
    seen: Set[Tuple[str, ...]] = set()
    pruned = 0

    stack: List[Tuple[CommandNode, bool]] = [(root, False)]
    while stack:
        node, hidden = stack.pop()
        _check_node(node, seen)

        if not hidden and node.path and policy.is_sensitive(node.path):
            logger.debug(f"Pruning sensitive command subtree '{node.name}'")
            hidden = True
            pruned += 1

        if not hidden and node.invocable:
            tools.append(build_tool(node))
            nodes[node.name] = node

        for child in reversed(node.children):
            stack.append((child, hidden))

    logger.info(f"Built tool catalog: {len(tools)} tools published, {pruned} sensitive subtrees pruned")
    return Catalog(tools, nodes)
