"""Command-tree descriptors.

The bridge never parses the host CLI's arguments itself. It reads a tree of
CommandNode objects built once at startup, either from a descriptor file
(YAML or JSON, validated against schemas/command_tree.schema.json) or by
introspecting an argparse.ArgumentParser.
"""

import argparse
import importlib
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from jsonschema import Draft202012Validator

from .errors import ConfigurationError
from .models import ArgumentSpec, CommandNode
from .utils import logger

SCHEMA_PATH = Path(__file__).parent / "schemas" / "command_tree.schema.json"

def load_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)

def validate_descriptor(doc: Any) -> None:
    """Raises ConfigurationError listing the first schema violation, if any."""
    v = Draft202012Validator(load_schema())
    errors = sorted(v.iter_errors(doc), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        loc = ".".join([str(x) for x in first.path]) if first.path else "<root>"
        raise ConfigurationError(f"Invalid command tree descriptor: {loc}: {first.message}")

def _argument_from_dict(data: Dict[str, Any]) -> ArgumentSpec:
    return ArgumentSpec(
        flag_name=data["name"],
        value_kind=data.get("type", "string"),
        required=bool(data.get("required", False)),
        help=data.get("help", ""),
        choices=tuple(str(c) for c in data.get("choices", [])),
        positional=bool(data.get("positional", False)),
        option=data.get("option", ""),
    )

def _node_from_dict(data: Dict[str, Any], parent: Tuple[str, ...]) -> CommandNode:
    path = parent + (data["name"],)
    return CommandNode(
        path=path,
        summary=data.get("summary", ""),
        arguments=[_argument_from_dict(a) for a in data.get("arguments", [])],
        children=[_node_from_dict(c, path) for c in data.get("commands", [])],
    )

def tree_from_dict(doc: Dict[str, Any]) -> CommandNode:
    validate_descriptor(doc)
    root = CommandNode(path=(), summary=doc.get("summary", ""))
    root.children = [_node_from_dict(c, ()) for c in doc.get("commands", [])]
    return root

def load_descriptor(path: str) -> CommandNode:
    """Loads a command tree from a YAML or JSON descriptor file."""
    path = os.path.expanduser(path)
    if not os.path.isfile(path):
        raise ConfigurationError(f"Command tree descriptor {path} not found.")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse command tree descriptor {path}: {e}")
    if not isinstance(doc, dict):
        raise ConfigurationError(f"Command tree descriptor {path} must be a mapping.")
    logger.info(f"Loading command tree from {path}")
    return tree_from_dict(doc)

# argparse introspection

def _help_text(text: Optional[str]) -> str:
    if not text or text == argparse.SUPPRESS:
        return ""
    return text

def _argument_from_action(action: argparse.Action) -> Optional[ArgumentSpec]:
    if isinstance(action, (argparse._HelpAction, argparse._VersionAction)):
        return None
    if action.dest == argparse.SUPPRESS:
        return None

    if action.option_strings:
        longs = [o for o in action.option_strings if o.startswith("--")]
        option = longs[0] if longs else action.option_strings[0]
        flag_name = option.lstrip("-")
        if option == f"--{flag_name}":
            option = ""
        positional = False
    else:
        flag_name = action.dest
        option = ""
        positional = True

    if action.nargs == 0:
        kind = "boolean"
    elif action.choices is not None:
        kind = "enumeration"
    elif action.type is int:
        kind = "integer"
    else:
        kind = "string"

    return ArgumentSpec(
        flag_name=flag_name,
        value_kind=kind,
        required=bool(action.required) if not positional else action.nargs not in ("?", "*"),
        help=_help_text(action.help),
        choices=tuple(str(c) for c in action.choices) if kind == "enumeration" else (),
        positional=positional,
        option=option,
    )

def _node_from_parser(parser: argparse.ArgumentParser, path: Tuple[str, ...], summary: str) -> CommandNode:
    node = CommandNode(path=path, summary=summary or _help_text(parser.description))
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            helps = {ca.dest: _help_text(ca.help) for ca in action._choices_actions}
            visited = set()
            for name, sub in action.choices.items():
                # aliases map to the same parser object
                if id(sub) in visited:
                    continue
                visited.add(id(sub))
                node.children.append(_node_from_parser(sub, path + (name,), helps.get(name, "")))
            continue
        spec = _argument_from_action(action)
        if spec is not None:
            node.arguments.append(spec)
    return node

def from_parser(parser: argparse.ArgumentParser) -> CommandNode:
    """Builds a command tree by introspecting an argparse parser and its subparsers.

    The root parser's own options (global flags) are not published: only the
    subcommands become tools.
    """
    root = _node_from_parser(parser, (), "")
    root.arguments = []
    return root

def load_parser(spec: str) -> argparse.ArgumentParser:
    """Resolves "package.module:attr" into a parser. attr may be a parser or a factory returning one."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Parser reference must look like 'module:attr', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import parser module '{module_name}': {e}")
    target = getattr(module, attr, None)
    if target is None:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'")
    parser = target if isinstance(target, argparse.ArgumentParser) else target()
    if not isinstance(parser, argparse.ArgumentParser):
        raise ConfigurationError(f"'{spec}' did not produce an argparse.ArgumentParser")
    return parser

def load_command_tree(descriptor: Optional[str] = None, parser: Optional[str] = None) -> CommandNode:
    if descriptor:
        return load_descriptor(descriptor)
    if parser:
        logger.info(f"Introspecting command tree from parser {parser}")
        return from_parser(load_parser(parser))
    raise ConfigurationError("No command tree source configured (set cli.descriptor or cli.parser).")

# Reverse mapping: argv back to a tool call

class ArgvParseError(ValueError):
    pass

class _StrictParser(argparse.ArgumentParser):
    def error(self, message):
        raise ArgvParseError(message)

def _add_arguments(parser: argparse.ArgumentParser, node: CommandNode):
    for arg in node.arguments:
        if arg.positional:
            kwargs: Dict[str, Any] = {} if arg.required else {"nargs": "?"}
            if arg.value_kind == "integer":
                kwargs["type"] = int
            elif arg.value_kind == "enumeration":
                kwargs["choices"] = list(arg.choices)
            parser.add_argument(arg.flag_name, **kwargs)
        elif arg.value_kind == "boolean":
            parser.add_argument(arg.flag, dest=arg.flag_name, action="store_true")
        else:
            kwargs = {"dest": arg.flag_name, "required": arg.required}
            if arg.value_kind == "integer":
                kwargs["type"] = int
            elif arg.value_kind == "enumeration":
                kwargs["choices"] = list(arg.choices)
            parser.add_argument(arg.flag, **kwargs)

def _populate(parser: argparse.ArgumentParser, node: CommandNode):
    parser.set_defaults(_command=node.name)
    _add_arguments(parser, node)
    if node.children:
        subparsers = parser.add_subparsers(dest=f"_level{len(node.path)}")
        for child in node.children:
            sub = subparsers.add_parser(child.path[-1], help=child.summary, add_help=False)
            _populate(sub, child)

def build_parser(root: CommandNode, prog: str = "cli") -> argparse.ArgumentParser:
    """Builds an argparse parser equivalent to the command tree."""
    parser = _StrictParser(prog=prog, add_help=False)
    _populate(parser, root)
    return parser

def parse_argv(root: CommandNode, argv: Sequence[str]) -> Tuple[str, Dict[str, Any]]:
    """Parses an argument vector back into (tool name, arguments).

    Flags left unset (None or False) are dropped from the arguments.
    """
    ns = vars(build_parser(root).parse_args(list(argv)))
    name = ns.pop("_command")
    arguments = {}
    for key, value in ns.items():
        if key.startswith("_level") or value is None or value is False:
            continue
        arguments[key] = value
    return name, arguments

def to_dict(node: CommandNode) -> Dict[str, Any]:
    """Serializes a tree back into the descriptor file format."""
    out: Dict[str, Any] = {}
    if node.path:
        out["name"] = node.path[-1]
    if node.summary:
        out["summary"] = node.summary
    if node.arguments:
        args: List[Dict[str, Any]] = []
        for a in node.arguments:
            d: Dict[str, Any] = {"name": a.flag_name, "type": a.value_kind}
            if a.required:
                d["required"] = True
            if a.help:
                d["help"] = a.help
            if a.choices:
                d["choices"] = list(a.choices)
            if a.positional:
                d["positional"] = True
            if a.option:
                d["option"] = a.option
            args.append(d)
        out["arguments"] = args
    if node.children or not node.path:
        out["commands"] = [to_dict(c) for c in node.children]
    return out
