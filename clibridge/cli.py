import argparse
import asyncio
import json
import shlex
import sys
from pathlib import Path

from .config import config, BridgeConfigError
from .errors import BridgeError, ConfigurationError
from .server import create_bridge, run_http, run_stdio
from .utils import setup_logging

def _add_source_options(parser: argparse.ArgumentParser):
    parser.add_argument("--descriptor", help="Command tree descriptor file (YAML or JSON)")
    parser.add_argument("--parser", dest="parser_ref", help="argparse parser to introspect, as 'module:attr'")
    parser.add_argument("--command", dest="cli_command", help="Host CLI executable, e.g. 'mycli' or 'python -m mycli'")

def _apply_overrides(args):
    if getattr(args, "descriptor", None):
        config.set("cli.descriptor", args.descriptor)
        config.set("cli.parser", None)
    if getattr(args, "parser_ref", None):
        config.set("cli.parser", args.parser_ref)
        config.set("cli.descriptor", None)
    if getattr(args, "cli_command", None):
        config.set("cli.command", shlex.split(args.cli_command))
    if getattr(args, "host", None):
        config.set("server.host", args.host)
    if getattr(args, "port", None):
        config.set("server.port", args.port)
    if getattr(args, "transport", None):
        config.set("server.transport", args.transport)
    if getattr(args, "timeout", None):
        config.set("execution.timeout", args.timeout)

def _bridge(require_command: bool = True):
    config.validate(require_command)
    return create_bridge(config)

def cmd_serve(args):
    bridge = _bridge()
    if config.get("server.transport") == "stdio":
        run_stdio(bridge)
    else:
        run_http(
            bridge,
            host=config.get("server.host"),
            port=int(config.get("server.port")),
            path=config.get("server.path", "/mcp"),
            log_level=config.get("logging.level", "INFO"),
            session_idle_timeout=config.get("server.session_idle_timeout"),
        )
    return 0

def cmd_catalog(args):
    bridge = _bridge(require_command=False)
    tools = [t.to_dict() for t in bridge.catalog]
    if args.json:
        print(json.dumps(tools, indent=2))
    else:
        for tool in tools:
            print(f"{tool['name']:<40} {tool['description']}")
        print(f"\n{len(tools)} tools published.", file=sys.stderr)
    return 0

def cmd_call(args):
    try:
        arguments = json.loads(args.args) if args.args else {}
    except ValueError as e:
        print(f"Error: --args is not valid JSON: {e}", file=sys.stderr)
        return 2
    bridge = _bridge()
    try:
        result = asyncio.run(bridge.mapper.execute(args.name, arguments))
    except BridgeError as e:
        print(f"❌ Rejected: {e.message}", file=sys.stderr)
        return 2
    for block in result.content:
        print(block["text"], file=sys.stderr if result.is_error else sys.stdout)
    return 1 if result.is_error else 0

def cmd_config_init(args):
    """Initializes a default clibridge.config.yaml in the current directory."""
    target = Path.cwd() / "clibridge.config.yaml"
    if target.exists() and not args.force:
        print(f"Error: {target} already exists. Use --force to overwrite.")
        return 1

    try:
        with open(target, "w", encoding="utf-8") as f:
            f.write(config.to_yaml())
        print(f"✅ Created default configuration: {target}")
    except OSError as e:
        print(f"Error writing configuration: {e}")
        return 1
    return 0

def cmd_config_show(args):
    """Shows the effective configuration."""
    print(config.to_yaml())
    return 0

def cmd_config_validate(args):
    """Validates the configuration and the command tree it points to."""
    try:
        config.reload()
        _apply_overrides(args)
        bridge = _bridge(require_command=False)
    except (BridgeConfigError, ConfigurationError) as e:
        print(f"❌ Configuration error: {e}")
        return 1
    print(f"✅ Configuration is valid ({len(bridge.catalog)} tools published).")
    return 0

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clibridge", description="Expose a command-line tool to MCP clients")
    parser.add_argument("--log-level", help="Override logging.level")
    subparsers = parser.add_subparsers(dest="command", help="clibridge commands")

    p_serve = subparsers.add_parser("serve", help="Serve the tool catalog to MCP clients")
    _add_source_options(p_serve)
    p_serve.add_argument("--transport", choices=["http", "stdio"], help="Transport (default from config)")
    p_serve.add_argument("--host", help="Bind address for the HTTP transport")
    p_serve.add_argument("--port", type=int, help="Port for the HTTP transport")
    p_serve.add_argument("--timeout", type=float, help="Per-call timeout in seconds")
    p_serve.set_defaults(func=cmd_serve)

    p_catalog = subparsers.add_parser("catalog", help="Print the published tool catalog")
    _add_source_options(p_catalog)
    p_catalog.add_argument("--json", action="store_true", help="Print tool descriptors as JSON")
    p_catalog.set_defaults(func=cmd_catalog)

    p_call = subparsers.add_parser("call", help="Invoke one tool locally, as an MCP client would")
    _add_source_options(p_call)
    p_call.add_argument("name", help="Tool name, e.g. 'component list'")
    p_call.add_argument("--args", help="Tool arguments as a JSON object")
    p_call.add_argument("--timeout", type=float, help="Per-call timeout in seconds")
    p_call.set_defaults(func=cmd_call)

    p_config = subparsers.add_parser("config", help="Manage clibridge configuration")
    config_sub = p_config.add_subparsers(dest="subcommand", help="Config subcommands")
    p_init = config_sub.add_parser("init", help="Initialize a default configuration file")
    p_init.add_argument("-f", "--force", action="store_true", help="Force overwrite existing config")
    p_init.set_defaults(func=cmd_config_init)
    p_show = config_sub.add_parser("show", help="Show effective configuration")
    p_show.set_defaults(func=cmd_config_show)
    p_validate = config_sub.add_parser("validate", help="Validate configuration and command tree")
    _add_source_options(p_validate)
    p_validate.set_defaults(func=cmd_config_validate)

    return parser

def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    try:
        if args.log_level:
            config.set("logging.level", args.log_level)
        setup_logging(config.get("logging.level", "INFO"), config.get("logging.log_file"))
        _apply_overrides(args)
        return args.func(args)
    except (BridgeConfigError, ConfigurationError) as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 1

if __name__ == "__main__":
    sys.exit(main())
