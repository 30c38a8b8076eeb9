from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

VALUE_KINDS = ("string", "integer", "boolean", "enumeration")

@dataclass(frozen=True)
class ArgumentSpec:
    flag_name: str
    value_kind: str = "string"
    required: bool = False
    help: str = ""
    choices: Tuple[str, ...] = ()
    positional: bool = False
    option: str = ""

    @property
    def flag(self) -> str:
        """The option token passed on the command line."""
        return self.option or f"--{self.flag_name}"

@dataclass
class CommandNode:
    path: Tuple[str, ...]
    summary: str = ""
    arguments: List[ArgumentSpec] = field(default_factory=list)
    children: List[CommandNode] = field(default_factory=list)

    @property
    def name(self) -> str:
        return " ".join(self.path)

    @property
    def invocable(self) -> bool:
        """Grouping nodes (subcommands only, no arguments of their own) are not invocable."""
        if not self.path:
            return False
        return bool(self.arguments) or not self.children

@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}

@dataclass
class ToolCallRequest:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

@dataclass
class ToolCallResult:
    content: List[Dict[str, str]]
    is_error: bool = False

    @classmethod
    def text(cls, text: str, is_error: bool = False) -> ToolCallResult:
        return cls(content=[{"type": "text", "text": text}], is_error=is_error)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}

@dataclass
class SpawnResult:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

@dataclass
class SessionState:
    negotiated: bool = False
    protocol_version: Optional[str] = None
    client_info: Dict[str, Any] = field(default_factory=dict)
