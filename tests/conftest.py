import pytest

from clibridge.catalog import build_catalog
from clibridge.executor import ExecutionMapper, Spawner
from clibridge.models import ArgumentSpec, CommandNode, SpawnResult
from clibridge.policy import SecurityPolicy
from clibridge.session import Bridge

class RecordingSpawner(Spawner):
    """Stand-in for the process launcher: records every invocation and returns a canned result."""

    def __init__(self, result=None):
        self.calls = []
        self.result = result or SpawnResult(exit_code=0, stdout="")

    async def spawn(self, command, argv, timeout):
        self.calls.append((list(command), list(argv), timeout))
        return self.result

def node(*path, summary="", arguments=None, children=None):
    return CommandNode(path=tuple(path), summary=summary, arguments=arguments or [], children=children or [])

def sample_tree():
    return node(children=[
        node("component", summary="Manage components", children=[
            node("component", "list", summary="List components", arguments=[
                ArgumentSpec("organization", "string", help="Organization to list"),
                ArgumentSpec("limit", "integer", help="Maximum results"),
                ArgumentSpec("format", "enumeration", choices=("json", "table")),
            ]),
            node("component", "describe", summary="Show a component", arguments=[
                ArgumentSpec("component", "string", required=True, positional=True),
                ArgumentSpec("verbose", "boolean"),
            ]),
        ]),
        node("profile", summary="Manage profiles", children=[
            node("profile", "add", summary="Add a profile", arguments=[
                ArgumentSpec("name", "string", required=True),
            ]),
        ]),
        node("profiler-utils", summary="Profiling helpers"),
        node("cloud", children=[
            node("cloud", "login", summary="Log in"),
            node("cloud", "token", children=[
                node("cloud", "token", "create", summary="Create a token"),
            ]),
            node("cloud", "account", children=[
                node("cloud", "account", "show", summary=""),
                node("cloud", "account", "grant", summary="Grant access", arguments=[
                    ArgumentSpec("user", "string", required=True),
                ]),
            ]),
        ]),
    ])

@pytest.fixture
def tree():
    return sample_tree()

@pytest.fixture
def policy():
    return SecurityPolicy()

@pytest.fixture
def catalog(tree, policy):
    return build_catalog(tree, policy)

@pytest.fixture
def spawner():
    return RecordingSpawner(SpawnResult(exit_code=0, stdout="no components"))

@pytest.fixture
def mapper(catalog, policy, spawner):
    return ExecutionMapper(catalog, policy, spawner, command=["mycli"], timeout=5)

@pytest.fixture
def bridge(catalog, mapper):
    return Bridge(catalog, mapper)
