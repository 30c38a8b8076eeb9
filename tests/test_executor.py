import asyncio
import os
import sys
import time

import pytest

from clibridge.catalog import build_catalog
from clibridge.descriptor import parse_argv
from clibridge.errors import InvalidArgumentsError, SecurityError, UnknownToolError
from clibridge.executor import ExecutionMapper, SubprocessSpawner
from clibridge.models import ArgumentSpec, SpawnResult
from conftest import RecordingSpawner, node

def run(coro):
    return asyncio.run(coro)

def test_successful_call_returns_stdout(mapper, spawner):
    result = run(mapper.execute("component list", {}))
    assert result.is_error is False
    assert result.content == [{"type": "text", "text": "no components"}]
    assert spawner.calls == [(["mycli"], ["component", "list"], 5)]

def test_failed_command_is_a_result_not_an_error(catalog, policy):
    spawner = RecordingSpawner(SpawnResult(exit_code=2, stdout="", stderr="organization not found\n"))
    mapper = ExecutionMapper(catalog, policy, spawner, command=["mycli"])
    result = run(mapper.execute("component list", {"organization": "nope"}))
    assert result.is_error is True
    assert result.content[0]["text"] == "organization not found\n"

def test_failed_command_without_stderr_gets_fallback(catalog, policy):
    spawner = RecordingSpawner(SpawnResult(exit_code=3))
    mapper = ExecutionMapper(catalog, policy, spawner)
    result = run(mapper.execute("cloud login"))
    assert result.is_error is True
    assert result.content[0]["text"] == "Command 'cloud login' exited with status 3"

def test_timeout_is_distinguished_failure(catalog, policy):
    spawner = RecordingSpawner(SpawnResult(exit_code=None, timed_out=True))
    mapper = ExecutionMapper(catalog, policy, spawner, timeout=2)
    result = run(mapper.execute("cloud login"))
    assert result.is_error is True
    assert "timed out after 2s" in result.content[0]["text"]

def test_missing_executable_is_execution_failure(catalog, policy):
    mapper = ExecutionMapper(catalog, policy, SubprocessSpawner(), command=["/nonexistent/clibridge-test-binary"])
    result = run(mapper.execute("cloud login"))
    assert result.is_error is True
    assert "Failed to launch" in result.content[0]["text"]

def test_sensitive_call_rejected_without_spawn(mapper, spawner):
    with pytest.raises(SecurityError):
        run(mapper.execute("profile add", {"name": "x"}))
    assert spawner.calls == []

@pytest.mark.parametrize("name", ["profile", "profile  add", " cloud token create", "cloud\taccount grant"])
def test_sensitive_aliases_rejected(mapper, spawner, name):
    with pytest.raises(SecurityError):
        run(mapper.execute(name, {}))
    assert spawner.calls == []

def test_unknown_tool(mapper, spawner):
    with pytest.raises(UnknownToolError):
        run(mapper.execute("component delete", {}))
    with pytest.raises(UnknownToolError):
        run(mapper.execute("component", {}))
    assert spawner.calls == []

def test_unknown_argument_rejected(mapper, spawner):
    with pytest.raises(InvalidArgumentsError) as exc:
        run(mapper.execute("component list", {"bogus": "x"}))
    assert "bogus" in exc.value.message
    assert exc.value.data["unknown"] == ["bogus"]
    assert spawner.calls == []

@pytest.mark.parametrize("arguments", [{}, {"component": None}, {"component": ""}, {"verbose": True}])
def test_missing_required_argument_rejected(mapper, spawner, arguments):
    with pytest.raises(InvalidArgumentsError, match="Missing required"):
        run(mapper.execute("component describe", arguments))
    assert spawner.calls == []

@pytest.mark.parametrize("arguments", [
    {"limit": "ten"},
    {"limit": True},
    {"limit": 2.5},
    {"format": "xml"},
    {"organization": 42},
])
def test_type_mismatch_rejected(mapper, spawner, arguments):
    with pytest.raises(InvalidArgumentsError, match="Invalid value"):
        run(mapper.execute("component list", arguments))
    assert spawner.calls == []

def test_arguments_must_be_an_object(mapper, spawner):
    with pytest.raises(InvalidArgumentsError):
        run(mapper.execute("component list", ["--limit", "3"]))
    assert spawner.calls == []

def test_argv_follows_declaration_order(mapper):
    argv = mapper.prepare("component list", {"format": "json", "limit": 10, "organization": "acme"})
    assert argv == ["component", "list", "--organization=acme", "--limit=10", "--format=json"]

def test_whole_number_float_is_passed_as_integer(mapper):
    assert mapper.prepare("component list", {"limit": 3.0}) == ["component", "list", "--limit=3"]

def test_null_optional_values_are_omitted(mapper):
    assert mapper.prepare("component list", {"organization": None}) == ["component", "list"]

def test_booleans_are_presence_flags(mapper):
    assert mapper.prepare("component describe", {"component": "web", "verbose": True}) == \
        ["component", "describe", "--verbose", "--", "web"]
    assert mapper.prepare("component describe", {"component": "web", "verbose": False}) == \
        ["component", "describe", "--", "web"]

def test_values_stay_discrete_tokens(mapper):
    argv = mapper.prepare("component list", {"organization": "acme; rm -rf / && echo $HOME"})
    assert argv[-1] == "--organization=acme; rm -rf / && echo $HOME"
    assert len(argv) == 3

def test_dash_values_cannot_become_flags(mapper):
    argv = mapper.prepare("component list", {"organization": "--limit=5"})
    assert argv == ["component", "list", "--organization=--limit=5"]

@pytest.mark.parametrize("value, expected", [
    ("report.txt", ["-oreport.txt"]),
    ("-x", ["-o-x"]),
    ("", ["-o", ""]),
])
def test_short_only_option_carries_its_value(policy, value, expected):
    root = node(children=[
        node("export", arguments=[ArgumentSpec("output", "string", option="-o")]),
    ])
    mapper = ExecutionMapper(build_catalog(root, policy), policy, RecordingSpawner())
    argv = mapper.prepare("export", {"output": value})
    assert argv == ["export"] + expected
    assert parse_argv(root, argv) == ("export", {"output": value})

@pytest.mark.parametrize("name, arguments", [
    ("component list", {}),
    ("component list", {"organization": "acme corp", "limit": 7, "format": "table"}),
    ("component describe", {"component": "web-1"}),
    ("component describe", {"component": "web-1", "verbose": True}),
    ("cloud login", {}),
    ("component list", {"organization": "--format"}),
    ("component list", {"organization": "-x"}),
    ("component list", {"organization": "--limit=5", "limit": -5}),
    ("component list", {"organization": ""}),
    ("component describe", {"component": "--verbose"}),
])
def test_argv_round_trips_through_command_parser(tree, mapper, name, arguments):
    argv = mapper.prepare(name, arguments)
    assert parse_argv(tree, argv) == (name, arguments)

def test_subprocess_spawner_passes_tokens_without_shell():
    script = "import sys; print('|'.join(sys.argv[1:]))"
    result = run(SubprocessSpawner().spawn([sys.executable, "-c", script], ["a b", "$HOME", "; ls"], timeout=30))
    assert result.exit_code == 0
    assert result.stdout.strip() == "a b|$HOME|; ls"
    assert result.timed_out is False

def test_subprocess_spawner_reports_exit_code_and_stderr():
    script = "import sys; sys.stderr.write('boom'); sys.exit(4)"
    result = run(SubprocessSpawner().spawn([sys.executable, "-c", script], [], timeout=30))
    assert result.exit_code == 4
    assert result.stderr == "boom"

def test_subprocess_spawner_truncates_output():
    script = "print('x' * 100)"
    result = run(SubprocessSpawner(max_output_chars=10).spawn([sys.executable, "-c", script], [], timeout=30))
    assert result.stdout.startswith("x" * 10)
    assert "truncated" in result.stdout

def test_subprocess_spawner_kills_on_timeout():
    start = time.monotonic()
    result = run(SubprocessSpawner().spawn([sys.executable, "-c", "import time; time.sleep(30)"], [], timeout=0.5))
    assert result.timed_out is True
    assert result.exit_code is None
    assert time.monotonic() - start < 10

@pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process probing")
def test_subprocess_spawner_kills_on_cancel(tmp_path):
    pid_file = tmp_path / "pid"
    script = f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)"

    async def scenario():
        task = asyncio.ensure_future(SubprocessSpawner().spawn([sys.executable, "-c", script], [], timeout=60))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return int(pid_file.read_text())

    pid = run(scenario())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)

def _running(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # A killed process may linger as a zombie until its new parent reaps it.
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True

@pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX process groups")
@pytest.mark.parametrize("cancel", [False, True])
def test_subprocess_spawner_kills_grandchildren(tmp_path, cancel):
    pid_file = tmp_path / "grandchild"
    # The wrapper shell starts a long-lived child and waits on it, like a launcher script would.
    command = ["sh", "-c", 'sleep 30 & echo $! > "$0"; wait', str(pid_file)]

    async def scenario():
        task = asyncio.ensure_future(SubprocessSpawner().spawn(command, [], timeout=60 if cancel else 2))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        if cancel:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        else:
            assert (await task).timed_out is True
        return int(pid_file.read_text())

    pid = run(scenario())
    deadline = time.monotonic() + 5
    while _running(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _running(pid)
