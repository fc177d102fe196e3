from pathlib import Path

from agent_engine.tools.builtin import build_default_registry
from agent_engine.tools.schemas import ToolContext


def _context(tmp_path: Path, owner_id: str = "alice") -> ToolContext:
    return ToolContext(owner_id=owner_id, session_id="task-1", workspace_root=tmp_path)


def test_default_registry_catalog() -> None:
    registry = build_default_registry()

    assert registry.names() == [
        "calculate",
        "file_list",
        "file_read",
        "file_write",
        "http_get",
        "shell_exec",
        "summarize",
        "think",
    ]
    assert registry.get("shell_exec").requires_confirmation is True
    assert registry.get("http_get").cacheable is True
    assert registry.get("calculate").requires_confirmation is False


def test_calculate_evaluates_safe_arithmetic(tmp_path: Path) -> None:
    registry = build_default_registry()

    assert registry.execute("calculate", {"expression": "2 * (3 + 4)"}, _context(tmp_path)).output == "14"
    assert registry.execute("calculate", {"expression": "sqrt(16) + pi * 0"}, _context(tmp_path)).output == "4"


def test_calculate_rejects_code_and_bad_math(tmp_path: Path) -> None:
    registry = build_default_registry()

    injected = registry.execute("calculate", {"expression": "__import__('os').system('ls')"}, _context(tmp_path))
    assert injected.success is False
    assert "Unsupported expression" in injected.error

    divided = registry.execute("calculate", {"expression": "1 / 0"}, _context(tmp_path))
    assert divided.success is False
    assert divided.error.startswith("ZeroDivisionError")


def test_think_and_summarize(tmp_path: Path) -> None:
    registry = build_default_registry()

    thought = registry.execute("think", {"problem": "Plan a trip"}, _context(tmp_path))
    assert thought.success is True
    assert "Approach: step_by_step" in thought.output

    summary = registry.execute(
        "summarize",
        {"text": "First point. Second point! Third point? Fourth point.", "max_points": 2},
        _context(tmp_path),
    )
    assert summary.output == "- First point.\n- Second point!"


def test_file_tools_stay_inside_owner_workspace(tmp_path: Path) -> None:
    registry = build_default_registry()
    context = _context(tmp_path)

    written = registry.execute("file_write", {"path": "notes/todo.txt", "content": "hello"}, context)
    assert written.success is True
    assert written.artifacts[0].content == "notes/todo.txt"
    assert (tmp_path / "alice" / "notes" / "todo.txt").read_text() == "hello"

    registry.execute("file_write", {"path": "notes/todo.txt", "content": " world", "append": True}, context)
    read = registry.execute("file_read", {"path": "notes/todo.txt"}, context)
    assert read.output == "hello world"

    listing = registry.execute("file_list", {"recursive": True}, context)
    assert listing.output.splitlines() == ["notes/", "notes/todo.txt"]

    escaped = registry.execute("file_read", {"path": "../../etc/passwd"}, context)
    assert escaped.success is False
    assert escaped.error.startswith("PermissionError")

    other_owner = registry.execute("file_read", {"path": "notes/todo.txt"}, _context(tmp_path, "bob"))
    assert other_owner.success is False


def test_file_tools_require_workspace_root() -> None:
    registry = build_default_registry()

    result = registry.execute("file_list", {}, ToolContext(owner_id="alice", session_id="t"))

    assert result.success is False
    assert "Workspace root is not configured" in result.error


def test_shell_exec_runs_in_workspace(tmp_path: Path) -> None:
    registry = build_default_registry()
    context = _context(tmp_path)

    ok = registry.execute("shell_exec", {"command": "echo hello"}, context)
    assert ok.success is True
    assert ok.output.strip() == "hello"

    failed = registry.execute("shell_exec", {"command": "exit 3"}, context)
    assert failed.success is False
    assert failed.metadata["returncode"] == 3


def test_http_get_rejects_non_http_schemes(tmp_path: Path) -> None:
    registry = build_default_registry()

    result = registry.execute("http_get", {"url": "file:///etc/passwd"}, _context(tmp_path))

    assert result.success is False
    assert "Unsupported URL scheme" in result.error
