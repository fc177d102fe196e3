"""Built-in tool implementations and the default registry."""

from __future__ import annotations

import ast
import math
import operator
import re
import subprocess
from pathlib import Path
from typing import Any
from urllib import error, parse, request

from agent_engine.models import Artifact, ToolResult
from agent_engine.storage.cache import TTLCache
from agent_engine.tools.registry import ToolRegistry, ToolSpec
from agent_engine.tools.schemas import ToolContext, ToolParameter

_BINARY_OPERATORS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPERATORS: dict[type[ast.unaryop], Any] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MATH_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "floor": math.floor,
    "ceil": math.ceil,
}
_MATH_CONSTANTS: dict[str, float] = {"pi": math.pi, "e": math.e, "tau": math.tau}
_MAX_EXPONENT = 1000

_THINK_APPROACHES: dict[str, list[str]] = {
    "step_by_step": [
        "Restate the problem",
        "List what is known",
        "Break the work into ordered steps",
        "Identify the next concrete action",
    ],
    "pros_cons": [
        "List the candidate options",
        "Pros of each option",
        "Cons of each option",
        "Pick the option with the best trade-off",
    ],
    "brainstorm": [
        "Generate several distinct ideas",
        "Note unusual or risky ideas separately",
        "Shortlist the most promising ideas",
    ],
}

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_OWNER_SAFE = re.compile(r"[^A-Za-z0-9_.-]")


def calculate(args: dict[str, Any], context: ToolContext) -> ToolResult:
    expression = str(args["expression"]).strip()
    tree = ast.parse(expression, mode="eval")
    value = _evaluate(tree.body)
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        rendered = str(int(value))
    else:
        rendered = str(value)
    return ToolResult(success=True, output=rendered, metadata={"expression": expression})


def _evaluate(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(
        node.value, bool
    ):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ValueError(f"Exponent too large: {right}")
        return _BINARY_OPERATORS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.Name) and node.id in _MATH_CONSTANTS:
        return _MATH_CONSTANTS[node.id]
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _MATH_FUNCTIONS
        and not node.keywords
    ):
        return _MATH_FUNCTIONS[node.func.id](*[_evaluate(arg) for arg in node.args])
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def think(args: dict[str, Any], context: ToolContext) -> ToolResult:
    approach = args.get("approach") or "step_by_step"
    prompts = _THINK_APPROACHES.get(approach)
    if prompts is None:
        raise ValueError(f"Unknown approach '{approach}'; use one of {sorted(_THINK_APPROACHES)}")
    lines = [f"Problem: {args['problem'].strip()}", f"Approach: {approach}"]
    lines.extend(f"{index}. {prompt}" for index, prompt in enumerate(prompts, start=1))
    return ToolResult(success=True, output="\n".join(lines), metadata={"approach": approach})


def summarize(args: dict[str, Any], context: ToolContext) -> ToolResult:
    max_points = int(args.get("max_points") or 5)
    if max_points < 1:
        raise ValueError("max_points must be >= 1")
    text = " ".join(str(args["text"]).split())
    sentences = [sentence.strip() for sentence in _SENTENCE_SPLIT.split(text) if sentence.strip()]
    points = sentences[:max_points]
    return ToolResult(
        success=True,
        output="\n".join(f"- {point}" for point in points),
        metadata={"points": len(points), "sentences": len(sentences)},
    )


def file_read(args: dict[str, Any], context: ToolContext) -> ToolResult:
    target = _resolve_workspace_path(context, args["path"])
    if not target.is_file():
        return ToolResult(success=False, error=f"File not found: {args['path']}")
    content = target.read_text(encoding=args.get("encoding") or "utf-8")
    return ToolResult(success=True, output=content, metadata={"bytes": len(content.encode())})


def file_write(args: dict[str, Any], context: ToolContext) -> ToolResult:
    target = _resolve_workspace_path(context, args["path"])
    target.parent.mkdir(parents=True, exist_ok=True)
    mode = "a" if args.get("append") else "w"
    with target.open(mode, encoding="utf-8") as handle:
        handle.write(args["content"])
    relative = target.relative_to(_owner_workspace(context)).as_posix()
    return ToolResult(
        success=True,
        output=f"Wrote {len(args['content'])} characters to {relative}",
        artifacts=[Artifact(type="file", content=relative, name=target.name)],
    )


def file_list(args: dict[str, Any], context: ToolContext) -> ToolResult:
    root = _owner_workspace(context)
    target = _resolve_workspace_path(context, args.get("path") or ".")
    if not target.is_dir():
        return ToolResult(success=False, error=f"Directory not found: {args.get('path')}")
    pattern = "**/*" if args.get("recursive") else "*"
    entries = sorted(
        path.relative_to(root).as_posix() + ("/" if path.is_dir() else "")
        for path in target.glob(pattern)
    )
    return ToolResult(success=True, output="\n".join(entries), metadata={"count": len(entries)})


def _owner_workspace(context: ToolContext) -> Path:
    if context.workspace_root is None:
        raise RuntimeError("Workspace root is not configured")
    owner = _OWNER_SAFE.sub("_", context.owner_id) or "_"
    root = (Path(context.workspace_root) / owner).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _resolve_workspace_path(context: ToolContext, raw_path: str) -> Path:
    root = _owner_workspace(context)
    target = (root / str(raw_path).lstrip("/")).resolve()
    if target != root and not target.is_relative_to(root):
        raise PermissionError(f"Path escapes the workspace: {raw_path}")
    return target


def build_shell_exec(*, timeout_s: float):
    def shell_exec(args: dict[str, Any], context: ToolContext) -> ToolResult:
        cwd = _resolve_workspace_path(context, args.get("cwd") or ".")
        completed = subprocess.run(
            args["command"],
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        output = completed.stdout
        if completed.stderr:
            output = f"{output}\n[stderr]\n{completed.stderr}" if output else completed.stderr
        if completed.returncode != 0:
            return ToolResult(
                success=False,
                output=output,
                error=f"Command exited with status {completed.returncode}",
                metadata={"returncode": completed.returncode},
            )
        return ToolResult(success=True, output=output, metadata={"returncode": 0})

    return shell_exec


def build_http_get(*, timeout_s: float, max_bytes: int = 200_000):
    def http_get(args: dict[str, Any], context: ToolContext) -> ToolResult:
        url = str(args["url"]).strip()
        scheme = parse.urlparse(url).scheme
        if scheme not in {"http", "https"}:
            raise ValueError(f"Unsupported URL scheme: {scheme or '(none)'}")
        req = request.Request(url=url, method="GET", headers={"User-Agent": "agent-engine/0.1"})
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                status = response.status
                content_type = response.headers.get("Content-Type", "")
                raw = response.read(max_bytes)
        except error.HTTPError as exc:
            return ToolResult(
                success=False,
                error=f"HTTP {exc.code} for {url}",
                metadata={"status": exc.code},
            )
        except error.URLError as exc:
            return ToolResult(success=False, error=f"Request failed: {exc.reason}")
        return ToolResult(
            success=True,
            output=raw.decode("utf-8", errors="replace"),
            metadata={"status": status, "content_type": content_type},
        )

    return http_get


def default_tool_specs(*, shell_timeout_s: float = 30.0, http_timeout_s: float = 15.0) -> list[ToolSpec]:
    return [
        ToolSpec(
            name="calculate",
            description="Evaluate an arithmetic expression (math functions such as sqrt, log, sin allowed).",
            fn=calculate,
            category="data",
            cacheable=True,
            parameters=(
                ToolParameter(
                    name="expression",
                    type="string",
                    description="Expression to evaluate, e.g. '2 * (3 + 4)'",
                    required=True,
                ),
            ),
        ),
        ToolSpec(
            name="think",
            description="Structure reasoning about a problem before acting. Has no side effects.",
            fn=think,
            category="system",
            parameters=(
                ToolParameter(
                    name="problem",
                    type="string",
                    description="Problem or question to reason about",
                    required=True,
                ),
                ToolParameter(
                    name="approach",
                    type="string",
                    description="One of step_by_step, pros_cons, brainstorm",
                    default="step_by_step",
                ),
            ),
        ),
        ToolSpec(
            name="summarize",
            description="Extract the leading key sentences of a long text as bullet points.",
            fn=summarize,
            category="data",
            cacheable=True,
            parameters=(
                ToolParameter(name="text", type="string", description="Text to summarize", required=True),
                ToolParameter(
                    name="max_points",
                    type="integer",
                    description="Maximum number of bullet points",
                    default=5,
                ),
            ),
        ),
        ToolSpec(
            name="file_read",
            description="Read a text file from the task owner's workspace.",
            fn=file_read,
            category="file",
            parameters=(
                ToolParameter(name="path", type="string", description="Workspace-relative path", required=True),
                ToolParameter(name="encoding", type="string", description="File encoding", default="utf-8"),
            ),
        ),
        ToolSpec(
            name="file_write",
            description="Write text to a file in the task owner's workspace.",
            fn=file_write,
            category="file",
            parameters=(
                ToolParameter(name="path", type="string", description="Workspace-relative path", required=True),
                ToolParameter(name="content", type="string", description="Text to write", required=True),
                ToolParameter(
                    name="append",
                    type="boolean",
                    description="Append instead of overwriting",
                    default=False,
                ),
            ),
        ),
        ToolSpec(
            name="file_list",
            description="List files in the task owner's workspace.",
            fn=file_list,
            category="file",
            parameters=(
                ToolParameter(name="path", type="string", description="Workspace-relative directory", default="."),
                ToolParameter(name="recursive", type="boolean", description="List recursively", default=False),
            ),
        ),
        ToolSpec(
            name="shell_exec",
            description="Run a shell command inside the task owner's workspace.",
            fn=build_shell_exec(timeout_s=shell_timeout_s),
            category="system",
            requires_confirmation=True,
            timeout_s=shell_timeout_s + 5.0,
            parameters=(
                ToolParameter(name="command", type="string", description="Command line to run", required=True),
                ToolParameter(
                    name="cwd",
                    type="string",
                    description="Workspace-relative working directory",
                    default=".",
                ),
            ),
        ),
        ToolSpec(
            name="http_get",
            description="Fetch a URL over HTTP(S) and return the response body as text.",
            fn=build_http_get(timeout_s=http_timeout_s),
            category="web",
            cacheable=True,
            timeout_s=http_timeout_s + 5.0,
            parameters=(
                ToolParameter(name="url", type="string", description="Absolute http(s) URL", required=True),
            ),
        ),
    ]


def build_default_registry(
    *,
    cache: TTLCache | None = None,
    tool_timeout_s: float = 60.0,
    output_max_chars: int = 2000,
    shell_timeout_s: float = 30.0,
    http_timeout_s: float = 15.0,
) -> ToolRegistry:
    registry = ToolRegistry(
        default_timeout_s=tool_timeout_s,
        output_max_chars=output_max_chars,
        cache=cache,
    )
    registry.register_many(
        default_tool_specs(shell_timeout_s=shell_timeout_s, http_timeout_s=http_timeout_s)
    )
    return registry
