import errno
import fnmatch
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from devloop_core.config.settings import settings
from devloop_core.domain.models import ToolCallRequest, ToolCallResult, ToolErrorKind
from devloop_core.infrastructure.logging.logger import logger
from devloop_core.infrastructure.shell import ShellExecutionService
from devloop_core.runtime.cancellation import CancellationToken
from .definitions import ToolDef, ToolParam


ToolFunc = Callable[[Dict[str, Any], Optional[CancellationToken]], Any]
MAX_LIST_RESULTS = 500
MAX_SEARCH_RESULTS = 200


class ToolError(Exception):
    """工具处理函数主动抛出的结构化错误。"""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


class StopExecution(ToolError):
    """要求立即结束整个会话。"""

    def __init__(self, message: str):
        super().__init__(ToolErrorKind.STOP_EXECUTION, message)


class ToolExecutor:
    """按名称分发工具调用，把所有失败都折叠成 ToolCallResult。"""

    def __init__(
        self,
        tools: Dict[str, ToolFunc],
        tool_defs: Optional[List[ToolDef]] = None,
        output_limit: Optional[int] = None,
    ):
        self._tools = tools
        self._tool_defs = tool_defs or []
        self._output_limit = output_limit or settings.tool_output_limit

    @property
    def tool_defs(self) -> List[ToolDef]:
        return list(self._tool_defs)

    def execute(self, call: ToolCallRequest, token: Optional[CancellationToken] = None) -> ToolCallResult:
        if token is not None and token.is_cancelled:
            return _error(call, ToolErrorKind.CANCELLED, "Tool call cancelled")
        func = self._tools.get(call.name)
        if not func:
            return _error(call, ToolErrorKind.TOOL_NOT_REGISTERED, f"Tool '{call.name}' not registered")
        try:
            raw = func(call.arguments or {}, token)
        except ToolError as exc:
            return _error(call, exc.kind, exc.message)
        except OSError as exc:
            kind = ToolErrorKind.NO_SPACE_LEFT if exc.errno == errno.ENOSPC else ToolErrorKind.TOOL_EXECUTION_ERROR
            return _error(call, kind, str(exc))
        except Exception as exc:  # noqa: BLE001 - 需要把异常转换为工具错误
            logger.warning(
                "tool.execution_failed",
                extra={"extra": {"tool_name": call.name, "tool_call_id": call.id, "error": str(exc)}},
            )
            return _error(call, ToolErrorKind.TOOL_EXECUTION_ERROR, str(exc))
        content = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False)
        if len(content) > self._output_limit:
            content = content[: self._output_limit] + "\n... truncated ..."
        return ToolCallResult(call_id=call.id, name=call.name, output=content)


def _error(call: ToolCallRequest, kind: str, message: str) -> ToolCallResult:
    return ToolCallResult(call_id=call.id, name=call.name, error=message, error_kind=kind)


class Workspace:
    """工具可见的文件系统范围。

    相对路径基于 root 解析；解析结果必须留在 root 之内，
    除非显式允许绝对路径。
    """

    def __init__(self, root: Optional[Union[str, Path]], allow_absolute: bool = False):
        if root is None:
            root = getattr(settings, "workspace_root", None) or None
        self.root = Path(root).expanduser().resolve() if root is not None else None
        self.allow_absolute = allow_absolute

    def contains(self, path: Path) -> bool:
        if self.root is None:
            return True
        try:
            path.relative_to(self.root)
        except ValueError:
            return False
        return True

    def resolve(self, raw: Any) -> Optional[Path]:
        text = str(raw or "").strip()
        if not text:
            return None
        candidate = Path(text).expanduser()
        if candidate.is_absolute():
            target = candidate.resolve()
            return target if self.contains(target) or self.allow_absolute else None
        target = ((self.root or Path.cwd()) / candidate).resolve()
        return target if self.contains(target) else None

    def require_file_path(self, args: Dict[str, Any]) -> Path:
        path = self.resolve(args.get("path"))
        if path is None:
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, "path is missing or outside the workspace")
        return path

    def require_dir(self, raw: Any) -> Path:
        base = self.resolve(raw or ".") or self.root
        if base is None or not base.is_dir():
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, "invalid directory")
        return base

    def display(self, path: Path) -> str:
        if self.root is not None and self.contains(path):
            return str(path.relative_to(self.root))
        return str(path)

    def walk_files(self, base: Path, token: Optional[CancellationToken]) -> Iterator[Path]:
        for path in sorted(base.rglob("*")):
            if token is not None and token.is_cancelled:
                return
            if path.is_file():
                yield path


def _read_file(ws: Workspace) -> ToolFunc:
    def _run(args: Dict[str, Any], token: Optional[CancellationToken] = None) -> str:
        path = ws.require_file_path(args)
        if not path.is_file():
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, f"file not found: {ws.display(path)}")
        return path.read_text(encoding="utf-8", errors="replace")

    return _run


def _write_file(ws: Workspace) -> ToolFunc:
    def _run(args: Dict[str, Any], token: Optional[CancellationToken] = None) -> str:
        path = ws.require_file_path(args)
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, "content must be a string")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} characters to {ws.display(path)}"

    return _run


def _list_files(ws: Workspace) -> ToolFunc:
    def _run(args: Dict[str, Any], token: Optional[CancellationToken] = None) -> str:
        base = ws.require_dir(args.get("directory"))
        pattern = str(args.get("pattern") or "").strip() or "*"
        found: List[str] = []
        for path in ws.walk_files(base, token):
            if not fnmatch.fnmatch(path.name, pattern):
                continue
            if len(found) == MAX_LIST_RESULTS:
                found.append("... truncated ...")
                break
            found.append(ws.display(path))
        return "\n".join(found)

    return _run


def _search_code(ws: Workspace) -> ToolFunc:
    def _run(args: Dict[str, Any], token: Optional[CancellationToken] = None) -> str:
        needle = str(args.get("query") or "").strip()
        if not needle:
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, "empty query")
        base = ws.require_dir(args.get("directory"))
        try:
            wanted = int(args.get("max_results") or 50)
        except (TypeError, ValueError):
            wanted = 50
        wanted = max(1, min(wanted, MAX_SEARCH_RESULTS))
        hits: List[str] = []
        for path in ws.walk_files(base, token):
            try:
                lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
            except OSError:
                continue
            for number, line in enumerate(lines, start=1):
                if needle not in line:
                    continue
                hits.append(f"{ws.display(path)}:{number}: {line.strip()}")
                if len(hits) >= wanted:
                    return "\n".join(hits)
        return "\n".join(hits)

    return _run


def _run_shell_command(ws: Workspace, shell: ShellExecutionService) -> ToolFunc:
    def _run(args: Dict[str, Any], token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        command = str(args.get("command") or "").strip()
        if not command:
            raise ToolError(ToolErrorKind.INVALID_TOOL_PARAMS, "command is required")
        result = shell.execute(command, ws.root or Path.cwd(), token)
        if result.aborted:
            raise ToolError(ToolErrorKind.CANCELLED, "Command cancelled")
        return {
            "command": command,
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "output": result.output,
        }

    return _run


def default_tools(
    workspace_root: Optional[Union[str, Path]] = None,
    allow_absolute: Optional[bool] = None,
    shell: Optional[ShellExecutionService] = None,
) -> Dict[str, ToolFunc]:
    if allow_absolute is None:
        allow_absolute = settings.allow_tool_absolute_path
    ws = Workspace(workspace_root, allow_absolute)
    shell = shell or ShellExecutionService(settings.shell_timeout)
    return {
        "read_file": _read_file(ws),
        "write_file": _write_file(ws),
        "list_files": _list_files(ws),
        "search_code": _search_code(ws),
        "run_shell_command": _run_shell_command(ws, shell),
    }


def _param(name: str, description: str, required: bool = False, **schema: Any) -> ToolParam:
    return ToolParam(name=name, description=description, required=required, schema={"type": "string", **schema})


def _tool(name: str, description: str, *params: ToolParam) -> ToolDef:
    return ToolDef(name=name, description=description, params={p.name: p for p in params})


def default_tool_defs() -> List[ToolDef]:
    rel_path = "File path relative to the workspace root"
    return [
        _tool("read_file", "Read a UTF-8 text file inside the workspace", _param("path", rel_path, True)),
        _tool(
            "write_file",
            "Create or overwrite a text file inside the workspace",
            _param("path", rel_path, True),
            _param("content", "Full file content to write", True),
        ),
        _tool(
            "list_files",
            "List files below a directory",
            _param("directory", "Start directory, defaults to the workspace root"),
            _param("pattern", "Optional filename glob such as *.py"),
        ),
        _tool(
            "search_code",
            "Search files for a literal text fragment",
            _param("directory", "Directory to search, defaults to the workspace root"),
            _param("query", "Text to match", True),
            _param(
                "max_results",
                "Maximum number of matches, default 50",
                type="integer",
                minimum=1,
                maximum=MAX_SEARCH_RESULTS,
            ),
        ),
        _tool(
            "run_shell_command",
            "Run a shell command in the workspace root and return exit code and output",
            _param("command", "Command line passed to the system shell", True),
        ),
    ]


def create_default_executor(
    workspace_root: Optional[Union[str, Path]] = None,
    shell: Optional[ShellExecutionService] = None,
    cfg=settings,
) -> ToolExecutor:
    return ToolExecutor(
        default_tools(workspace_root or cfg.workspace_root, cfg.allow_tool_absolute_path, shell),
        default_tool_defs(),
        output_limit=cfg.tool_output_limit,
    )
