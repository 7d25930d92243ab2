"""
Restricted execution context for plugin code.

Plugin source is validated statically, compiled, and executed against a
fresh globals dict holding only:

    - a whitelist of builtins (``print`` routed to the plugin's logger)
    - a policy-checked ``__import__`` that hands out read-only proxies of
      whitelisted modules
    - ``api``: the plugin's restricted handle
    - ``plugin``: a plain dict copy of the plugin's metadata
    - ``__name__``

Security Measures:
    - Import restrictions (whitelist, blocked list wins)
    - No dunder names, no dunder attributes beyond __init__ / __name__ / __doc__
    - No private attributes
    - No ``mro`` lookups (they reach BaseException)
    - Keyword class patterns (``case C(attr=x)``) obey the attribute rules;
      positional class patterns are rejected
    - No frame / code object attributes (gi_frame, f_globals, tb_frame, ...)
    - No ``format`` / ``format_map`` attribute calls (format-string
      attribute lookups would bypass the attribute checks)
    - No star or relative imports
    - Module proxies omit members that read attributes or evaluate strings
      by name (functools.wraps, singledispatch, ...)
    - Execution timeout for asynchronous lifecycle callbacks
    - Anything a plugin raises, BaseException subclasses included, becomes
      a SandboxLoadError or SandboxRuntimeError

This is a best-effort capability boundary for third-party plugins, not an
isolation boundary against code that can already run in the host process.

The timeout cannot preempt synchronous code. A module body, or a
synchronous callback, that never returns blocks the event loop; only
awaitables returned by callbacks are bounded by ``max_execution_time``.

Example:
    from saltshaker.plugins.sandbox import PluginSandbox, SandboxPolicy

    sandbox = PluginSandbox(SandboxPolicy(max_execution_time=5.0))
    namespace = sandbox.load("demo", source, api, {"id": "demo"})
    on_init = namespace.get("on_init")
    if on_init:
        await sandbox.call("demo", on_init, api)
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import importlib
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import CodeType, ModuleType, SimpleNamespace
from typing import Any, Callable

from saltshaker.events.bus import describe_error, is_host_interrupt
from saltshaker.plugins.errors import SandboxLoadError, SandboxRuntimeError, SandboxViolationError

logger = logging.getLogger(__name__)


# Attributes that reach interpreter frames or code objects
FRAME_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom",
    "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "ag_await",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
    "tb_frame", "tb_next",
})

# str.format and friends resolve "{0.attr}" lookups outside the AST checks
FORMAT_ATTRIBUTES = frozenset({"format", "format_map", "vformat", "get_field"})

# type.mro() hands out base classes, BaseException included
TYPE_ATTRIBUTES = frozenset({"mro"})

BLOCKED_ATTRIBUTES = FRAME_ATTRIBUTES | FORMAT_ATTRIBUTES | TYPE_ATTRIBUTES

# Dunder attributes that only reach plain values or bound initialisers
SAFE_DUNDER_ATTRIBUTES = frozenset({"__init__", "__name__", "__doc__"})

# Module members that read attributes or evaluate strings by name
PROXY_BLOCKED_NAMES = frozenset({
    "update_wrapper", "wraps", "singledispatch", "singledispatchmethod",
    "get_type_hints", "FunctionType",
})


@dataclass
class SandboxPolicy:
    """Security policy for plugin execution.

    Attributes:
        allowed_imports: Whitelist of importable modules.
        blocked_imports: Modules never importable, even if whitelisted.
        allowed_builtins: Names copied from the real builtins module.
        max_execution_time: Timeout in seconds for awaitables returned by
            callbacks. Synchronous plugin code is not preempted.
    """

    allowed_imports: list[str] = field(default_factory=lambda: [
        "json", "math", "re", "datetime", "random", "collections",
        "itertools", "functools", "string", "statistics", "enum",
        "dataclasses", "base64",
    ])
    blocked_imports: list[str] = field(default_factory=lambda: [
        "os", "sys", "subprocess", "ctypes", "cffi", "multiprocessing",
        "socket", "urllib", "importlib", "builtins", "inspect", "gc",
        "typing",
    ])
    allowed_builtins: list[str] = field(default_factory=lambda: [
        "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable",
        "chr", "dict", "divmod", "enumerate", "filter", "float",
        "frozenset", "hex", "int", "isinstance", "issubclass", "iter",
        "len", "list", "map", "max", "min", "next", "oct", "ord", "pow",
        "range", "repr", "reversed", "round", "set", "slice", "sorted",
        "str", "sum", "tuple", "type", "zip",
        "object", "super", "property", "staticmethod", "classmethod",
        "Exception", "ArithmeticError", "AttributeError", "IndexError",
        "KeyError", "LookupError", "NotImplementedError", "RuntimeError",
        "StopIteration", "StopAsyncIteration", "TypeError", "ValueError",
        "ZeroDivisionError",
    ])
    max_execution_time: float = 30.0

    def is_import_allowed(self, module_name: str) -> bool:
        for blocked in self.blocked_imports:
            if module_name == blocked or module_name.startswith(f"{blocked}."):
                return False

        for allowed in self.allowed_imports:
            if module_name == allowed or module_name.startswith(f"{allowed}."):
                return True

        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed_imports": list(self.allowed_imports),
            "blocked_imports": list(self.blocked_imports),
            "allowed_builtins": list(self.allowed_builtins),
            "max_execution_time": self.max_execution_time,
        }


@dataclass
class SandboxViolation:
    """One static-validation finding.

    Attributes:
        violation_type: Short machine-readable kind.
        message: Human-readable description.
        lineno: Source line, when known.
        timestamp: When the violation was detected.
    """

    violation_type: str
    message: str
    lineno: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        where = f"line {self.lineno}: " if self.lineno is not None else ""
        return f"{where}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation_type": self.violation_type,
            "message": self.message,
            "lineno": self.lineno,
            "timestamp": self.timestamp.isoformat(),
        }


class _SourceValidator(ast.NodeVisitor):
    """Collects violations from a parsed plugin module."""

    def __init__(self) -> None:
        self.violations: list[SandboxViolation] = []

    def _flag(self, node: ast.AST, violation_type: str, message: str) -> None:
        self.violations.append(SandboxViolation(
            violation_type=violation_type,
            message=message,
            lineno=getattr(node, "lineno", None),
        ))

    def _check_attribute(self, node: ast.AST, attr: str) -> None:
        if attr in SAFE_DUNDER_ATTRIBUTES:
            return
        if attr.startswith("__"):
            self._flag(node, "dunder_attribute", f"Access to attribute '{attr}' is not allowed")
        elif attr.startswith("_"):
            self._flag(node, "private_attribute", f"Access to private attribute '{attr}' is not allowed")
        elif attr in FRAME_ATTRIBUTES:
            self._flag(node, "frame_attribute", f"Access to frame attribute '{attr}' is not allowed")
        elif attr in FORMAT_ATTRIBUTES:
            self._flag(node, "format_attribute", f"Use of '.{attr}' is not allowed")
        elif attr in TYPE_ATTRIBUTES:
            self._flag(node, "type_attribute", f"Use of '.{attr}' is not allowed")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__") and node.id != "__name__":
            self._flag(node, "dunder_name", f"Use of '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        self._check_attribute(node, node.attr)
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        # Keyword patterns are attribute reads: case C(attr=value)
        for attr in node.kwd_attrs:
            self._check_attribute(node, attr)
        if node.patterns:
            self._flag(
                node,
                "positional_class_pattern",
                "Positional class patterns are not allowed; use keyword patterns",
            )
        self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.asname and alias.asname.startswith("__"):
                self._flag(node, "dunder_name", f"Use of '{alias.asname}' is not allowed")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self._flag(node, "relative_import", "Relative imports are not allowed")
        for alias in node.names:
            if alias.name == "*":
                self._flag(node, "star_import", f"'from {node.module} import *' is not allowed")
            elif alias.name.startswith("_"):
                self._flag(node, "private_import", f"Import of private name '{alias.name}' is not allowed")
        self.generic_visit(node)


def validate_source(source: str, filename: str = "<plugin>") -> list[SandboxViolation]:
    """Statically check plugin source.

    Raises:
        SyntaxError: If the source does not parse.
    """
    tree = ast.parse(source, filename=filename, mode="exec")
    validator = _SourceValidator()
    validator.visit(tree)
    return validator.violations


def _module_proxy(module: ModuleType) -> SimpleNamespace:
    # Public, non-module attributes only; mutations never reach the real module
    public = {
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_")
        and name not in PROXY_BLOCKED_NAMES
        and not isinstance(value, ModuleType)
    }
    return SimpleNamespace(**public)


def _safe_getattr(obj: Any, name: str, *default: Any) -> Any:
    # str subclasses could override startswith and __eq__
    if type(name) is not str:
        raise TypeError("attribute name must be a string")
    if name.startswith("_") or name in BLOCKED_ATTRIBUTES:
        raise AttributeError(f"Access to attribute '{name}' is not allowed")
    return getattr(obj, name, *default)


def _safe_hasattr(obj: Any, name: str) -> bool:
    try:
        _safe_getattr(obj, name)
    except AttributeError:
        return False
    return True


def _callback_name(func: Any) -> str:
    # Guest objects can make even __name__ lookups raise
    try:
        name = getattr(func, "__name__", "callback")
    except Exception:
        return "callback"
    return name if type(name) is str else "callback"


class PluginSandbox:
    """Compiles and runs plugin code under a SandboxPolicy.

    Attributes:
        _policy: The security policy to enforce.
        _execution_count: Number of modules executed.
        _total_violations: Violations recorded across all loads.
    """

    def __init__(self, policy: SandboxPolicy | None = None):
        self._policy = policy or SandboxPolicy()
        self._execution_count = 0
        self._total_violations: list[SandboxViolation] = []

    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    def set_policy(self, policy: SandboxPolicy) -> None:
        self._policy = policy

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def compile(self, plugin_id: str, source: str) -> CodeType:
        """Validate and compile plugin source.

        Raises:
            SandboxViolationError: If static validation finds violations.
            SandboxLoadError: If the source does not parse.
        """
        filename = f"<plugin:{plugin_id}>"
        try:
            violations = validate_source(source, filename)
            if not violations:
                return compile(source, filename, "exec")
        except SyntaxError as e:
            raise SandboxLoadError(f"Syntax error in plugin {plugin_id}: {e}", plugin_id=plugin_id) from e

        self._total_violations.extend(violations)
        summary = "; ".join(str(v) for v in violations)
        raise SandboxViolationError(f"Plugin {plugin_id} violates sandbox policy: {summary}", plugin_id=plugin_id)

    def build_globals(
        self,
        plugin_id: str,
        api: Any,
        plugin_info: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Fresh globals for one plugin module."""
        safe_builtins: dict[str, Any] = {
            name: getattr(builtins, name)
            for name in self._policy.allowed_builtins
            if hasattr(builtins, name)
        }
        safe_builtins["getattr"] = _safe_getattr
        safe_builtins["hasattr"] = _safe_hasattr
        safe_builtins["__build_class__"] = builtins.__build_class__
        safe_builtins["__import__"] = self._make_importer(plugin_id)

        log = getattr(api, "log", None)
        if callable(log):
            safe_builtins["print"] = lambda *args, **_: log(*args)
        else:
            safe_builtins["print"] = lambda *args, **_: None

        return {
            "__builtins__": safe_builtins,
            "__name__": f"saltshaker_plugin_{plugin_id}",
            "api": api,
            "plugin": dict(plugin_info or {}),
        }

    def _make_importer(self, plugin_id: str) -> Callable[..., Any]:
        policy = self._policy

        def restricted_import(
            name: str,
            globals: Any = None,
            locals: Any = None,
            fromlist: Any = (),
            level: int = 0,
        ) -> Any:
            if type(name) is not str:
                raise ImportError("Module name must be a string")
            if level:
                raise ImportError("Relative imports are not allowed in plugins")
            if not policy.is_import_allowed(name):
                logger.warning(f"Plugin {plugin_id} tried to import blocked module '{name}'")
                raise ImportError(f"Import of '{name}' blocked by sandbox policy")
            if "." in name and not fromlist:
                raise ImportError(f"Use 'from {name} import ...' instead of 'import {name}'")
            return _module_proxy(importlib.import_module(name))

        return restricted_import

    def execute(self, plugin_id: str, code: CodeType, namespace: dict[str, Any]) -> None:
        """Run a compiled module body in its namespace.

        Raises:
            SandboxLoadError: If the module body raises.
        """
        self._execution_count += 1
        try:
            exec(code, namespace)
        except BaseException as e:
            if is_host_interrupt(e):
                raise
            raise SandboxLoadError(
                f"Plugin {plugin_id} failed while loading: {describe_error(e)}",
                plugin_id=plugin_id,
            ) from e

    def load(
        self,
        plugin_id: str,
        source: str,
        api: Any,
        plugin_info: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Validate, compile and execute plugin source.

        Returns:
            The module namespace after execution.
        """
        code = self.compile(plugin_id, source)
        namespace = self.build_globals(plugin_id, api, plugin_info)
        self.execute(plugin_id, code, namespace)
        return namespace

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def call(self, plugin_id: str, func: Callable[..., Any], *args: Any) -> Any:
        """Invoke a guest callback, awaiting it under the policy timeout.

        Raises:
            SandboxRuntimeError: If the callback raises or times out.
        """
        name = _callback_name(func)
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self._policy.max_execution_time)
            return result
        except asyncio.TimeoutError as e:
            raise SandboxRuntimeError(
                f"Plugin {plugin_id} {name}() timed out after {self._policy.max_execution_time}s",
                plugin_id=plugin_id,
            ) from e
        except BaseException as e:
            if is_host_interrupt(e):
                raise
            raise SandboxRuntimeError(
                f"Plugin {plugin_id} {name}() failed: {describe_error(e)}",
                plugin_id=plugin_id,
            ) from e

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_execution_stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for violation in self._total_violations:
            counts[violation.violation_type] = counts.get(violation.violation_type, 0) + 1
        return {
            "execution_count": self._execution_count,
            "total_violations": len(self._total_violations),
            "violations_by_type": counts,
        }

    def get_recent_violations(self, limit: int = 100) -> list[SandboxViolation]:
        return self._total_violations[-limit:]
