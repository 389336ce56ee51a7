"""User-defined payload transformation.

A transform script is the body of a Python function receiving ``payload``
and returning the replacement payload::

    return {"lead_id": payload["id"], "email": payload.get("email")}

Scripts are compiled with RestrictedPython: a small builtins table, no
imports, no underscore names, and attribute/item access routed through
guards that also refuse the interpreter's frame, generator and code
objects. They only ever see a copy of the payload.

:class:`SandboxedTransformer` runs them in child processes that are killed
when they overrun, so a runaway script cannot hold on to a shared thread or
reach the service's memory. :func:`apply_transform` turns any failure into a
fallback to the original payload so a bad script never blocks delivery.
"""
from __future__ import annotations

import ast
import asyncio
import builtins
import copy
import json
import multiprocessing
import operator
import signal
import textwrap
from multiprocessing.connection import Connection
from typing import Any, Callable, Protocol

import structlog
from RestrictedPython import compile_restricted
from RestrictedPython.Guards import guarded_iter_unpack_sequence, guarded_unpack_sequence

from webhook_service.core.exceptions import TransformError

logger = structlog.get_logger(__name__)

_FUNCTION_NAME = "transform"

_ALLOWED_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "dict",
    "enumerate",
    "filter",
    "float",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "range",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "KeyError",
    "ValueError",
    "TypeError",
)
SAFE_BUILTINS: dict[str, Any] = {name: getattr(builtins, name) for name in _ALLOWED_BUILTINS}

# generator/coroutine/frame/traceback/code internals carry no leading underscore
BLOCKED_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "tb_", "co_")
# str.format and format_map walk attribute paths inside the format string
BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})

_INPLACE_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_START_METHOD = "forkserver" if "forkserver" in multiprocessing.get_all_start_methods() else "spawn"


class PayloadTransformer(Protocol):
    """Async ``(payload, script) -> payload``; raises TransformError or TimeoutError."""

    async def __call__(self, payload: Any, script: str, *, timeout_seconds: float) -> Any: ...


def _guarded_getattr(obj: Any, name: str) -> Any:
    if name.startswith(BLOCKED_ATTRIBUTE_PREFIXES) or name in BLOCKED_ATTRIBUTES:
        raise AttributeError(f"access to {name!r} is not allowed")
    return getattr(obj, name)


def _guarded_getitem(obj: Any, key: Any) -> Any:
    if isinstance(key, str) and key.startswith("__") and key.endswith("__"):
        raise KeyError(key)
    return obj[key]


def _guarded_write(obj: Any) -> Any:
    if isinstance(obj, (dict, list, set)):
        return obj
    raise TypeError(f"{type(obj).__name__} objects cannot be modified")


def _inplace(op: str, target: Any, value: Any) -> Any:
    return _INPLACE_OPERATORS[op](target, value)


def _script_globals() -> dict[str, Any]:
    return {
        "__builtins__": SAFE_BUILTINS,
        "__name__": "transform_script",
        "_getattr_": _guarded_getattr,
        "_getitem_": _guarded_getitem,
        "_getiter_": iter,
        "_write_": _guarded_write,
        "_inplacevar_": _inplace,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_apply_": lambda fn, *args, **kwargs: fn(*args, **kwargs),
    }


class _ScriptGuard(ast.NodeVisitor):
    def visit_Import(self, node: ast.Import) -> None:
        raise TransformError("imports are not allowed in transform scripts")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        raise TransformError("imports are not allowed in transform scripts")

    def visit_Global(self, node: ast.Global) -> None:
        raise TransformError("global statements are not allowed in transform scripts")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        raise TransformError("nonlocal statements are not allowed in transform scripts")


class ScriptTransformer:
    """Compiles and runs a script in the current process.

    Used inside the sandbox workers; call it directly only with trusted
    scripts or in tests.
    """

    def compile(self, script: str):
        if not script or not script.strip():
            raise TransformError("transform script is empty")
        source = f"def {_FUNCTION_NAME}(payload):\n{textwrap.indent(script.strip(), '    ')}\n"
        try:
            tree = ast.parse(source, filename="<transform>")
        except SyntaxError as exc:
            raise TransformError(f"syntax error: {exc.msg} (line {exc.lineno})") from exc
        _ScriptGuard().visit(tree)
        try:
            code = compile_restricted(tree, filename="<transform>", mode="exec")
        except SyntaxError as exc:
            raise TransformError(f"script rejected: {exc}") from exc
        namespace = _script_globals()
        exec(code, namespace)
        return namespace[_FUNCTION_NAME]

    def __call__(self, payload: Any, script: str) -> Any:
        fn = self.compile(script)
        try:
            result = fn(copy.deepcopy(payload))
        except Exception as exc:
            raise TransformError(f"{type(exc).__name__}: {exc}") from exc
        if result is None:
            raise TransformError("transform script returned nothing")
        try:
            # normalise to plain JSON types (tuples -> lists, etc.)
            return json.loads(json.dumps(result))
        except (TypeError, ValueError) as exc:
            raise TransformError(f"transform result is not JSON-serializable: {exc}") from exc


def _serve(conn: Connection, transformer: Callable[[Any, str], Any]) -> None:
    """Worker process loop: answer ``(payload, script)`` with ``(ok, result_or_error)``."""
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    while True:
        try:
            payload, script = conn.recv()
        except EOFError:
            return
        try:
            reply = (True, transformer(payload, script))
        except TransformError as exc:
            reply = (False, str(exc))
        except Exception as exc:
            reply = (False, f"{type(exc).__name__}: {exc}")
        conn.send(reply)


def _mark_ready(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class _Worker:
    def __init__(self, ctx: Any, transformer: Callable[[Any, str], Any]):
        self.conn, child_conn = ctx.Pipe()
        self.process = ctx.Process(
            target=_serve,
            args=(child_conn, transformer),
            name="webhook-transform",
            daemon=True,
        )
        self.process.start()
        child_conn.close()

    async def run(self, payload: Any, script: str, timeout_seconds: float) -> tuple[bool, Any]:
        loop = asyncio.get_running_loop()
        readable = loop.create_future()
        fd = self.conn.fileno()
        loop.add_reader(fd, _mark_ready, readable)
        try:
            try:
                self.conn.send((payload, script))
            except OSError as exc:
                raise TransformError("transform worker is gone") from exc
            await asyncio.wait_for(readable, timeout=timeout_seconds)
        finally:
            loop.remove_reader(fd)
        try:
            return self.conn.recv()
        except EOFError as exc:
            raise TransformError(f"transform worker exited with code {self.process.exitcode}") from exc

    def stop(self) -> None:
        self.conn.close()
        if self.process.is_alive():
            self.process.kill()
        self.process.join(timeout=1.0)


class SandboxedTransformer:
    """Runs each script in a child process that is killed on timeout.

    At most *max_workers* scripts run at once. Idle workers are reused; one
    that timed out, died or was cancelled mid-call is killed and replaced on
    demand. The timeout covers the script's run, not the wait for a worker.
    """

    def __init__(
        self,
        transformer: Callable[[Any, str], Any] | None = None,
        *,
        max_workers: int = 4,
    ):
        self._transformer = transformer or ScriptTransformer()
        self._ctx = multiprocessing.get_context(_START_METHOD)
        if _START_METHOD == "forkserver":
            self._ctx.set_forkserver_preload([__name__])
        self._slots = asyncio.Semaphore(max_workers)
        self._idle: list[_Worker] = []

    def _spawn(self) -> _Worker:
        return _Worker(self._ctx, self._transformer)

    async def __call__(self, payload: Any, script: str, *, timeout_seconds: float) -> Any:
        async with self._slots:
            worker = self._idle.pop() if self._idle else await asyncio.to_thread(self._spawn)
            try:
                ok, value = await worker.run(payload, script, timeout_seconds)
            except BaseException:
                worker.stop()
                raise
            self._idle.append(worker)
        if not ok:
            raise TransformError(value)
        return value

    def close(self) -> None:
        while self._idle:
            self._idle.pop().stop()


async def apply_transform(
    transformer: PayloadTransformer,
    payload: Any,
    script: str,
    *,
    timeout_seconds: float,
    webhook_id: Any = None,
) -> Any:
    """Transformed *payload*, or *payload* itself if the script fails in any way."""
    try:
        return await transformer(payload, script, timeout_seconds=timeout_seconds)
    except TransformError as exc:
        logger.warning("webhook_transform failed", webhook_id=str(webhook_id), error=str(exc))
    except asyncio.TimeoutError:
        logger.warning(
            "webhook_transform timed out",
            webhook_id=str(webhook_id),
            timeout_seconds=timeout_seconds,
        )
    except Exception:
        logger.exception("webhook_transform crashed", webhook_id=str(webhook_id))
    return payload
