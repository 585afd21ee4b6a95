"""
Sandboxed execution of tenant transform scripts.

Scripts are Python source compiled with RestrictedPython (no imports, no
dunder access, no eval/exec/open) and run in a spawned child process with
CPU and address-space rlimits. The parent waits at most the wall-clock
timeout, then kills the child. Pending work the script started, including
in-flight HTTP calls, dies with it.

A script is the body of `def transform(payload, context):` (or a full
definition of that function). Available names besides safe builtins:

    http.get/post/put/patch/delete(url, json=, data=, headers=, params=, timeout=)
        -> {"status": int, "data": parsed json or text, "headers": dict}
    lookup(lookup_type, code)
    schedule_delivery(delay_seconds=None, at=None, payload=None)
    get(obj, "a.b[0].c", default=None), epoch(value=None),
    uppercase(s), lowercase(s), trim(s), format_phone(s), json.dumps/json.loads

Returning None skips the delivery.
"""
import ast
import asyncio
import json
import logging
import multiprocessing
import operator
import re
import sys
import textwrap
import time
import weakref
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Optional

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<transform>"
MAX_RESULT_BYTES = 5 * 1024 * 1024
_FULL_DEFINITION_RE = re.compile(r"^def\s+transform\s*\(", re.MULTILINE)

# One semaphore per event loop bounds concurrent child processes
_semaphores: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = (
    weakref.WeakKeyDictionary()
)


class SandboxError(Exception):
    """Script failed: compile, runtime, timeout, crash or bad result."""

    def __init__(self, message: str, kind: str = "runtime"):
        super().__init__(message)
        self.kind = kind


@dataclass
class SandboxLimits:
    timeout_seconds: float = 60.0
    memory_mb: int = 256
    http_timeout_seconds: float = 10.0
    max_http_calls: int = 20
    enforce_https: bool = False
    block_private_networks: bool = True

    @classmethod
    def from_settings(cls, timeout_seconds: Optional[float] = None) -> "SandboxLimits":
        from eventrelay.config import get_settings
        settings = get_settings()
        return cls(
            timeout_seconds=timeout_seconds or settings.sandbox_timeout_seconds,
            memory_mb=settings.sandbox_memory_mb,
            http_timeout_seconds=settings.sandbox_http_timeout_seconds,
            max_http_calls=settings.sandbox_max_http_calls,
            enforce_https=settings.enforce_https,
            block_private_networks=settings.block_private_networks,
        )


@dataclass
class SandboxResult:
    value: Any
    scheduled: list[dict] = field(default_factory=list)
    printed: list[str] = field(default_factory=list)
    http_calls: int = 0
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def _wrap(source: str) -> tuple[str, int]:
    """Return (module source, number of lines added before the user's code)."""
    source = textwrap.dedent(source or "").strip("\n")
    if _FULL_DEFINITION_RE.search(source):
        return source + "\n", 0
    body = textwrap.indent(source, "    ") if source.strip() else "    return None"
    return "def transform(payload, context):\n" + body + "\n", 1


def _reject_imports(wrapped: str, offset: int) -> None:
    # RestrictedPython compiles imports and only fails them at run time
    try:
        tree = ast.parse(wrapped, filename=SCRIPT_FILENAME)
    except SyntaxError:
        return
    lines = sorted(
        node.lineno - offset for node in ast.walk(tree) if isinstance(node, (ast.Import, ast.ImportFrom))
    )
    if lines:
        raise SandboxError(
            "; ".join(f"Line {n}: import statements are not allowed" for n in lines), kind="compile",
        )


def compile_script(source: str):
    """Compile under RestrictedPython. Raises SandboxError(kind="compile")."""
    from RestrictedPython import compile_restricted_exec

    wrapped, offset = _wrap(source)
    _reject_imports(wrapped, offset)
    result = compile_restricted_exec(wrapped, filename=SCRIPT_FILENAME)
    if result.errors or result.code is None:
        raise SandboxError("; ".join(result.errors) or "Script did not compile", kind="compile")
    return result.code


def validate_script(source: str) -> list[str]:
    """Compile-only check for rule edits. Returns error messages (empty = valid)."""
    try:
        compile_script(source)
    except SandboxError as e:
        return [str(e)]
    return []


# ---------------------------------------------------------------------------
# Child process side
# ---------------------------------------------------------------------------


_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "|=": operator.ior,
    "^=": operator.ixor,
    "&=": operator.iand,
}


def _inplacevar(op: str, x, y):
    fn = _INPLACE_OPS.get(op)
    if fn is None:
        raise SyntaxError(f"Unsupported in-place operator {op}")
    return fn(x, y)


def _apply(func, *args, **kwargs):
    return func(*args, **kwargs)


def _print_factory(sink: list):
    class ScriptPrint:
        def __init__(self, _getattr_=None):
            pass

        def write(self, text):
            sink.append(str(text))

        def _call_print(self, *objects, **kwargs):
            sink.append(" ".join(str(o) for o in objects))

        def __call__(self):
            return "\n".join(sink)

    return ScriptPrint


class ScriptHttpClient:
    """Synchronous HTTP client exposed to scripts as `http`."""

    def __init__(self, limits: dict):
        import httpx

        self._timeout = limits["http_timeout_seconds"]
        self._max_calls = limits["max_http_calls"]
        self._enforce_https = limits["enforce_https"]
        self._block_private = limits["block_private_networks"]
        self._client = httpx.Client(timeout=self._timeout, follow_redirects=False, trust_env=False)
        self.calls = 0

    def _request(self, method, url, json=None, data=None, headers=None, params=None, timeout=None):
        from eventrelay.utils.url_check import check_url

        if self.calls >= self._max_calls:
            raise RuntimeError(f"HTTP call limit reached ({self._max_calls})")
        check_url(url, enforce_https=self._enforce_https, block_private=self._block_private)
        self.calls += 1

        per_call = min(float(timeout), self._timeout) if timeout else self._timeout
        response = self._client.request(
            method, url, json=json, data=data, headers=headers, params=params, timeout=per_call,
        )
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return {"status": response.status_code, "data": body, "headers": dict(response.headers)}

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._request("PUT", url, **kwargs)

    def patch(self, url, **kwargs):
        return self._request("PATCH", url, **kwargs)

    def delete(self, url, **kwargs):
        return self._request("DELETE", url, **kwargs)

    def close(self):
        self._client.close()


def _format_phone(value, default_country: str = "1"):
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if not digits:
        return None
    if len(digits) == 10:
        return "+" + default_country + digits
    return "+" + digits


def _epoch(value=None):
    from eventrelay.utils.timezone import parse_timestamp

    if value is None:
        return int(time.time())
    parsed = parse_timestamp(value)
    return int(parsed.timestamp()) if parsed else None


def _build_globals(job: dict, scheduled: list, printed: list, http: ScriptHttpClient) -> dict:
    from RestrictedPython import safe_builtins, limited_builtins, utility_builtins
    from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
    from RestrictedPython.Guards import (
        full_write_guard,
        guarded_iter_unpack_sequence,
        guarded_unpack_sequence,
        safer_getattr,
    )
    from eventrelay.schemas.rules import LookupPolicy
    from eventrelay.services.lookups import LookupResolver
    from eventrelay.utils.paths import MISSING, get_path

    builtins = dict(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update(utility_builtins)
    builtins.update({
        "dict": dict, "list": list, "enumerate": enumerate, "min": min, "max": max,
        "sum": sum, "any": any, "all": all, "map": map, "filter": filter, "reversed": reversed,
    })

    resolver = LookupResolver(job["lookup_tables"], LookupPolicy.model_validate(job["lookup_policy"]))

    def schedule_delivery(delay_seconds=None, at=None, payload=None):
        if (delay_seconds is None) == (at is None):
            raise ValueError("schedule_delivery needs exactly one of delay_seconds or at")
        scheduled.append({"delay_seconds": delay_seconds, "at": at, "payload": payload})
        return True

    def get(obj, path, default=None):
        value = get_path(obj, path)
        return default if value is MISSING else value

    return {
        "__builtins__": builtins,
        "__name__": "transform_script",
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_print_": _print_factory(printed),
        "http": http,
        "lookup": resolver,
        "schedule_delivery": schedule_delivery,
        "get": get,
        "epoch": _epoch,
        "uppercase": lambda s: s.upper() if isinstance(s, str) else s,
        "lowercase": lambda s: s.lower() if isinstance(s, str) else s,
        "trim": lambda s: s.strip() if isinstance(s, str) else s,
        "format_phone": _format_phone,
        "json": SimpleNamespace(dumps=json.dumps, loads=json.loads),
    }


def _apply_resource_limits(memory_mb: int, cpu_seconds: float) -> None:
    if sys.platform == "win32":
        return
    import math
    import resource

    def clamp(kind, value):
        _, hard = resource.getrlimit(kind)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        return value

    cpu = clamp(resource.RLIMIT_CPU, math.ceil(cpu_seconds) + 1)
    resource.setrlimit(resource.RLIMIT_CPU, (cpu, clamp(resource.RLIMIT_CPU, cpu + 1)))

    # Address space is the current size plus the script's allowance
    current = 0
    try:
        with open("/proc/self/statm") as f:
            current = int(f.read().split()[0]) * resource.getpagesize()
    except (OSError, ValueError, IndexError):
        current = 512 * 1024 * 1024
    address_space = clamp(resource.RLIMIT_AS, current + memory_mb * 1024 * 1024)
    resource.setrlimit(resource.RLIMIT_AS, (address_space, address_space))


def _script_line(exc: BaseException, offset: int) -> Optional[int]:
    tb = exc.__traceback__
    line = None
    while tb is not None:
        if tb.tb_frame.f_code.co_filename == SCRIPT_FILENAME:
            line = tb.tb_lineno - offset
        tb = tb.tb_next
    return line


def _child_main(conn, job: dict) -> None:
    """Entry point of the sandbox process. Sends one JSON message and exits."""
    scheduled: list = []
    printed: list = []
    http = None
    try:
        code = compile_script(job["source"])
        _, offset = _wrap(job["source"])
        http = ScriptHttpClient(job["limits"])
        namespace = _build_globals(job, scheduled, printed, http)
        _apply_resource_limits(job["limits"]["memory_mb"], job["limits"]["timeout_seconds"])

        exec(code, namespace)
        transform_fn = namespace.get("transform")
        if not callable(transform_fn):
            raise SandboxError("Script does not define transform()", kind="compile")
        try:
            value = transform_fn(job["payload"], job["context"])
        except Exception as e:
            line = _script_line(e, offset)
            where = f" (line {line})" if line else ""
            raise SandboxError(f"{type(e).__name__}: {e}{where}") from e

        try:
            message = json.dumps({
                "ok": True,
                "value": value,
                "scheduled": scheduled,
                "printed": printed[-100:],
                "http_calls": http.calls,
            })
        except (TypeError, ValueError) as e:
            raise SandboxError(f"Script result is not JSON serializable: {e}", kind="result") from e
    except SandboxError as e:
        message = json.dumps({"ok": False, "kind": e.kind, "error": str(e), "printed": printed[-100:]})
    except MemoryError:
        message = json.dumps({"ok": False, "kind": "memory", "error": "Script exceeded memory limit"})
    except Exception as e:
        message = json.dumps({"ok": False, "kind": "runtime", "error": f"{type(e).__name__}: {e}"})
    finally:
        if http is not None:
            http.close()

    conn.send_bytes(message.encode())
    conn.close()


# ---------------------------------------------------------------------------
# Parent side
# ---------------------------------------------------------------------------


def _semaphore() -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    sem = _semaphores.get(loop)
    if sem is None:
        from eventrelay.config import get_settings
        sem = asyncio.Semaphore(get_settings().sandbox_max_concurrency)
        _semaphores[loop] = sem
    return sem


async def run_script(
    source: str,
    payload: Any,
    context: dict,
    lookup_tables: Optional[dict] = None,
    lookup_policy: Optional[dict] = None,
    limits: Optional[SandboxLimits] = None,
) -> SandboxResult:
    """
    Execute a transform script in a fresh child process.
    Raises SandboxError for every failure mode, including the timeout.
    """
    limits = limits or SandboxLimits.from_settings()
    job = {
        "source": source,
        "payload": payload,
        "context": context,
        "lookup_tables": lookup_tables or {},
        "lookup_policy": lookup_policy or {},
        "limits": {
            "timeout_seconds": limits.timeout_seconds,
            "memory_mb": limits.memory_mb,
            "http_timeout_seconds": limits.http_timeout_seconds,
            "max_http_calls": limits.max_http_calls,
            "enforce_https": limits.enforce_https,
            "block_private_networks": limits.block_private_networks,
        },
    }

    async with _semaphore():
        ctx = multiprocessing.get_context("spawn")
        receiver, sender = ctx.Pipe(duplex=False)
        process = ctx.Process(target=_child_main, args=(sender, job), daemon=True)
        started = time.monotonic()
        # spawn pickles the job into the child; keep that off the event loop
        await asyncio.to_thread(process.start)
        sender.close()
        try:
            ready = await asyncio.to_thread(receiver.poll, limits.timeout_seconds)
            if not ready:
                raise SandboxError(
                    f"Script timed out after {limits.timeout_seconds:g}s", kind="timeout"
                )
            try:
                raw = await asyncio.to_thread(receiver.recv_bytes, MAX_RESULT_BYTES)
            except EOFError:
                await asyncio.to_thread(process.join, 1)
                raise SandboxError(
                    f"Script process exited without a result (exit code {process.exitcode})",
                    kind="crash",
                )
            except OSError as e:
                raise SandboxError(f"Script result too large: {e}", kind="result") from e
        finally:
            if process.is_alive():
                process.kill()
            await asyncio.to_thread(process.join, 5)
            receiver.close()

    duration_ms = int((time.monotonic() - started) * 1000)
    message = json.loads(raw)
    for line in message.get("printed") or []:
        logger.debug("script output: %s", line[:500])
    if not message.get("ok"):
        raise SandboxError(message.get("error") or "Script failed", kind=message.get("kind", "runtime"))

    return SandboxResult(
        value=message.get("value"),
        scheduled=message.get("scheduled") or [],
        printed=message.get("printed") or [],
        http_calls=message.get("http_calls", 0),
        duration_ms=duration_ms,
    )
