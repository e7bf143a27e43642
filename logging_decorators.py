# logging_decorators.py
from __future__ import annotations
import time, functools, inspect, random
from dataclasses import is_dataclass
from typing import Any, Callable, Dict, Iterable
from loguru import logger

_REDACT_DEFAULT = {"api_key", "apikey", "authorization", "password", "token", "secret"}

def _redact(obj: Any, redact_keys: set[str], max_len: int, max_items: int) -> Any:
    """Lightweight redaction + truncation for logs."""
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if str(k).lower() in redact_keys:
                out[k] = "******" if v else v
            else:
                out[k] = _redact(v, redact_keys, max_len, max_items)
        return out
    if isinstance(obj, (list, tuple, set)):
        seq = list(obj)
        cut = min(len(seq), max_items)
        trimmed = [_redact(x, redact_keys, max_len, max_items) for x in seq[:cut]]
        if len(seq) > cut: trimmed.append(f"... (+{len(seq)-cut} more)")
        return trimmed if not isinstance(obj, tuple) else tuple(trimmed)
    if isinstance(obj, str):
        return (obj if len(obj) <= max_len else (obj[:max_len] + f"...(+{len(obj)-max_len} chars)"))
    if is_dataclass(obj) and not isinstance(obj, type):
        return type(obj).__name__
    return obj

def _default_summary(ret: Any) -> Dict[str, Any]:
    """Heuristics: summarize index operation results."""
    if ret is None:
        return {"changed": False}
    if isinstance(ret, list):
        return {"items": len(ret)}
    if isinstance(ret, dict):
        if "chunks" in ret and "files" in ret: return {"files": ret["files"], "chunks": ret["chunks"], "dims": ret.get("dims")}
        if "changed" in ret: return {"changed": ret["changed"], "relative": ret.get("relative")}
        return {"keys": list(ret.keys())[:6]}
    if isinstance(ret, float):
        return {"value": round(ret, 4)}
    return {"type": type(ret).__name__}

def log_call(
    name: str | None = None,
    *,
    level: str = "INFO",
    slow_ms: int = 800,                # warn if slower than this
    sample: float = 1.0,               # 0<sample<=1: probabilistic sampling
    redact: Iterable[str] = _REDACT_DEFAULT,
    arg_max_len: int = 200,
    arg_max_items: int = 20,
    summarize: Callable[[Any], Dict[str, Any]] | None = None,
    include_return: bool = False,      # if True, log summarized return payload
):
    """
    Decorator to log entry/exit, args, duration, and failures.
    Use logger.opt(depth=1) to keep file:line pointing at the wrapped function.
    """
    redact_keys = {str(k).lower() for k in redact}
    summary_fn = summarize or _default_summary

    def decorator(fn: Callable):
        if getattr(fn, "__logged__", False):
            return fn  # already wrapped

        qual = name or fn.__qualname__
        sig = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            if sample < 1.0 and random.random() > sample:
                return fn(*args, **kwargs)

            # arg snapshot (skip self/cls)
            try:
                ba = sig.bind_partial(*args, **kwargs)
                ba.apply_defaults()
                call_args = {k: v for k, v in ba.arguments.items() if k not in {"self", "cls"}}
                call_args = _redact(call_args, redact_keys, arg_max_len, arg_max_items)
            except TypeError:
                call_args = "<uninspectable>"

            lg = logger.opt(depth=1)
            lg.log(level, "→ {} args={}", qual, call_args)

            t0 = time.perf_counter()
            try:
                ret = fn(*args, **kwargs)
            except Exception as e:
                dur_ms = (time.perf_counter() - t0) * 1000.0
                lg.error("✗ {} failed in {:.0f}ms: {}: {}", qual, dur_ms, type(e).__name__, e)
                raise
            dur_ms = (time.perf_counter() - t0) * 1000.0
            summary = summary_fn(ret)
            if dur_ms >= slow_ms:
                lg.warning("✓ {} done in {:.0f}ms (SLOW) summary={}", qual, dur_ms, summary)
            else:
                lg.log(level, "✓ {} done in {:.0f}ms summary={}", qual, dur_ms, summary)
            if include_return:
                lg.debug("↩ {} return={}", qual, _redact(ret, redact_keys, arg_max_len, arg_max_items))
            return ret

        wrapper.__logged__ = True
        return wrapper
    return decorator
