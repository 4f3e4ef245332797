"""Sandboxed execution of user/AI-generated strategy scripts.

A strategy is plain Python source run against a fixed set of bindings:

- ``data``: ``{symbol: (bar, ...)}`` with read-only bar mappings
  (``timestamp``, ``open``, ``high``, ``low``, ``close``, ``volume``).
- ``parameters``: read-only strategy parameters.
- ``portfolio``: read-only live view, ``portfolio["cash"]`` and
  ``portfolio["positions"]``.
- ``trades``: read-only live view of accepted fills.
- ``buy(symbol, quantity, price, timestamp)`` / ``sell(...)``.
- ``sma(prices, period)`` / ``rsi(prices, period=14)``.

Isolation is layered. The source is statically checked before it runs
(no imports, no class definitions, no underscore or frame attributes), it runs
with a reduced ``__builtins__`` that has no I/O, reflection or clock, and it
runs in a separate worker process that is terminated once the wall-clock
budget is spent. Each run gets its own process and ledger.
"""

from __future__ import annotations

import ast
import logging
import math
import multiprocessing
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Sequence

from .errors import StrategyExecutionError, StrategyTimeoutError
from .indicators import rsi, sma
from .portfolio import TradeEvent, TradeLedger
from .timestamps import normalise_timestamp

logger = logging.getLogger(__name__)

STRATEGY_FILENAME = "<strategy>"

_BAR_FIELDS = ("timestamp", "open", "high", "low", "close", "volume")

# Attribute names that lead from ordinary objects to frames, code objects or
# interpreter internals. Anything starting with "_" is rejected separately.
_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "ag_code",
        "ag_frame",
        "cr_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "format",
        "format_map",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "mro",
        "tb_frame",
        "tb_next",
    }
)

_SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "pow": pow,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "slice": slice,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "None": None,
    "True": True,
    "False": False,
    "ArithmeticError": ArithmeticError,
    "Exception": Exception,
    "IndexError": IndexError,
    "KeyError": KeyError,
    "LookupError": LookupError,
    "StopIteration": StopIteration,
    "TypeError": TypeError,
    "ValueError": ValueError,
    "ZeroDivisionError": ZeroDivisionError,
}


@dataclass
class SimulationOutput:
    """State left behind by a strategy script after it finished."""

    trades: List[TradeEvent]
    cash: float
    positions: Dict[str, int]
    rejected_orders: int = 0
    rejections: Dict[str, int] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)


class _StrategyValidator(ast.NodeVisitor):
    def _reject(self, node: ast.AST, reason: str) -> None:
        line = getattr(node, "lineno", "?")
        raise StrategyExecutionError(f"Strategy rejected (line {line}): {reason}")

    def visit_Import(self, node: ast.Import) -> None:
        self._reject(node, "imports are not allowed")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._reject(node, "imports are not allowed")

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._reject(node, "class definitions are not allowed")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES:
            self._reject(node, f"access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._reject(node, f"name '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        # `case str(__class__=x)` reads attributes without an Attribute node.
        for attr in node.kwd_attrs:
            if attr.startswith("_") or attr in _FORBIDDEN_ATTRIBUTES:
                self._reject(node, f"access to attribute '{attr}' is not allowed")
        self.generic_visit(node)


def validate_strategy_code(code: str) -> ast.Module:
    """Parse `code` and reject constructs that could escape the sandbox."""

    if not isinstance(code, str) or not code.strip():
        raise StrategyExecutionError("Strategy code is empty")
    try:
        tree = ast.parse(code, filename=STRATEGY_FILENAME, mode="exec")
    except SyntaxError as exc:
        raise StrategyExecutionError(
            f"SyntaxError: {exc.msg} (line {exc.lineno})"
        ) from exc
    _StrategyValidator().visit(tree)
    return tree


def _plain_bar(bar: Any) -> Dict[str, Any]:
    if isinstance(bar, Mapping):
        raw = {name: bar.get(name) for name in _BAR_FIELDS}
    else:
        raw = {name: getattr(bar, name) for name in _BAR_FIELDS}
    raw["timestamp"] = normalise_timestamp(raw["timestamp"])
    return raw


def _plain_data(historical_data: Mapping[str, Sequence[Any]]) -> Dict[str, List[Dict[str, Any]]]:
    return {
        str(symbol): [_plain_bar(bar) for bar in bars]
        for symbol, bars in historical_data.items()
    }


def _make_print(logs: List[str], max_lines: int) -> Callable[..., None]:
    def _print(*args: Any, **_kwargs: Any) -> None:
        if len(logs) < max_lines:
            logs.append(" ".join(str(a) for a in args))

    return _print


def execute_strategy(
    code: str,
    parameters: Mapping[str, Any] | None,
    historical_data: Mapping[str, Sequence[Any]],
    initial_capital: float,
    *,
    max_log_lines: int = 200,
) -> SimulationOutput:
    """Run a strategy in the current process and return the final state.

    This is the body of the worker process. It applies the static checks and
    the reduced builtins but has no time limit of its own; use
    `StrategyInterpreter` for untrusted input.
    """

    tree = validate_strategy_code(code)
    compiled = compile(tree, STRATEGY_FILENAME, "exec")

    ledger = TradeLedger(initial_capital)
    logs: List[str] = []
    data_view = MappingProxyType(
        {
            symbol: tuple(MappingProxyType(bar) for bar in bars)
            for symbol, bars in _plain_data(historical_data).items()
        }
    )

    builtins = dict(_SAFE_BUILTINS)
    builtins["print"] = _make_print(logs, max_log_lines)

    namespace: Dict[str, Any] = {
        "__builtins__": builtins,
        "__name__": "__strategy__",
        "math": math,
        "timedelta": timedelta,
        "data": data_view,
        "parameters": MappingProxyType(dict(parameters or {})),
        "portfolio": ledger.portfolio_view(),
        "trades": ledger.trades_view(),
        "buy": ledger.buy,
        "sell": ledger.sell,
        "sma": sma,
        "rsi": rsi,
    }

    try:
        exec(compiled, namespace)
    except Exception as exc:
        raise StrategyExecutionError(f"{type(exc).__name__}: {exc}") from exc

    return SimulationOutput(
        trades=ledger.trades,
        cash=ledger.cash,
        positions=ledger.positions,
        rejected_orders=ledger.rejected_orders,
        rejections=dict(ledger.rejections),
        logs=logs,
    )


def _strategy_worker(
    conn: Any,
    code: str,
    parameters: Dict[str, Any],
    historical_data: Dict[str, List[Dict[str, Any]]],
    initial_capital: float,
    max_log_lines: int,
) -> None:
    try:
        output = execute_strategy(
            code,
            parameters,
            historical_data,
            initial_capital,
            max_log_lines=max_log_lines,
        )
    except StrategyExecutionError as exc:
        conn.send(("error", str(exc)))
    except Exception as exc:  # pragma: no cover - unexpected failure in child
        conn.send(("error", f"{type(exc).__name__}: {exc}"))
    else:
        conn.send(("ok", output))
    finally:
        conn.close()


class StrategyInterpreter:
    """Runs strategy scripts in a worker process with a hard time limit."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        start_method: str = "spawn",
        max_log_lines: int = 200,
    ) -> None:
        self._timeout = float(timeout_seconds)
        self._context = multiprocessing.get_context(start_method)
        self._max_log_lines = max_log_lines

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def run(
        self,
        code: str,
        parameters: Mapping[str, Any] | None,
        historical_data: Mapping[str, Sequence[Any]],
        initial_capital: float,
    ) -> SimulationOutput:
        """Execute `code` and return the resulting ledger state.

        Raises `StrategyExecutionError` for rejected, failing or crashed
        scripts and `StrategyTimeoutError` when the budget is exceeded.
        """

        # Fail fast on syntax and sandbox violations before paying for a process.
        validate_strategy_code(code)

        reader, writer = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_strategy_worker,
            args=(
                writer,
                code,
                dict(parameters or {}),
                _plain_data(historical_data),
                float(initial_capital),
                self._max_log_lines,
            ),
            daemon=True,
        )
        process.start()
        writer.close()

        try:
            if not reader.poll(self._timeout):
                logger.warning(
                    "Strategy exceeded %.1fs budget; terminating worker pid=%s",
                    self._timeout,
                    process.pid,
                )
                raise StrategyTimeoutError(self._timeout)
            try:
                status, payload = reader.recv()
            except EOFError as exc:
                process.join(timeout=1.0)
                raise StrategyExecutionError(
                    f"Strategy process exited unexpectedly (exit code {process.exitcode})"
                ) from exc
        finally:
            if process.is_alive():
                process.terminate()
                process.join(timeout=1.0)
                if process.is_alive():
                    process.kill()
            process.join()
            reader.close()

        if status != "ok":
            raise StrategyExecutionError(str(payload))

        output: SimulationOutput = payload
        for line in output.logs:
            logger.info("[strategy] %s", line)
        return output
