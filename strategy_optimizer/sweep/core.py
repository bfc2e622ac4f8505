from __future__ import annotations

import hashlib
import json
import math
import os
import queue
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import pandas as pd
import yaml

from strategies import get_strategy
from strategies.bars import load_price_bars
from strategies.params import build_strategy_params
from strategies.registry import StrategyDefinition

from .events import EventChannel, IterationLimitExceeded, ProgressEvent, SweepFinished
from .results import BacktestMetrics, SortCriterion, results_to_frame
from .runner import (
    DEFAULT_LOG_EVERY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MIN_TRADES,
    BacktestInvoker,
    SweepConfiguration,
    SweepHandle,
    SweepState,
    start_sweep,
)
from .space import Assignment, ParameterSpace, enumerate_assignments

PREVIEW_DRY_RUN_COUNT = 5
DEFAULT_TOP_N = 20
DEFAULT_OUTPUT_ROOT = Path("outputs") / "optimizer"
EVENT_POLL_SECONDS = 0.5


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class SweepSpec:
    path: Path
    raw_text: str
    spec_hash: str
    payload: dict[str, Any]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _ensure_mapping(value: Any, field_name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"'{field_name}' must be a mapping.")
    return value


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{field_name}' must be an integer.")
    return value


def _validate_spec(payload: dict[str, Any]) -> None:
    required_top_level = ["strategy", "data_path", "parameters"]
    missing = [k for k in required_top_level if k not in payload]
    if missing:
        raise ConfigError(f"Sweep spec missing required top-level keys: {missing}")

    if not isinstance(payload["strategy"], str) or not payload["strategy"].strip():
        raise ConfigError("'strategy' must be a non-empty string.")
    if not isinstance(payload["data_path"], str) or not payload["data_path"].strip():
        raise ConfigError("'data_path' must be a non-empty string.")

    parameters = _ensure_mapping(payload["parameters"], "parameters")
    if not parameters:
        raise ConfigError("'parameters' must contain at least one parameter.")
    for key, bounds in parameters.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError("All parameter names must be non-empty strings.")
        _ensure_mapping(bounds, f"parameters.{key}")

    if "base_params" in payload and payload["base_params"] is not None:
        _ensure_mapping(payload["base_params"], "base_params")
    if "output" in payload and payload["output"] is not None:
        _ensure_mapping(payload["output"], "output")


def load_sweep_spec(spec_path: Path) -> SweepSpec:
    spec_path = Path(spec_path)
    if not spec_path.exists():
        raise FileNotFoundError(f"Sweep spec not found: {spec_path}")

    raw_text = spec_path.read_text(encoding="utf-8")
    try:
        payload = yaml.safe_load(raw_text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Sweep spec is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Sweep spec must be a YAML mapping.")

    _validate_spec(payload)
    return SweepSpec(path=spec_path, raw_text=raw_text, spec_hash=_sha256_hex(raw_text), payload=payload)


def _format_float(value: float) -> str:
    if not math.isfinite(value):
        raise ValueError("Canonicalization does not support NaN or Infinity.")
    text = format(value, ".15g")
    if text == "-0":
        return "0"
    return text


def canonical_json_dumps(value: Any) -> str:
    """Produce canonical JSON with sorted keys and stable float formatting."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    if isinstance(value, Mapping):
        items: list[str] = []
        for key in sorted(value.keys()):
            if not isinstance(key, str):
                raise TypeError("Canonical JSON only supports string dictionary keys.")
            items.append(
                f"{json.dumps(key, ensure_ascii=False, separators=(',', ':'))}:"
                f"{canonical_json_dumps(value[key])}"
            )
        return "{" + ",".join(items) + "}"
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return "[" + ",".join(canonical_json_dumps(item) for item in value) + "]"
    raise TypeError(f"Unsupported type for canonical JSON: {type(value)!r}")


def build_parameter_space(parameters: Mapping[str, Any]) -> ParameterSpace:
    try:
        return ParameterSpace.from_mapping(parameters)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid parameter range: {exc}") from exc


def build_sweep_configuration(
    spec: SweepSpec,
    *,
    min_trades: Optional[int] = None,
    sort_by: Optional[str] = None,
    max_iterations: Optional[int] = None,
) -> SweepConfiguration:
    """Turn a loaded spec plus CLI overrides into a validated SweepConfiguration."""
    payload = spec.payload
    space = build_parameter_space(payload["parameters"])

    resolved_min_trades = _as_int(
        payload.get("min_trades", DEFAULT_MIN_TRADES) if min_trades is None else min_trades,
        "min_trades",
    )
    resolved_max_iterations = _as_int(
        payload.get("max_iterations", DEFAULT_MAX_ITERATIONS) if max_iterations is None else max_iterations,
        "max_iterations",
    )
    raw_sort_by = payload.get("sort_by", SortCriterion.PROFIT_FACTOR.value) if sort_by is None else sort_by
    try:
        criterion = SortCriterion.parse(raw_sort_by)
        return SweepConfiguration(
            space=space,
            min_trades=resolved_min_trades,
            sort_by=criterion,
            max_iterations=resolved_max_iterations,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def configuration_hash(payload: Mapping[str, Any], config: SweepConfiguration) -> str:
    try:
        canonical = canonical_json_dumps(
            {
                "parameters": payload["parameters"],
                "base_params": payload.get("base_params") or {},
                "min_trades": config.min_trades,
                "sort_by": config.sort_by.value,
            }
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Sweep configuration cannot be hashed for provenance: {exc}") from exc
    return _sha256_hex(canonical)


def resolve_data_path(spec: SweepSpec) -> Path:
    data_path = Path(str(spec.payload["data_path"]))
    if not data_path.is_absolute():
        data_path = spec.path.parent / data_path
    if not data_path.exists():
        raise ConfigError(f'Historical data file "{data_path}" does not exist.')
    return data_path


def resolve_strategy(name: str) -> StrategyDefinition:
    try:
        return get_strategy(name)
    except KeyError as exc:
        raise ConfigError(str(exc.args[0])) from exc


def resolve_code_id(cwd: Path | None = None) -> str:
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            check=False,
            capture_output=True,
            text=True,
            cwd=str(cwd) if cwd is not None else None,
        )
    except Exception:  # noqa: BLE001
        return "nogit"
    if completed.returncode != 0:
        return "nogit"
    head = completed.stdout.strip()
    return head if head else "nogit"


def build_backtest_invoker(
    strategy: StrategyDefinition,
    bars: pd.DataFrame,
    base_params: Mapping[str, Any] | None = None,
) -> BacktestInvoker:
    """Bind a registered strategy and its data into a per-assignment callable."""
    fixed = dict(base_params or {})

    def invoke(assignment: Assignment) -> BacktestMetrics:
        params = build_strategy_params(strategy.default_params, fixed, assignment.as_dict())
        return strategy.backtest(bars, params)

    return invoke


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")


def _write_results_table(results_path: Path, frame: pd.DataFrame) -> None:
    results_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = results_path.with_suffix(f"{results_path.suffix}.tmp")
    frame.to_parquet(tmp_path, index=False)
    os.replace(tmp_path, results_path)


def _print_dry_run(config: SweepConfiguration) -> None:
    total = config.space.combination_count()
    print(f"[sweep] combinations={total} max_iterations={config.max_iterations}")
    if total > config.max_iterations:
        print("[sweep] dry_run would be rejected: combination count exceeds max_iterations")
    for assignment in enumerate_assignments(config.space):
        if assignment.index >= PREVIEW_DRY_RUN_COUNT:
            break
        params_json = json.dumps(assignment.as_dict(), separators=(",", ":"))
        print(f"[sweep] dry_run[{assignment.index + 1}] params={params_json}")


def _drain_events(handle: SweepHandle, channel: EventChannel) -> Optional[IterationLimitExceeded]:
    """Print channel events on this thread until the sweep is terminal.

    Ctrl-C requests a cooperative cancel; the current backtest is allowed to
    finish and partial results are still delivered.
    """
    rejection: Optional[IterationLimitExceeded] = None
    last_percent = -1
    while True:
        try:
            try:
                event = channel.get(timeout=EVENT_POLL_SECONDS)
            except queue.Empty:
                if handle.done():
                    return rejection
                continue

            if isinstance(event, ProgressEvent):
                if event.percent != last_percent:
                    last_percent = event.percent
                    eta = "n/a" if event.eta_s is None else f"{event.eta_s:.0f}s"
                    print(f"[sweep] progress {event.describe()} eta={eta}")
            elif isinstance(event, IterationLimitExceeded):
                rejection = event
                print(f"[sweep] {event.message}")
                return rejection
            elif isinstance(event, SweepFinished):
                return rejection
        except KeyboardInterrupt:
            print("[sweep] cancel requested; waiting for the current backtest to finish")
            handle.cancel()


def run_sweep(
    *,
    spec_path: Path,
    dry_run: bool = False,
    min_trades: int | None = None,
    sort_by: str | None = None,
    max_iterations: int | None = None,
    output_root: Path | None = None,
    log_every: int = DEFAULT_LOG_EVERY,
) -> dict[str, Any]:
    spec = load_sweep_spec(spec_path)
    payload = spec.payload
    config = build_sweep_configuration(
        spec,
        min_trades=min_trades,
        sort_by=sort_by,
        max_iterations=max_iterations,
    )
    strategy = resolve_strategy(payload["strategy"])
    data_path = resolve_data_path(spec)
    output_cfg = payload.get("output") or {}
    top_n = _as_int(output_cfg.get("top_n", DEFAULT_TOP_N), "output.top_n")
    if top_n <= 0:
        raise ConfigError("'output.top_n' must be positive.")
    config_hash = configuration_hash(payload, config)

    combination_count = config.space.combination_count()
    if dry_run:
        _print_dry_run(config)
        return {
            "spec_path": str(spec.path),
            "spec_hash": spec.spec_hash,
            "strategy": strategy.name,
            "combination_count": combination_count,
            "max_iterations": config.max_iterations,
            "dry_run": True,
        }

    try:
        bars = load_price_bars(data_path, strategy.required_columns)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    invoker = build_backtest_invoker(strategy, bars, payload.get("base_params") or {})

    resolved_output_root = Path(output_root) if output_root is not None else Path(
        output_cfg.get("root_dir", DEFAULT_OUTPUT_ROOT)
    )
    sweep_id = datetime.now(timezone.utc).strftime("sweep_%Y%m%d_%H%M%S")
    sweep_dir = resolved_output_root / strategy.name / sweep_id
    sweep_dir.mkdir(parents=True, exist_ok=True)
    code_id = resolve_code_id(cwd=spec.path.parent)
    if bool(output_cfg.get("save_spec_copy", True)):
        shutil.copy2(spec.path, sweep_dir / "spec_used.yaml")

    channel = EventChannel()
    handle = start_sweep(
        config,
        invoker,
        channel,
        log_every=log_every,
        progress_log_path=sweep_dir / "progress.log",
    )
    rejection = _drain_events(handle, channel)
    ranked = handle.result()
    runner = handle.runner

    provenance: dict[str, Any] = {
        "sweep_id": sweep_id,
        "strategy": strategy.name,
        "spec_path": str(spec.path),
        "spec_hash": spec.spec_hash,
        "data_path": str(data_path),
        "code_id": code_id,
        "created_utc": _utc_now_iso(),
        "state": runner.state.value,
        "combination_count": combination_count,
        "max_iterations": config.max_iterations,
        "min_trades": config.min_trades,
        "sort_by": config.sort_by.value,
        "processed": runner.processed,
        "configuration_hash": config_hash,
    }
    _write_json(sweep_dir / "provenance.json", provenance)

    summary: dict[str, Any] = {
        "sweep_id": sweep_id,
        "sweep_dir": str(sweep_dir),
        "strategy": strategy.name,
        "spec_hash": spec.spec_hash,
        "state": runner.state.value,
        "combination_count": combination_count,
        "max_iterations": config.max_iterations,
        "processed": runner.processed,
        "accepted": 0,
        "errors": len(runner.failures),
        "dry_run": False,
    }
    if runner.state is SweepState.REJECTED:
        summary["message"] = rejection.message if rejection is not None else None
        return summary

    failures = runner.failures
    if failures:
        _write_json(sweep_dir / "errors.json", [failure.as_dict() for failure in failures])

    results_df = results_to_frame(ranked or [])
    results_path = sweep_dir / "results.parquet"
    _write_results_table(results_path, results_df)
    results_df.head(top_n).to_csv(sweep_dir / f"results_top{top_n}.csv", index=False)

    summary["accepted"] = len(results_df)
    summary["results_path"] = str(results_path)
    return summary
