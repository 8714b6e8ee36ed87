"""Command line entry point: optimize a signal-driven equity/cash allocation and write reports."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

import numpy as np
import pandas as pd
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__
from .backtest import BacktestResult, compute_performance, simulate
from .constraints import AllocationConstraints
from .data import MarketSeries, load_market_csv, load_signal_csv
from .normalization import NORMALIZATION_METHODS, normalize_signals
from .objective import ObjectiveSpec
from .optimizer import CompositeConfig, OptimizationResult, optimize_composite
from .robust import RobustConfig, robust_optimize
from .runid import compute_run_id, digest_files
from .scenario import stress_test
from .signals import generate_demo_signals

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"
LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
ARTIFACTS = ("equity.csv", "metrics.csv", "stress.csv", "result.json", "equity.png")


class RunConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    market_csv: Optional[str] = None
    signal_csv: Optional[str] = None
    macro_csv: Optional[str] = None
    risk_col: str = "risk"
    cash_col: str = "cash"
    out: str = "alloc_out"
    mode: Literal["composite", "robust"] = "composite"
    normalize: Optional[str] = None
    norm_window: int = Field(ge=1, default=252)
    norm_min_history: int = Field(ge=1, default=63)
    tanh_scale: float = Field(gt=0.0, default=2.0)
    mapping: str = "Sigmoid"
    sigmoid_k: float = Field(gt=0.0, default=5.0)
    n_thresholds: int = Field(ge=1, default=3)
    in_sample_pct: float = Field(gt=0.0, le=1.0, default=0.7)
    n_folds: int = Field(ge=1, default=5)
    walk_forward: bool = False
    reopt_freq: int = Field(ge=1, default=252)
    sensitivity: bool = False
    n_boot: int = Field(ge=1, default=100)
    rebalance_freq: int = Field(ge=1, default=21)
    tx_cost: float = Field(ge=0.0, default=0.001)
    weight_step: float = Field(gt=0.0, le=1.0, default=0.1)
    refine: bool = True
    eq_min: float = Field(ge=0.0, le=1.0, default=0.0)
    eq_max: float = Field(ge=0.0, le=1.0, default=1.0)
    sig_wt_min: float = Field(ge=0.0, le=1.0, default=0.0)
    sig_wt_max: float = Field(ge=0.0, le=1.0, default=1.0)
    max_turnover: Optional[float] = Field(default=None, ge=0.0)
    max_dd: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    priority: Literal["None", "EquityBounds", "Turnover", "Drawdown"] = "None"
    alpha: float = 1.0
    beta: float = 0.0
    gamma: float = 0.5
    use_sortino: bool = False
    use_calmar: bool = False
    min_vol: bool = False
    risk_parity: bool = False
    lambda_l2: float = Field(ge=0.0, default=0.1)
    kappa_turnover: float = Field(ge=0.0, default=0.05)
    seed: int = 42
    max_workers: Optional[int] = Field(default=None, ge=1)
    skip_plot: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


_DEFAULTS = RunConfig().model_dump()


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(map(str, err.get("loc", []))) or "<root>"
        lines.append(f"{loc}: {err.get('msg')}")
    return "Invalid config:\n  " + "\n  ".join(lines)


def validate_config(data: Dict[str, Any]) -> RunConfig:
    """Validate a raw mapping, turning pydantic errors into ``SystemExit``."""

    try:
        return RunConfig.model_validate(data)
    except ValidationError as exc:
        raise SystemExit(_format_validation_error(exc))


def load_run_config(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON mapping of run parameters."""

    text = Path(path).read_text(encoding="utf-8")
    if Path(path).suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit(f"Invalid config:\n  <root>: expected a mapping in {path}")
    return data


def build_parser() -> argparse.ArgumentParser:
    """Construct the argument parser for the allocation CLI."""

    d = _DEFAULTS
    parser = argparse.ArgumentParser(
        prog="signal-allocator",
        description="Optimize a signal-driven equity/cash allocation and backtest it.",
    )
    parser.add_argument("--config", type=str, default=None, help="YAML/JSON file containing run parameters")
    parser.add_argument("--market-csv", type=str, default=d["market_csv"], help="CSV with date, risk and cash returns")
    parser.add_argument(
        "--signal-csv",
        type=str,
        default=d["signal_csv"],
        help="CSV with date plus one column per signal (demo signals are built when omitted)",
    )
    parser.add_argument("--macro-csv", type=str, default=d["macro_csv"], help="Macro series for demo signals")
    parser.add_argument("--risk-col", type=str, default=d["risk_col"])
    parser.add_argument("--cash-col", type=str, default=d["cash_col"])
    parser.add_argument("--out", type=str, default=d["out"], help="Output directory")
    parser.add_argument("--mode", choices=["composite", "robust"], default=d["mode"])
    parser.add_argument(
        "--normalize",
        type=str,
        default=d["normalize"],
        help=f"Normalize raw signals first ({', '.join(NORMALIZATION_METHODS)})",
    )
    parser.add_argument("--norm-window", type=int, default=d["norm_window"])
    parser.add_argument("--norm-min-history", type=int, default=d["norm_min_history"])
    parser.add_argument("--tanh-scale", type=float, default=d["tanh_scale"])
    parser.add_argument("--mapping", type=str, default=d["mapping"], help="Mapping function for robust mode")
    parser.add_argument("--sigmoid-k", type=float, default=d["sigmoid_k"])
    parser.add_argument("--n-thresholds", type=int, default=d["n_thresholds"])
    parser.add_argument("--in-sample-pct", type=float, default=d["in_sample_pct"])
    parser.add_argument("--n-folds", type=int, default=d["n_folds"])
    parser.add_argument("--walk-forward", action="store_true", default=d["walk_forward"])
    parser.add_argument("--reopt-freq", type=int, default=d["reopt_freq"])
    parser.add_argument("--sensitivity", action="store_true", default=d["sensitivity"])
    parser.add_argument("--n-boot", type=int, default=d["n_boot"])
    parser.add_argument("--rebalance-freq", type=int, default=d["rebalance_freq"])
    parser.add_argument("--tx-cost", type=float, default=d["tx_cost"], help="Proportional cost per unit turnover")
    parser.add_argument("--weight-step", type=float, default=d["weight_step"])
    parser.add_argument("--no-refine", dest="refine", action="store_false", default=d["refine"])
    parser.add_argument("--eq-min", type=float, default=d["eq_min"])
    parser.add_argument("--eq-max", type=float, default=d["eq_max"])
    parser.add_argument("--sig-wt-min", type=float, default=d["sig_wt_min"])
    parser.add_argument("--sig-wt-max", type=float, default=d["sig_wt_max"])
    parser.add_argument("--max-turnover", type=float, default=d["max_turnover"])
    parser.add_argument("--max-dd", type=float, default=d["max_dd"], help="Drawdown limit (fraction)")
    parser.add_argument("--priority", type=str, default=d["priority"])
    parser.add_argument("--alpha", type=float, default=d["alpha"])
    parser.add_argument("--beta", type=float, default=d["beta"])
    parser.add_argument("--gamma", type=float, default=d["gamma"])
    parser.add_argument("--use-sortino", action="store_true", default=d["use_sortino"])
    parser.add_argument("--use-calmar", action="store_true", default=d["use_calmar"])
    parser.add_argument("--min-vol", action="store_true", default=d["min_vol"])
    parser.add_argument("--risk-parity", action="store_true", default=d["risk_parity"])
    parser.add_argument("--lambda-l2", type=float, default=d["lambda_l2"])
    parser.add_argument("--kappa-turnover", type=float, default=d["kappa_turnover"])
    parser.add_argument("--seed", type=int, default=d["seed"])
    parser.add_argument("--max-workers", type=int, default=d["max_workers"], help="Worker threads for scoring")
    parser.add_argument("--skip-plot", action="store_true", default=d["skip_plot"])
    parser.add_argument("--log-level", type=str, default=d["log_level"])
    return parser


def parse_run_config(argv: Optional[Iterable[str]] = None) -> RunConfig:
    """Merge config file values (as parser defaults) with command-line flags."""

    args = list(argv) if argv is not None else sys.argv[1:]
    parser = build_parser()
    preliminary, _ = parser.parse_known_args(args=args)
    if preliminary.config:
        blob = validate_config(load_run_config(Path(preliminary.config))).model_dump(exclude_unset=True)
        parser.set_defaults(**blob)
    parsed = vars(parser.parse_args(args=args))
    parsed.pop("config", None)
    return validate_config(parsed)


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


def _load_signals(cfg: RunConfig, market: MarketSeries) -> pd.DataFrame:
    if cfg.signal_csv:
        frame = load_signal_csv(Path(cfg.signal_csv), market)
    else:
        macro = load_signal_csv(Path(cfg.macro_csv)) if cfg.macro_csv else None
        frame = generate_demo_signals(market, macro).to_frame(market.dates)
    if cfg.normalize:
        frame = normalize_signals(
            frame,
            method=cfg.normalize,
            window=cfg.norm_window,
            tanh_scale=cfg.tanh_scale,
            min_history=cfg.norm_min_history,
        )
    return frame


def _optimize(
    cfg: RunConfig,
    signals: pd.DataFrame,
    market: MarketSeries,
    objective: ObjectiveSpec,
    constraints: AllocationConstraints,
) -> OptimizationResult:
    if cfg.mode == "robust":
        config = RobustConfig(
            mapping_method=cfg.mapping,
            sigmoid_k=cfg.sigmoid_k,
            n_thresholds=cfg.n_thresholds,
            n_folds=cfg.n_folds,
            walk_forward=cfg.walk_forward,
            reopt_freq=cfg.reopt_freq,
            walk_forward_split_pct=cfg.in_sample_pct,
            sensitivity=cfg.sensitivity,
            n_boot=cfg.n_boot,
            rebalance_freq=cfg.rebalance_freq,
            tx_cost=cfg.tx_cost,
            weight_step=cfg.weight_step,
            seed=cfg.seed,
            max_workers=cfg.max_workers,
        )
        return robust_optimize(signals, market, config, objective, constraints)
    config = CompositeConfig(
        n_thresholds=cfg.n_thresholds,
        in_sample_pct=cfg.in_sample_pct,
        rebalance_freq=cfg.rebalance_freq,
        tx_cost=cfg.tx_cost,
        weight_step=cfg.weight_step,
        refine=cfg.refine,
        seed=cfg.seed,
        max_workers=cfg.max_workers,
    )
    return optimize_composite(signals, market, config, objective, constraints)


def _plot_equity(backtest: BacktestResult, path: Path, title: str) -> None:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    plt.figure()
    plt.plot(backtest.dates, backtest.wealth, label="strategy")
    plt.plot(backtest.dates, backtest.bench_60_40_wealth, label="60/40")
    plt.plot(backtest.dates, backtest.equity_wealth, label="100% risk")
    plt.title(f"Equity ({title})")
    plt.xlabel("Date")
    plt.ylabel("Wealth")
    plt.legend()
    plt.tight_layout()
    plt.savefig(path, dpi=160)
    plt.close()


def _write_manifest(
    out_dir: Path,
    cfg: RunConfig,
    config_path: Optional[str],
    files: List[Dict[str, Any]],
    optimization_time: float,
) -> str:
    manifest: Dict[str, Any] = {
        "config": cfg.model_dump(),
        "optimization_time": optimization_time,
        "schema_version": SCHEMA_VERSION,
        "package_version": __version__,
        "python_version": sys.version,
        "validated": True,
        "files": files,
    }
    if config_path is not None:
        manifest["config_path"] = str(config_path)
    # interpreter and wall-clock timing vary between identical runs
    digest_view = {
        k: v for k, v in manifest.items() if k not in {"python_version", "optimization_time", "files"}
    }
    manifest["run_id"] = compute_run_id(digest_view, files)
    (out_dir / "run_config.json").write_text(
        json.dumps(manifest, indent=2, sort_keys=True, default=_json_default), encoding="utf-8"
    )
    return manifest["run_id"]


def run(cfg: RunConfig, config_path: Optional[str] = None) -> Dict[str, Any]:
    """Execute one run and write its artifacts; returns paths and headline numbers."""

    if not cfg.market_csv:
        raise ValueError("--market-csv must be provided via CLI or config")
    out_dir = Path(cfg.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    market = load_market_csv(Path(cfg.market_csv), cfg.risk_col, cfg.cash_col)
    signals = _load_signals(cfg, market)
    constraints = AllocationConstraints(
        eq_min=cfg.eq_min,
        eq_max=cfg.eq_max,
        sig_wt_min=cfg.sig_wt_min,
        sig_wt_max=cfg.sig_wt_max,
        max_turnover=cfg.max_turnover,
        max_dd=cfg.max_dd,
        priority=cfg.priority,
    )
    objective = ObjectiveSpec(
        alpha=cfg.alpha,
        beta=cfg.beta,
        gamma=cfg.gamma,
        use_sortino=cfg.use_sortino,
        use_calmar=cfg.use_calmar,
        min_vol=cfg.min_vol,
        risk_parity=cfg.risk_parity,
        lambda_l2=cfg.lambda_l2,
        kappa_turnover=cfg.kappa_turnover,
    )
    result = _optimize(cfg, signals, market, objective, constraints)

    backtest = simulate(result.equity_weights, market, cfg.rebalance_freq, cfg.tx_cost, constraints)
    performance = compute_performance(backtest)
    stress = stress_test(backtest)

    daily = backtest.to_frame().join(result.daily_frame(market.dates)[["composite", "status"]])
    daily.index.name = "date"
    daily.to_csv(out_dir / "equity.csv")
    performance.table.to_csv(out_dir / "metrics.csv")
    stress.to_csv(out_dir / "stress.csv", index=False)

    payload = result.to_dict()
    optimization_time = payload.pop("optimization_time")
    payload["mode"] = cfg.mode
    payload["full_sample"] = performance.to_dict()
    payload["backtest"] = backtest.summary()
    (out_dir / "result.json").write_text(
        json.dumps(payload, indent=2, sort_keys=True, default=_json_default), encoding="utf-8"
    )

    if not cfg.skip_plot:
        _plot_equity(backtest, out_dir / "equity.png", cfg.mode)

    files = digest_files(out_dir / name for name in ARTIFACTS)
    run_id = _write_manifest(out_dir, cfg, config_path, files, optimization_time)
    logger.info("Run %s written to %s", run_id[:12], out_dir)
    return {
        "out_dir": out_dir,
        "run_id": run_id,
        "sharpe": performance.sharpe,
        "feasible": result.feasible,
        "message": result.message,
    }


def main(args: Optional[Iterable[str]] = None) -> None:
    argv = list(args) if args is not None else sys.argv[1:]
    cfg = parse_run_config(argv)
    logging.basicConfig(level=getattr(logging, cfg.log_level), format=LOG_FORMAT)
    preliminary, _ = build_parser().parse_known_args(args=argv)
    summary = run(cfg, preliminary.config)
    print(f"Run {summary['run_id'][:12]}: Sharpe={summary['sharpe']:.3f} -> {summary['out_dir']}")


if __name__ == "__main__":
    main()
