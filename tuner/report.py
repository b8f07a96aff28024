"""Report generation for optimisation runs and chains."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, TYPE_CHECKING

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
import yaml

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from tuner.run import ChainResult, RunResult

LOGGER = logging.getLogger(__name__)


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def history_frame(history: Iterable[Dict[str, object]]) -> pd.DataFrame:
    """Flatten evaluation history into one row per evaluation with ``section.param`` columns."""

    rows: List[Dict[str, object]] = []
    for record in history:
        row = {key: value for key, value in record.items() if key != "configuration"}
        for section, params in (record.get("configuration") or {}).items():
            for name, value in params.items():
                row[f"{section}.{name}"] = value
        rows.append(row)
    return pd.DataFrame(rows)


def export_score_progress(frame: pd.DataFrame, plots_dir: Path) -> None:
    if frame.empty or "best_score" not in frame or frame["best_score"].dropna().empty:
        return
    _ensure_dir(plots_dir)
    plt.figure(figsize=(10, 5))
    sns.lineplot(data=frame, x="evaluation", y="best_score", drawstyle="steps-post")
    scored = frame.dropna(subset=["score"])
    if not scored.empty:
        sns.scatterplot(data=scored, x="evaluation", y="score", hue="source", s=18, alpha=0.6)
    plt.title("Score progress")
    plt.tight_layout()
    plt.savefig(plots_dir / "score_progress.png")
    plt.close()


def export_effectiveness(effects: List[Dict[str, object]], plots_dir: Path) -> None:
    if not effects:
        return
    _ensure_dir(plots_dir)
    labels = [str(effect["name"]) for effect in effects][::-1]
    values = [float(effect["improvement"]) for effect in effects][::-1]
    plt.figure(figsize=(8, 5))
    plt.barh(labels, values, color="steelblue")
    plt.xlabel("Improvement")
    plt.title("Parameter effectiveness")
    plt.tight_layout()
    plt.savefig(plots_dir / "effectiveness.png")
    plt.close()


def write_run_report(result: "RunResult", output_dir: Path, plots: bool = True) -> pd.DataFrame:
    _ensure_dir(output_dir)
    frame = history_frame(result.history)
    frame.to_csv(output_dir / "history.csv", index=False)
    pd.DataFrame(result.parameter_effectiveness).to_csv(output_dir / "effectiveness.csv", index=False)
    with (output_dir / "best.yaml").open("w", encoding="utf-8") as handle:
        yaml.safe_dump(result.best_config, handle, allow_unicode=True, sort_keys=False)
    (output_dir / "summary.json").write_text(json.dumps(result.summary(), indent=2, sort_keys=True, default=str))
    if plots:
        export_score_progress(frame, output_dir / "plots")
        export_effectiveness(result.parameter_effectiveness, output_dir / "plots")
    LOGGER.info("Wrote run report (%d evaluations) to %s", len(frame), output_dir)
    return frame


def write_chain_report(result: "ChainResult", output_dir: Path, plots: bool = True) -> None:
    _ensure_dir(output_dir)
    for record in result.runs:
        if record.result is not None:
            write_run_report(record.result, output_dir / f"run_{record.run_number:02d}", plots=plots)
    if result.best_config is not None:
        with (output_dir / "best.yaml").open("w", encoding="utf-8") as handle:
            yaml.safe_dump(result.best_config, handle, allow_unicode=True, sort_keys=False)
    (output_dir / "summary.json").write_text(json.dumps(result.summary(), indent=2, sort_keys=True, default=str))


__all__ = [
    "export_effectiveness",
    "export_score_progress",
    "history_frame",
    "write_chain_report",
    "write_run_report",
]
