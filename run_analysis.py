"""Orchestrator for sequential execution of the bonus analysis tasks."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, TypeVar

from bonus_analysis import common, descriptive, mediation, models, preparation, report, robustness

TaskRunner = Callable[..., Path]
T = TypeVar("T")

logger = logging.getLogger("bonus_analysis")

TASK_SEQUENCE: Dict[str, TaskRunner] = {
    "preparation": preparation.run,
    "descriptive": descriptive.run,
    "models": models.run,
    "mediation": mediation.run,
    "robustness": robustness.run,
    "report": report.run,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Execute the sales bonus analysis tasks in sequence.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--tasks",
        nargs="+",
        choices=list(TASK_SEQUENCE.keys()),
        default=list(TASK_SEQUENCE.keys()),
        help="Subset of tasks to run.",
    )
    parser.add_argument(
        "--raw-path",
        type=Path,
        default=None,
        help=f"Raw sales spreadsheet or CSV (defaults to {common.RAW_DATA_PATH}).",
    )
    parser.add_argument(
        "--data-path",
        type=Path,
        default=None,
        help="Normalized dataset for downstream tasks (defaults to the preparation output).",
    )
    parser.add_argument(
        "--output-root",
        type=Path,
        default=None,
        help=f"Root directory for task outputs (defaults to {common.OUTPUT_ROOT}).",
    )
    parser.add_argument(
        "--region-source",
        choices=sorted(common.REGION_MAPPERS),
        default="store",
        help="Assign regions from store id ranges or from the raw region string.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args(argv)


def run_with_guard(label: str, func: Callable[..., T], *args, **kwargs) -> T:
    """Execute a task and re-wrap fatal errors with actionable messages."""

    try:
        return func(*args, **kwargs)
    except FileNotFoundError as exc:
        missing = getattr(exc, "filename", None) or str(exc)
        raise SystemExit(
            f"[{label}] Missing file: {missing}. Re-run the preceding task or update the path."
        ) from exc
    except common.InputShapeError as exc:
        raise SystemExit(f"[{label}] Input cannot be analysed: {exc}") from exc


def run_selected_tasks(
    task_names: Iterable[str],
    *,
    raw_path: Path | None,
    data_path: Path | None,
    output_root: Path | None,
    region_source: str = "store",
) -> dict[str, Path]:
    outputs: dict[str, Path] = {}
    normalized_path = data_path
    for name in task_names:
        runner = TASK_SEQUENCE[name]
        logger.info(f"Running {name}…")
        output_dir = (output_root / name) if output_root is not None else None
        if name == "preparation":
            out_dir = run_with_guard(
                name,
                runner,
                output_dir=output_dir,
                data_path=raw_path,
                region_source=region_source,
            )
            normalized_path = out_dir / common.NORMALIZED_FILENAME
        else:
            if normalized_path is None and output_root is not None:
                normalized_path = output_root / "preparation" / common.NORMALIZED_FILENAME
            out_dir = run_with_guard(name, runner, output_dir=output_dir, data_path=normalized_path)
        outputs[name] = out_dir
    logger.info("All requested tasks completed.")
    return outputs


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    run_selected_tasks(
        args.tasks,
        raw_path=args.raw_path,
        data_path=args.data_path,
        output_root=args.output_root,
        region_source=args.region_source,
    )


if __name__ == "__main__":
    main()
