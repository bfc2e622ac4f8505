from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .core import ConfigError, run_sweep
from .results import SortCriterion
from .runner import DEFAULT_LOG_EVERY

EXIT_CONFIG_ERROR = 1
EXIT_REJECTED = 2


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Brute-force optimize a registered strategy's parameters over historical data."
    )
    parser.add_argument("--spec", required=True, help="Path to sweep YAML spec.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the combination count and first assignments without running backtests.",
    )
    parser.add_argument(
        "--min-trades",
        type=int,
        default=None,
        help="Discard combinations with fewer trades. Overrides min_trades in spec.",
    )
    parser.add_argument(
        "--sort-by",
        choices=[criterion.value for criterion in SortCriterion],
        default=None,
        help="Ranking criterion. Overrides sort_by in spec.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Reject the sweep up front when it needs more combinations than this.",
    )
    parser.add_argument("--output-root", default=None, help="Overrides output.root_dir in spec.")
    parser.add_argument("--log-every", type=int, default=DEFAULT_LOG_EVERY)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        result = run_sweep(
            spec_path=Path(args.spec),
            dry_run=bool(args.dry_run),
            min_trades=args.min_trades,
            sort_by=args.sort_by,
            max_iterations=args.max_iterations,
            output_root=Path(args.output_root) if args.output_root is not None else None,
            log_every=args.log_every,
        )
    except (ConfigError, FileNotFoundError) as exc:
        print(f"[sweep] config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if result["dry_run"]:
        print(f"[sweep] dry_run strategy={result['strategy']} combinations={result['combination_count']}")
        return 0

    print(
        f"[sweep] done state={result['state']} strategy={result['strategy']} "
        f"processed={result['processed']}/{result['combination_count']} accepted={result['accepted']} "
        f"errors={result['errors']} sweep_dir={result['sweep_dir']}"
    )
    if result["state"] == "rejected":
        return EXIT_REJECTED
    return 0


if __name__ == "__main__":
    sys.exit(main())
