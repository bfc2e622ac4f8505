from __future__ import annotations

import argparse
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from strategy_optimizer.sweep.core import ConfigError, run_sweep
from strategy_optimizer.sweep.results import SortCriterion


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Canonical optimizer CLI: brute-force parameter sweep with ranked results."
    )
    parser.add_argument("--spec", required=True, help="Path to sweep YAML spec.")
    parser.add_argument(
        "--min-trades",
        type=int,
        default=None,
        help="Minimum trades a combination needs to be ranked (>= 2).",
    )
    parser.add_argument(
        "--sort-by",
        choices=[criterion.value for criterion in SortCriterion],
        default=None,
        help="Ranking criterion; defaults to the spec's sort_by.",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Iteration ceiling; sweeps needing more combinations are rejected before running.",
    )
    parser.add_argument(
        "--log-every",
        type=int,
        default=100,
        help="Print a progress line every N combinations.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the combination count and first assignments without running backtests.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    try:
        result = run_sweep(
            spec_path=Path(args.spec),
            dry_run=bool(args.dry_run),
            min_trades=args.min_trades,
            sort_by=args.sort_by,
            max_iterations=args.max_iterations,
            output_root=Path("outputs") / "optimizer",
            log_every=args.log_every,
        )
    except (ConfigError, FileNotFoundError) as exc:
        print(f"[sweep] config error: {exc}", file=sys.stderr)
        sys.exit(1)

    if result["dry_run"]:
        return
    print(
        f"[sweep] done state={result['state']} spec_hash={result['spec_hash']} "
        f"accepted={result['accepted']} errors={result['errors']} sweep_dir={result['sweep_dir']}"
    )
    if result["state"] == "rejected":
        sys.exit(2)


if __name__ == "__main__":
    main()
