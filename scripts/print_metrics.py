"""
Print pairing metrics and SLO status.

Usage:
    # Metrics of a completed job in the job store
    python scripts/print_metrics.py --job-id 3f1c...

    # Metrics from a saved result (PairingResult or whole job record JSON)
    python scripts/print_metrics.py --result-file result.json

    # Re-run the engine offline over saved classifications (no tie-break)
    python scripts/print_metrics.py --insights-file insights.json --strict

    # Why did a front end up unpaired? Every back scored against it
    python scripts/print_metrics.py --insights-file insights.json --explain-front batch1/img_0001.jpg
"""

import argparse
import json
import sys
from pathlib import Path

# Allow imports from the project root when running as a script
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from config import get_pairing_config
from models.image_insight import ImageInsight
from models.pairing import PairingResult
from models.pairing_job import JobStatus
from services.metrics_service import format_metrics_log
from services.pairing_job_service import PairingJobService
from services.pairing_service import PairingService


def load_result_file(path: Path) -> PairingResult:
    data = json.loads(path.read_text(encoding="utf-8"))
    # Whole job records carry the result under "result"
    if "result" in data and "engine_version" not in data:
        data = data["result"]
    if data is None:
        raise ValueError(f"{path} has no pairing result")
    return PairingResult.model_validate(data)


def load_insights(path: Path) -> list[ImageInsight]:
    rows = json.loads(path.read_text(encoding="utf-8"))
    return [ImageInsight.model_validate(r) for r in rows]


def offline_engine() -> PairingService:
    config = get_pairing_config().model_copy(update={"tiebreak_enabled": False})
    return PairingService(config, judge=None)


def print_front_scores(insights: list[ImageInsight], front_key: str) -> None:
    engine = offline_engine()
    scores = engine.explain_front(insights, front_key)
    if not scores:
        print(f"{front_key} is not a front after role correction.")
        return

    print(f"CANDIDATES FOR {front_key} (min pre-score {engine.config.min_pre_score}):")
    for candidate in scores:
        components = ", ".join(f"{name}={value:+g}" for name, value in candidate.components.items())
        print(f"  {candidate.pre_score:>6.2f}  {candidate.back_key}  [{components}]")


def print_report(result: PairingResult) -> bool:
    """Print the report; returns True when every SLO target is met."""
    metrics = result.metrics

    print(format_metrics_log(metrics))
    print(f"\nEngine: {result.engine_version}")
    print(f"Thresholds: {json.dumps(metrics.thresholds)}")

    if metrics.by_brand:
        print("\nBY BRAND:")
        for brand, stats in metrics.by_brand.items():
            print(f"  {brand:<24} fronts={stats.fronts:<4} paired={stats.paired:<4} rate={stats.pair_rate:.1%}")

    if metrics.reasons:
        print("\nSINGLETON REASONS:")
        for reason, count in metrics.reasons.items():
            print(f"  {count:>4}  {reason}")

    if metrics.generic_backs:
        print("\nGENERIC BACKS (plausible for many fronts):")
        for flag in metrics.generic_backs:
            print(f"  {flag.back_key} -> {flag.front_count} fronts")

    if result.role_corrections:
        print(f"\nROLE CORRECTIONS: {len(result.role_corrections)}")
        for change in result.role_corrections:
            print(f"  {change.image_key}: {change.original_role.value} -> {change.corrected_role.value} ({change.reason})")

    ok = metrics.slo.all_ok if metrics.slo else True
    print(f"\nSLO: {'OK' if ok else 'BREACH'}")
    return ok


def main():
    parser = argparse.ArgumentParser(
        description="Print pairing metrics and SLO status."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--job-id",
        help="Completed job to read from the job store",
    )
    source.add_argument(
        "--result-file",
        type=Path,
        help="JSON file with a PairingResult or a whole job record",
    )
    source.add_argument(
        "--insights-file",
        type=Path,
        help="JSON list of classifier insights to pair offline",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when an SLO target is missed",
    )
    parser.add_argument(
        "--explain-front",
        metavar="KEY",
        help="With --insights-file: print every back scored against this front",
    )

    args = parser.parse_args()
    if args.explain_front and not args.insights_file:
        parser.error("--explain-front needs --insights-file")

    if args.job_id:
        job = PairingJobService().get_job(args.job_id)
        if job.status != JobStatus.COMPLETED or job.result is None:
            print(f"ERROR: job {args.job_id} is {job.status.value}, no result yet.")
            sys.exit(1)
        result = job.result
    elif args.result_file:
        result = load_result_file(args.result_file)
    else:
        insights = load_insights(args.insights_file)
        if args.explain_front:
            print_front_scores(insights, args.explain_front)
            return
        result = offline_engine().run(insights)

    ok = print_report(result)
    if args.strict and not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
