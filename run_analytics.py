#!/usr/bin/env python3
"""
Main orchestration script for the engagement analytics pipeline.

This script:
1. Resolves the requested time window
2. Pulls event posts, interaction logs and the active roster from Supabase
3. Builds one feature vector per active member
4. Checks data sufficiency and grades data quality
5. Trains the k-means segmentation and the RSVP logistic regression
6. Logs segment and prediction insights
7. Writes the feature/prediction table to CSV or JSON (optional)
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from engagement_ml.config import Config
from engagement_ml.exceptions import InsufficientDataError
from engagement_ml.models import TIME_WINDOW_SELECTORS, resolve_time_window
from engagement_ml.orchestrator import EngagementModel

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Member engagement analytics")
    parser.add_argument("org_id", help="Organization id to analyse")
    parser.add_argument(
        "--window",
        default=Config.DEFAULT_TIME_WINDOW,
        help=f"Time window: {', '.join(TIME_WINDOW_SELECTORS)} (or 30d, 90d, all)"
    )
    parser.add_argument("--start", type=datetime.fromisoformat, help="Custom window start (ISO 8601)")
    parser.add_argument("--end", type=datetime.fromisoformat, help="Custom window end (ISO 8601, exclusive)")
    parser.add_argument("--output", type=Path, help="Write the results table to this .csv or .json file")
    parser.add_argument("--seed", type=int, default=Config.RANDOM_SEED, help="Random seed for reproducible clustering")
    return parser.parse_args(argv)


def log_quality_report(report):
    logger.info(f"  Data quality: {report.tier}")
    logger.info(f"  Members: {report.member_count} ({report.active_member_count} active, {report.active_share:.0%})")
    logger.info(f"  Events in window: {report.total_events}")
    for suggestion in report.suggestions:
        logger.info(f"  Suggestion: {suggestion}")
    for warning in report.warnings:
        logger.warning(f"  {warning}")


def write_output(model: EngagementModel, path: Path) -> None:
    if path.suffix.lower() == ".json":
        content = model.export_to_json()
    else:
        content = model.export_to_csv()
    path.write_text(content)
    logger.info(f"  Wrote results to {path}")


def main(argv=None):
    """Main execution function."""
    args = parse_args(argv)

    try:
        logger.info("=" * 60)
        logger.info("Starting Engagement Analytics Pipeline")
        logger.info("=" * 60)

        # Step 1: Resolve window
        logger.info("\n[Step 1] Resolving time window...")
        window = resolve_time_window(args.window, args.start, args.end)
        logger.info(f"  Window: {window.selector} ({window.start} to {window.end})")

        # Step 2: Extract data and build features
        logger.info(f"\n[Step 2] Extracting data for organization {args.org_id}...")
        model = EngagementModel(random_state=args.seed)
        vectors = asyncio.run(model.load_data(args.org_id, window))
        logger.info(f"  Feature vectors: {len(vectors)}")

        # Step 3: Sufficiency and quality
        logger.info("\n[Step 3] Checking data quality...")
        report = model.get_data_quality_report()
        log_quality_report(report)

        if not model.has_enough_data():
            logger.warning(
                f"Not enough data to train: need {model.min_members} members with some activity. "
                "See the suggestions above."
            )
            sys.exit(2)

        # Step 4: Train
        logger.info("\n[Step 4] Training models...")
        model.train_models(
            on_progress=lambda percent, stage: logger.info(f"  [{percent:5.1f}%] {stage}")
        )

        # Step 5-6: Insights
        logger.info("\n[Step 5] Segment insights...")
        for insight in model.get_cluster_insights():
            logger.info(f"  {insight.segment}: {insight.description}")
            logger.info(f"    Action: {insight.recommended_action}")

        logger.info("\n[Step 6] Prediction insights...")
        predictions = model.get_prediction_insights()
        logger.info(
            f"  Thresholds ({predictions.thresholds.strategy}): "
            f"high >= {predictions.thresholds.high:.3f}, medium >= {predictions.thresholds.medium:.3f}"
        )
        logger.info(f"  Tier counts: {predictions.tier_counts}")
        for factor in predictions.key_factors:
            logger.info(f"  Factor: {factor.label} {factor.direction} RSVP likelihood ({factor.weight:+.3f})")
        for item in predictions.action_items:
            logger.info(f"  Action: {item}")
        for caveat in predictions.caveats:
            logger.info(f"  Note: {caveat}")

        # Step 7: Output
        if args.output:
            logger.info("\n[Step 7] Writing results...")
            write_output(model, args.output)

        logger.info("\n" + "=" * 60)
        logger.info("Engagement Analytics Pipeline Completed Successfully!")
        logger.info("=" * 60)

    except InsufficientDataError as e:
        logger.warning(f"\nNot enough data to train: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"\nPipeline failed with error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
