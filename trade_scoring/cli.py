"""
Trade Scoring Engine - CLI.

============================================================
RESPONSIBILITY
============================================================
Score trade candidates from a JSON file.

Input is one candidate object or a list of them:

    {
      "trade_draft": {"symbol": "AAPL", "contractType": "put-credit-spread", ...},
      "factor_values": {"delta_short": 0.12, ...},
      "strategy": "put-credit-spread",     (optional)
      "trade_id": "T-1"                    (optional)
    }

============================================================
USAGE
============================================================
python -m trade_scoring.cli candidates.json
python -m trade_scoring.cli candidates.json --narrative --log-level DEBUG
python -m trade_scoring.cli candidates.json --database-url postgresql://... --create-schema

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from .config import TradeScoringConfig, load_config
from .database import create_engine_from_config, create_schema, create_session_factory
from .logging_config import setup_logging
from .service import TradeCandidate, create_service
from .types import TradeScoringError


logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trade-score",
        description="Deterministic rubric scoring for option trade candidates",
    )

    parser.add_argument(
        "input",
        type=str,
        metavar="PATH",
        help="JSON file with one candidate or a list of candidates ('-' for stdin)",
    )

    scoring_group = parser.add_argument_group("Scoring Options")

    scoring_group.add_argument(
        "--strategy",
        type=str,
        help="Rubric strategy key for candidates that do not name one",
    )

    scoring_group.add_argument(
        "--policy-id",
        type=str,
        default="default",
        help="Originating policy identifier (default: default)",
    )

    scoring_group.add_argument(
        "--narrative",
        action="store_true",
        help="Attach a narrative explanation to each result",
    )

    system_group = parser.add_argument_group("System Options")

    system_group.add_argument(
        "--config",
        type=str,
        metavar="PATH",
        help="YAML configuration file",
    )

    system_group.add_argument(
        "--database-url",
        type=str,
        help="Rubric and score store (overrides DATABASE_URL)",
    )

    system_group.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables before scoring",
    )

    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: from configuration)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Logging format (default: from configuration)",
    )

    return parser


def parse_candidates(data: Any, default_strategy: Optional[str] = None) -> List[TradeCandidate]:
    """
    Build candidates from decoded JSON.

    Raises:
        ValueError: If the document is not a candidate or list of candidates
    """
    items = data if isinstance(data, list) else [data]
    candidates = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not isinstance(item.get("trade_draft"), dict):
            raise ValueError(f"Candidate {index} must be an object with a 'trade_draft' object")
        candidates.append(TradeCandidate(
            trade_draft=item["trade_draft"],
            factor_values=item.get("factor_values") or {},
            strategy=item.get("strategy") or default_strategy,
            trade_id=item.get("trade_id"),
        ))
    return candidates


def read_input(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r") as f:
        return json.load(f)


async def async_main(args: argparse.Namespace, config: TradeScoringConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    try:
        candidates = parse_candidates(read_input(args.input), args.strategy)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot read candidates: {e}")
        return 1

    engine = None
    session_factory = None
    if config.database.url:
        engine = create_engine_from_config(config.database)
        if args.create_schema:
            await create_schema(engine)
        session_factory = create_session_factory(engine)

    service = create_service(config, session_factory=session_factory)
    try:
        evaluations = await service.evaluate_batch(
            candidates,
            policy_id=args.policy_id,
            include_narrative=args.narrative,
        )
    except TradeScoringError as e:
        logger.error(f"Scoring failed: {e}", exc_info=True)
        return 1
    finally:
        await service.close()
        if engine is not None:
            await engine.dispose()

    results = [evaluation.to_dict() for evaluation in evaluations]
    print(json.dumps(results if len(results) != 1 else results[0], indent=2, default=str))
    logger.info(f"Cache stats: {service.cache.stats}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except TradeScoringError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.database_url:
        config.database.url = args.database_url

    setup_logging(
        level=args.log_level or config.logging.level,
        log_format=args.log_format or config.logging.format,
        stream=sys.stderr,
    )

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
