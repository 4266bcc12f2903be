#!/usr/bin/env python3
"""Batch entry point for AgentBank scheduled jobs"""

import argparse
import json
import sys
from datetime import datetime

from .bank import AgentBank
from .config import get_config
from .logging_config import setup_logging
from .storage import ensure_utc


JOBS = {
    "daily-interest": "credit_daily_interest",
    "monthly-reset": "reset_monthly_withdrawals",
    "process-cds": "process_matured_cds",
}


def parse_as_of(value: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO 8601 timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent_bank", description="Run AgentBank batch jobs")
    parser.add_argument("job", choices=sorted(JOBS), help="Batch job to run")
    parser.add_argument("--as-of", type=parse_as_of, default=None,
                        help="Run time (ISO 8601), defaults to now")
    parser.add_argument("--database-url", default=None,
                        help="Override the configured database URL")
    return parser


def main(argv=None) -> int:
    """Run one batch job and print its result as JSON"""
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})

    setup_logging(config.log_level, fmt=config.log_format)

    bank = AgentBank(config=config)
    try:
        result = getattr(bank, JOBS[args.job])(as_of=args.as_of)
    finally:
        bank.close()

    print(json.dumps({
        "success": result.success,
        "code": result.code,
        "message": result.message,
        **result.data,
    }, indent=2, default=str))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
