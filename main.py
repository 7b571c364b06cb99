"""
main.py - CLI for the bank-transfer extraction pipeline.

Orchestration only:
1. load settings (.env + environment)
2. build the orchestrator
3. extract one image (with optional hints) or a batch
4. print a summary or JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional

from config import ExtractionSettings
from logging_config import get_logger, setup_logging
from models import ExtractionResult
from orchestrator import create_orchestrator

logger = get_logger("extraction-cli")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def format_result(label: str, result: ExtractionResult) -> str:
    """Human-readable block for one extraction."""
    line = "=" * 56
    rows = [
        line,
        f"  {label}",
        line,
        f"  Bank:           {result.bank_name or '-'}",
        f"  Account number: {result.account_number or '-'}",
        f"  Account holder: {result.account_holder_name or '-'}",
        f"  Amount:         {result.amount or '-'}",
        f"  Confidence:     {result.confidence}",
    ]
    if result.from_cache:
        rows.append("  Source:         cache")
    else:
        rows.append(f"  Source:         {result.source_provider or '-'}")
        rows.append(f"  Fallback used:  {'yes' if result.fallback_used else 'no'}")
    for attempt in result.attempts:
        if attempt.success:
            outcome = f"confidence={attempt.confidence}"
        else:
            outcome = f"error={attempt.error_kind.value if attempt.error_kind else 'unknown'}"
        rows.append(f"    - {attempt.provider:<13} {attempt.duration_ms:>6} ms  {outcome}")
    if result.needs_manual_entry:
        rows.append("  >> Low confidence: please enter the details manually.")
    rows.append(line)
    return "\n".join(rows)


async def run(args: argparse.Namespace, settings: ExtractionSettings) -> list[ExtractionResult]:
    """Run the pipeline for the parsed CLI arguments."""
    async with create_orchestrator(settings) as orchestrator:
        if len(args.images) == 1:
            result = await orchestrator.extract(
                args.images[0],
                budget_ms=args.budget_ms,
                bank_hint=args.bank_hint,
                account_hint=args.account_hint,
            )
            return [result]
        return await orchestrator.extract_batch(args.images, budget_ms=args.budget_ms)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bank-extract",
        description=(
            "Extract bank name, account number, holder name and amount\n"
            "from photos of bank-transfer details."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s transfer.jpg\n"
            "  %(prog)s transfer.jpg --bank-hint gtb --account-hint 0123456789\n"
            "  %(prog)s a.jpg b.jpg c.jpg --json\n"
        ),
    )
    parser.add_argument("images", nargs="+", help="Image file(s) to extract from")
    parser.add_argument(
        "--budget-ms",
        type=int,
        default=None,
        help="Overall time budget per image in milliseconds (default: EXTRACTION_BUDGET_MS or 30000)",
    )
    parser.add_argument("--bank-hint", type=str, default=None, help="Expected bank name (single image mode)")
    parser.add_argument(
        "--account-hint",
        type=str,
        default=None,
        help="Expected account number; with --bank-hint enables the cache lookup",
    )
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    parser.add_argument("--no-cache", action="store_true", help="Disable the confidence cache for this run")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=getattr(logging, args.log_level), json_format=args.log_json)

    if args.budget_ms is not None and args.budget_ms <= 0:
        parser.error("--budget-ms must be positive")
    if len(args.images) > 1 and (args.bank_hint or args.account_hint):
        parser.error("--bank-hint/--account-hint apply to a single image only")

    settings = ExtractionSettings.from_env()
    if args.no_cache:
        settings = settings.model_copy(update={"caching_enabled": False})

    try:
        logger.info("cli_mode | images=%s | caching=%s", len(args.images), settings.caching_enabled)
        results = asyncio.run(run(args, settings))
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --log-level DEBUG for more detail.")
        raise SystemExit(1) from exc

    if args.json:
        payload = [
            {"image": image, **result.model_dump(mode="json")}
            for image, result in zip(args.images, results)
        ]
        print(json.dumps(payload[0] if len(payload) == 1 else payload, indent=2))
    else:
        for image, result in zip(args.images, results):
            print(format_result(image, result))


if __name__ == "__main__":
    main()
