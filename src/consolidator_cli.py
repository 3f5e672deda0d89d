import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from consolidator import (
    DEFAULT_CUSTOMER,
    APIWrapper,
    BatchConsolidation,
    ConfigError,
    ConsolidationConfig,
    DirectoryFetchError,
    OutcomeStatus,
    Org,
)
from consolidator_logging import get_log_path, setup_logging

VERSION = "1.0.0"

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_DIRECTORY = 3

logger = logging.getLogger(__name__)


def split_substrings(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    # blank items would match every owner
    return tuple(s.strip() for s in raw.split(",") if s.strip())


def _optional_float(raw: str | None) -> float | None:
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"Expected a number of seconds, got {raw!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shared-file-consolidator",
        description="Copy the files shared with every user of a Google Workspace domain into a folder in that user's own Drive.",
    )
    parser.add_argument("--credentials", default=os.getenv("GOOGLE_CREDENTIALS_PATH", ""),
                        help="Path to the Google service account credentials JSON file")
    parser.add_argument("--admin", default=os.getenv("ADMIN_EMAIL", ""),
                        help="Admin email for impersonation")
    parser.add_argument("--skip-user-substr", default=os.getenv("SKIP_OWNER_SUBSTRINGS", ""),
                        help="Comma-separated list of substrings of file owners' email addresses to skip")
    parser.add_argument("--customer", default=os.getenv("DIRECTORY_CUSTOMER", DEFAULT_CUSTOMER),
                        help="Directory customer to enumerate (default: %(default)s)")
    parser.add_argument("--output-dir", default=os.getenv("OUTPUT_DIR", "."),
                        help="Where the per-user *_shared_files.txt records are written")
    parser.add_argument("--include-suspended", action="store_true",
                        help="Also process suspended accounts")
    parser.add_argument("--call-timeout", type=float, default=_optional_float(os.getenv("CALL_TIMEOUT")),
                        help="Seconds before a single API call is abandoned")
    parser.add_argument("--identity-timeout", type=float, default=_optional_float(os.getenv("IDENTITY_TIMEOUT")),
                        help="Seconds before a single user's consolidation is abandoned")
    parser.add_argument("--max-retries", type=int, default=0,
                        help="Retries for rate-limited or server-failed API calls (default: no retries)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print debug output to the console")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def config_from_args(args: argparse.Namespace) -> ConsolidationConfig:
    return ConsolidationConfig(
        credentials_path=args.credentials,
        admin_address=args.admin,
        skip_substrings=split_substrings(args.skip_user_substr),
        customer=args.customer,
        output_dir=args.output_dir,
        include_suspended=args.include_suspended,
        call_timeout=args.call_timeout,
        identity_timeout=args.identity_timeout,
        max_retries=args.max_retries,
    )


def install_interrupt_handler(batch: BatchConsolidation):
    """First Ctrl+C stops the batch gracefully, the second one exits."""
    interrupted = False

    def _handle_interrupt(signum, frame):
        nonlocal interrupted
        if interrupted:
            sys.exit(EXIT_PARTIAL)
        interrupted = True
        logger.warning("Interrupted! Stopping after the current file, press Ctrl+C again to quit immediately.")
        batch.abort()

    signal.signal(signal.SIGINT, _handle_interrupt)


async def run(config: ConsolidationConfig) -> int:
    api = APIWrapper(call_timeout=config.call_timeout, max_retries=config.max_retries)
    try:
        org = Org.from_keyfile(config.credentials_path, api, config.customer)
        await org.set_admin(config.admin_address)
        batch = BatchConsolidation(org, config)
        install_interrupt_handler(batch)
        report = await batch.run()
    finally:
        api.shutdown()
        logger.debug(f"API stats: {api}")

    for outcome in report.outcomes:
        if outcome.status is not OutcomeStatus.SUCCEEDED:
            logger.warning(f"{outcome.address}: {outcome.status.value} ({outcome.error})")
    logger.info(report.summary())
    return EXIT_OK if report.succeeded else EXIT_PARTIAL


def main(argv=None) -> int:
    load_dotenv()
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.verbose)
        config = config_from_args(args)
        code = asyncio.run(run(config))
    except ConfigError as e:
        setup_logging()
        logger.error(f"Error getting configuration: {e}")
        code = EXIT_CONFIG
    except DirectoryFetchError as e:
        logger.error(f"Unable to retrieve users: {e}")
        code = EXIT_DIRECTORY
    print(f"Full log written to {get_log_path()}")
    return code


if __name__ == "__main__":
    sys.exit(main())
