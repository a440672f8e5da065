from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional, Sequence

from bsrunner.services.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from bsrunner.services.orchestrator import RunOrchestrator
from bsrunner.services.servers import ServerStartError


def _package_version() -> str:
    try:
        return version("bsrunner")
    except PackageNotFoundError:
        return "0+unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bsrunner",
        description="Run a browser test page on BrowserStack workers through a local tunnel.",
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {_package_version()}")
    parser.add_argument("-c", "--config", type=Path, default=DEFAULT_CONFIG_PATH,
                        help="path to configuration file (default: ./config.json)")
    parser.add_argument("-u", "--bs_username", help="browserstack username")
    parser.add_argument("-p", "--bs_password", help="browserstack password")
    parser.add_argument("-k", "--bs_key", help="browserstack automated testing key")
    parser.add_argument("-t", "--testfile", help="path to testfile relative to testing directory")
    parser.add_argument("-d", "--directory", help="directory to host files from")
    parser.add_argument("-v", "--verbose", action="store_true", help="output debugging information")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # uvicorn and httpx are chatty at DEBUG; keep their records to warnings.
    for name in ("uvicorn", "uvicorn.error", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    overrides = {
        "bs_username": args.bs_username,
        "bs_password": args.bs_password,
        "bs_key": args.bs_key,
        "test_file": args.testfile,
        "directory": args.directory,
        "verbose": args.verbose,
    }
    try:
        config = load_config(args.config, overrides)
    except ConfigError as exc:
        parser.error(str(exc))

    orchestrator = RunOrchestrator(config)
    try:
        return asyncio.run(orchestrator.run())
    except ServerStartError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
