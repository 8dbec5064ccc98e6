"""
MoQT interop test client -- CLI entry point.

Usage:
    python -m moqt_interop --relay moqt://localhost:4443
    python -m moqt_interop --test announce-subscribe --tls-disable-verify
    python -m moqt_interop --list

Every option can also come from the environment (or a .env file):
RELAY_URL, TESTCASE, TLS_DISABLE_VERIFY, TLS_CA_CERT, VERBOSE.

Exit codes: 0 all passed, 1 a scenario failed, 127 unknown scenario.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from . import CLIENT_NAME, __version__
from .client import Client, ClientConfig
from .report import TapReporter
from .runner import run_scenarios
from .scenarios import ScenarioContext, UnknownScenario, scenario_names, select_scenarios

DEFAULT_RELAY_URL = "moqt://localhost:4443"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNKNOWN_SCENARIO = 127


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=CLIENT_NAME,
        description="MoQT interop test client -- runs session scenarios against a relay and prints TAP",
    )
    parser.add_argument(
        "-r", "--relay",
        default=os.getenv("RELAY_URL", DEFAULT_RELAY_URL),
        help=f"Relay URL (default: {DEFAULT_RELAY_URL})",
    )
    parser.add_argument(
        "-t", "--test",
        default=os.getenv("TESTCASE") or None,
        help="Run only this scenario",
    )
    parser.add_argument("-l", "--list", action="store_true", help="List scenarios and exit")
    parser.add_argument(
        "--tls-disable-verify",
        action="store_true",
        default=_env_flag("TLS_DISABLE_VERIFY"),
        help="Disable TLS certificate verification",
    )
    parser.add_argument(
        "--ca-cert",
        default=os.getenv("TLS_CA_CERT") or None,
        help="Trust this PEM CA certificate instead of the system store",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=_env_flag("VERBOSE"),
        help="Log session activity to stderr",
    )
    parser.add_argument("--version", action="version", version=f"{CLIENT_NAME} {__version__}")
    return parser


def configure_logging(verbose: bool) -> None:
    # stdout carries TAP only; logs go to stderr
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if verbose:
        logging.getLogger("moqt_interop").setLevel(logging.DEBUG)
        logging.getLogger("aioquic").setLevel(logging.INFO)


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.list:
        for name in scenario_names():
            print(name)
        return EXIT_OK

    configure_logging(args.verbose)

    try:
        specs = select_scenarios(args.test)
    except UnknownScenario as exc:
        print(exc, file=sys.stderr)
        return EXIT_UNKNOWN_SCENARIO

    client = Client(ClientConfig(tls_disable_verify=args.tls_disable_verify, ca_cert=args.ca_cert))
    context = ScenarioContext(client=client, relay_url=args.relay)

    try:
        all_passed = asyncio.run(run_scenarios(specs, context, TapReporter()))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_FAILED

    return EXIT_OK if all_passed else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
