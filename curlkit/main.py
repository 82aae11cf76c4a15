import argparse
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from curlkit.common.errors import OutputWriteError, TransferError, error_to_string
from curlkit.config import AppConfig, load_config
from curlkit.http.options import Option
from curlkit.ops.evidence import EvidenceCollector
from curlkit.ops.logger import setup_logger
from curlkit.session import Session


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="curlkit", description="Transfer a URL over HTTP/1.1")

    parser.add_argument("url", help="URL to transfer.")
    parser.add_argument("-X", "--request", dest="method", help="Request method to use.")
    parser.add_argument(
        "-H",
        "--header",
        dest="headers",
        action="append",
        default=[],
        help='Extra request header, "Name: value". Repeatable.',
    )
    parser.add_argument("-d", "--data", help="Request body; implies POST unless -X is given.")
    parser.add_argument("-L", "--location", action="store_true", help="Follow redirects.")
    parser.add_argument("--max-redirs", type=int, help="Maximum number of redirects to follow.")
    parser.add_argument("-k", "--insecure", action="store_true", help="Skip TLS certificate verification.")
    parser.add_argument("--cacert", help="CA bundle file used to verify the peer.")
    parser.add_argument("-m", "--max-time", type=float, help="Maximum time in seconds for the whole transfer.")
    parser.add_argument("--connect-timeout", type=float, help="Maximum time in seconds to connect.")
    parser.add_argument("-A", "--user-agent", help="User-Agent to send.")
    parser.add_argument("-o", "--output", help="Write the body to this file instead of stdout.")
    parser.add_argument(
        "-w",
        "--write-info",
        action="store_true",
        help="Print transfer information as JSON to stderr when done.",
    )
    parser.add_argument("--config", type=str, help="Path to a YAML configuration file.")
    parser.add_argument("--log-dir", type=str, help="Directory for debug logs (overrides the config).")

    return parser.parse_args(argv)


def build_options(args) -> dict:
    options = {}
    if args.data is not None:
        options[Option.BODY] = args.data
        options[Option.METHOD] = "POST"
    if args.method:
        options[Option.METHOD] = args.method
    if args.headers:
        options[Option.HEADERS] = args.headers
    if args.location:
        options[Option.FOLLOW_REDIRECTS] = True
    if args.max_redirs is not None:
        options[Option.MAX_REDIRECTS] = args.max_redirs
    if args.insecure:
        options[Option.VERIFY_TLS] = False
    if args.cacert:
        options[Option.CA_BUNDLE] = args.cacert
    if args.max_time is not None:
        options[Option.TIMEOUT] = args.max_time
    if args.connect_timeout is not None:
        options[Option.CONNECT_TIMEOUT] = args.connect_timeout
    if args.user_agent is not None:
        options[Option.USER_AGENT] = args.user_agent
    return options


def bootstrap(args) -> AppConfig:
    logging.basicConfig(level=logging.INFO)
    temp_logger = logging.getLogger("bootstrap")

    try:
        config = load_config(args.config)
    except Exception as exc:
        temp_logger.error("Failed to load configuration: %s", exc)
        raise

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    logs_dir = args.log_dir or config.logging.logs_dir
    setup_logger(run_id, logs_dir=logs_dir, console_level=config.logging.console_level)
    return config


def run(args, config: AppConfig, stdout=None, stderr=None) -> int:
    """Perform the transfer described by args; returns the process exit status."""
    logger = logging.getLogger("curlkit")
    stdout = stdout or sys.stdout.buffer
    stderr = stderr or sys.stderr

    evidence: Optional[EvidenceCollector] = None
    if config.evidence.enabled:
        evidence = EvidenceCollector(run_id="cli", logs_dir=config.evidence.logs_dir)

    sink = None
    try:
        with Session(defaults=config.transfer, evidence=evidence) as session:
            session.init(args.url)
            session.set_options(build_options(args))

            if args.output:
                sink = open(args.output, "wb")
            session.set_options({Option.RETURN_TRANSFER: False, Option.OUTPUT: sink or stdout})
            session.execute()

            if args.write_info:
                info = session.get_information_array()
                json.dump(info, stderr, indent=2, default=str)
                stderr.write("\n")
    except OutputWriteError as exc:
        logger.error("%s", exc)
        stderr.write(f"curlkit: (23) cannot write output: {exc}\n")
        return 23
    except TransferError as exc:
        logger.error("%s", exc)
        stderr.write(f"curlkit: ({exc.code}) {error_to_string(exc.kind)}: {exc}\n")
        return exc.code
    except OSError as exc:
        logger.error("Cannot write output: %s", exc)
        stderr.write(f"curlkit: (23) cannot write output: {exc}\n")
        return 23
    finally:
        if sink is not None:
            sink.close()

    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    config = bootstrap(args)
    return run(args, config)


if __name__ == "__main__":
    sys.exit(main())
