#!/usr/bin/env python3
"""
ReplyBus CLI — send one message, optionally wait for its reply.

Usage:
    replybus send --queue <queue> --payload <text> [--property key=value ...]
    replybus send --queue <queue> --payload <text> --response-queue <queue>
                  [--correlation-id <id>] [--timeout <sec>]

Examples:
    # Fire and forget
    replybus send --queue orders --payload '{"x": 1}'

    # Request/response with a 2 second deadline
    replybus send --queue orders --payload '{"x": 1}' \\
        --response-queue orders.replies --correlation-id abc-123 --timeout 2

Connection settings default to config/replybus.yaml and the environment
(RABBITMQ_USER / RABBITMQ_PASSWORD, also read from .env).

Exit codes: 0 Done, 1 Error, 2 Timeout.
"""

import argparse
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .config import DEFAULT_CONFIG_PATH, ReplyBusConfig
from .core import send_message
from .broker import PikaBrokerClient
from .correlation import WaitCoordinator
from .models import (
    ApplicationProperty,
    OutcomeKind,
    OutgoingMessage,
    ResponseExpectation,
    SendMessageRequest,
)

EXIT_CODES = {
    OutcomeKind.DONE: 0,
    OutcomeKind.ERROR: 1,
    OutcomeKind.TIMEOUT: 2,
}


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s' if verbose else '%(message)s',
        stream=sys.stderr,
    )
    # Quiet down noisy loggers
    if not verbose:
        logging.getLogger("pika").setLevel(logging.WARNING)
        logging.getLogger("replybus").setLevel(logging.WARNING)


def parse_properties(property_args: List[str]) -> List[ApplicationProperty]:
    """Parse --property key=value arguments, keeping their order."""
    properties = []
    for arg in property_args:
        if "=" not in arg:
            raise argparse.ArgumentTypeError(f"Invalid property '{arg}', expected key=value")
        key, value = arg.split("=", 1)
        properties.append(ApplicationProperty(key=key, value=value))
    return properties


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replybus",
        description="ReplyBus - synchronous request/response over RabbitMQ",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s send --queue orders --payload '{"x": 1}'
  %(prog)s send --queue orders --payload '{"x": 1}' --response-queue orders.replies --timeout 2
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    send_parser = subparsers.add_parser("send", help="Publish a message")
    send_parser.add_argument("--queue", "-q", required=True, help="Outgoing queue name")
    send_parser.add_argument("--payload", "-p", default="", help="Message payload (text)")
    send_parser.add_argument("--content-type", default=None, help="Content type (default from config)")
    send_parser.add_argument("--property", action="append", help="Application property (key=value)")

    connection = send_parser.add_argument_group("connection")
    connection.add_argument("--host", default=None, help="Broker host")
    connection.add_argument("--port", type=int, default=None, help="Broker port")
    connection.add_argument("--username", default=None, help="Broker username")
    connection.add_argument("--password", default=None, help="Broker password")
    connection.add_argument("--no-ssl", dest="use_ssl", action="store_false", default=None,
                            help="Connect without TLS")

    response = send_parser.add_argument_group("response")
    response.add_argument("--response-queue", "-r", default=None, help="Wait for a reply on this queue")
    response.add_argument("--correlation-id", default=None, help="Correlation id (generated if omitted)")
    response.add_argument("--timeout", "-t", type=float, default=None, help="Seconds to wait for the reply")

    return parser


def build_request(args: argparse.Namespace, config: ReplyBusConfig) -> SendMessageRequest:
    """Build the request from parsed arguments and configuration defaults."""
    response = None
    if args.response_queue:
        response_kwargs = {
            "queue": args.response_queue,
            "timeout_seconds": args.timeout if args.timeout is not None else config.default_timeout_seconds,
        }
        if args.correlation_id is not None:
            response_kwargs["correlation_id"] = args.correlation_id
        response = ResponseExpectation(**response_kwargs)

    return SendMessageRequest(
        connection=config.connection_parameters(
            host=args.host,
            port=args.port,
            username=args.username,
            password=args.password,
            use_ssl=args.use_ssl,
        ),
        message=OutgoingMessage(
            queue=args.queue,
            payload=args.payload,
            content_type=args.content_type or config.default_content_type,
            properties=parse_properties(args.property or []),
        ),
        response=response,
    )


def run_send(args: argparse.Namespace) -> int:
    """Send the message and print the outcome as JSON."""
    config = ReplyBusConfig(args.config)
    try:
        request = build_request(args, config)
    except (ValueError, argparse.ArgumentTypeError) as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        return EXIT_CODES[OutcomeKind.ERROR]

    outcome = send_message(
        request,
        client=PikaBrokerClient(config),
        coordinator=WaitCoordinator(config.default_timeout_seconds),
    )
    print(outcome.model_dump_json(indent=2, exclude_none=True))
    return EXIT_CODES[outcome.kind]


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == "send":
        return run_send(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
