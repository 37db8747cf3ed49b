#!/usr/bin/env python3
"""
Hardware tester - command line front end.

Usage:
  python3 hwtest.py -u                         # UART test, default message
  python3 hwtest.py -usi "shared message"      # UART+SPI+I2C, one message
  python3 hwtest.py -si "msg" -u -n 20         # stacks may be split, 20 iterations
  python3 hwtest.py --all                      # every peripheral
  python3 hwtest.py get 3 4 5                  # print stored results
  python3 hwtest.py export > results.csv       # all results as CSV
  python3 hwtest.py serve --port 8000          # HTTP API

Flag rules:
  - at least one of u, s, i (or --all) is required; no letter may repeat
  - u, s, i may be stacked (-usi); a non-flag token right after a stack or
    --all is the message for every peripheral in it
  - -n <0-255> sets the iteration count (default 1); --all and -n at most once
  - one request carries one payload: the message of the first requested
    peripheral, in u, s, i order
"""

import argparse
import logging
import sys

import config
from dispatch import Dispatcher
from errors import NotFound, StoreError, TransportError, UsageError
from protocol import MAX_ITERATIONS, TEST_I2C, TEST_SPI, TEST_UART
from report import format_csv, format_not_found, format_single
from result_store import ResultStore

log = logging.getLogger("hwtest")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_TRANSPORT = 2
EXIT_STORE = 3

DEFAULT_MESSAGES = {
    TEST_UART: "Hello UART",
    TEST_SPI: "Hello SPI",
    TEST_I2C: "Hello I2C",
}
FLAG_TO_PERIPHERAL = {"u": TEST_UART, "s": TEST_SPI, "i": TEST_I2C}
COMMANDS = ("get", "export", "serve")


def _is_message(tokens, idx):
    return idx < len(tokens) and not tokens[idx].startswith("-")


def parse_run_args(tokens):
    """Parse test flags into (peripheral_mask, iteration_count, payload).

    Raises UsageError on any rule violation.
    """
    seen = set()
    messages = {}
    used_all = used_n = False
    n_iter = 1

    idx = 0
    while idx < len(tokens):
        arg = tokens[idx]

        if arg == "--all":
            if used_all:
                raise UsageError("'--all' cannot be repeated")
            used_all = True
            seen.update(FLAG_TO_PERIPHERAL.values())
            if _is_message(tokens, idx + 1):
                for p in FLAG_TO_PERIPHERAL.values():
                    messages[p] = tokens[idx + 1]
                idx += 1
            idx += 1
            continue

        if arg == "-n":
            if used_n:
                raise UsageError("'-n' cannot be repeated")
            if idx + 1 >= len(tokens):
                raise UsageError(f"'-n' requires [0-{MAX_ITERATIONS}] value")
            try:
                n_iter = int(tokens[idx + 1])
            except ValueError:
                raise UsageError(f"'-n' requires [0-{MAX_ITERATIONS}] value") from None
            if not 0 <= n_iter <= MAX_ITERATIONS:
                raise UsageError(f"'-n' requires [0-{MAX_ITERATIONS}] value")
            used_n = True
            idx += 2
            continue

        if len(arg) > 1 and arg[0] == "-" and arg[1] != "-":
            stack = []
            for c in arg[1:]:
                p = FLAG_TO_PERIPHERAL.get(c)
                if p is None:
                    raise UsageError(f"Unknown option '-{c}'")
                if p in seen:
                    raise UsageError(f"'-{c}' repeated")
                seen.add(p)
                stack.append(p)
            if _is_message(tokens, idx + 1):
                for p in stack:
                    messages[p] = tokens[idx + 1]
                idx += 1
            idx += 1
            continue

        raise UsageError(f"Unexpected token '{arg}'")

    if not seen:
        raise UsageError("At least one of -u, -s, -i, or --all must be provided")

    mask = 0
    for p in seen:
        mask |= p
    first = min(seen)
    payload = messages.get(first, DEFAULT_MESSAGES[first])
    return mask, n_iter, payload


class CommandParser(argparse.ArgumentParser):
    """ArgumentParser that reports bad arguments as UsageError instead of exiting."""

    def error(self, message):
        raise UsageError(f"{self.prog}: {message}")


def build_command_parser():
    parser = CommandParser(prog="hwtest", description="Query stored test results or serve the HTTP API")
    sub = parser.add_subparsers(dest="command", required=True)

    get = sub.add_parser("get", help="Print test data by test ID")
    get.add_argument("ids", nargs="+", type=_test_id, metavar="ID")

    sub.add_parser("export", help="Print all test data in CSV format")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def _test_id(value):
    """argparse type function - non-negative integer test id."""
    try:
        tid = int(value)
    except ValueError:
        tid = -1
    if tid < 0:
        raise argparse.ArgumentTypeError(f"Invalid test ID '{value}'. Must be non-negative integer.")
    return tid


def cmd_get(store, ids, out):
    for tid in ids:
        try:
            out.write(format_single(store.lookup(tid)) + "\n")
        except NotFound:
            out.write(format_not_found(tid) + "\n")
    return EXIT_OK


def cmd_export(store, out):
    out.write(format_csv(store.export_all()))
    return EXIT_OK


def cmd_serve(host, port):
    import uvicorn

    import server

    uvicorn.run(server.app, host=host, port=port)
    return EXIT_OK


def cmd_run(dispatcher, tokens, out):
    mask, n_iter, payload = parse_run_args(tokens)
    record = dispatcher.run(mask, n_iter, payload)
    out.write(format_single(record) + "\n")
    return EXIT_OK


def main(argv=None, out=None, store=None, dispatcher=None):
    argv = sys.argv[1:] if argv is None else argv
    out = out or sys.stdout

    if not argv or argv[0] in ("-h", "--help"):
        out.write(__doc__.lstrip())
        return EXIT_OK if argv else EXIT_USAGE

    try:
        logging.basicConfig(level=config.get("log_level"), format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        store = store or ResultStore(config.get("db_path"))
        if argv[0] in COMMANDS:
            args = build_command_parser().parse_args(argv)
            if args.command == "get":
                return cmd_get(store, args.ids, out)
            if args.command == "export":
                return cmd_export(store, out)
            return cmd_serve(args.host, args.port)
        dispatcher = dispatcher or Dispatcher(store)
        return cmd_run(dispatcher, argv, out)
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except TransportError as e:
        print(f"UDP error: {e}", file=sys.stderr)
        return EXIT_TRANSPORT
    except StoreError as e:
        print(f"Database error: {e}", file=sys.stderr)
        return EXIT_STORE


if __name__ == "__main__":
    sys.exit(main())
