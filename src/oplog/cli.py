"""
oplog-tail: print the operations of a replica set oplog as they happen.

Decode errors are logged and the entry skipped. When the cursor fails, the
session is rebuilt to resume after the last printed operation, with
exponential backoff between consecutive failed attempts.
"""

import argparse
import logging
import sys
import time
from dataclasses import asdict
from typing import Callable, Optional, TextIO

import pymongo
from bson.json_util import dumps, loads
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .builder import OplogBuilder
from .errors import DecodeError, OplogConnectionError, OplogError
from .operation import Operation, format_timestamp, parse_timestamp
from .settings import Settings, get_settings
from .utils.logging import CorrelationContext, get_logger

logger = logging.getLogger(__name__)


def format_text(operation: Operation) -> str:
    return str(operation)


def format_json(operation: Operation) -> str:
    data = asdict(operation)
    data["type"] = type(operation).__name__.lower()
    return dumps(data)


FORMATTERS = {"text": format_text, "json": format_json}


class TailSession:
    """
    Runs tailing sessions until ``limit`` operations were printed.

    Keeps the builder current with the oplog's resume position so that every
    rebuild resumes where the previous cursor stopped.
    """

    def __init__(
        self,
        builder: OplogBuilder,
        emit: Callable[[Operation], None],
        limit: Optional[int] = None,
    ):
        self.builder = builder
        self.emit = emit
        self.limit = limit
        self.printed = 0
        self.skipped = 0
        self.sessions = 0

    @property
    def done(self) -> bool:
        return self.limit is not None and self.printed >= self.limit

    def run(self) -> None:
        """
        Build one oplog and print from it.

        Returns normally when the limit is reached, or when the cursor failed
        after making progress (so the caller starts a fresh retry budget).

        Raises:
            OplogConnectionError: If the cursor failed before yielding anything
        """
        self.sessions += 1
        with CorrelationContext(), self.builder.build() as oplog:
            try:
                while not self.done:
                    try:
                        operation = next(oplog)
                    except DecodeError as e:
                        self.skipped += 1
                        logger.warning(f"Skipping malformed oplog entry: {e}")
                        continue
                    self.emit(operation)
                    self.printed += 1
            except OplogConnectionError as e:
                self.builder = oplog.resume_builder(self.builder)
                resume_after = self.builder.config.resume_after
                logger.warning(
                    f"Lost oplog cursor: {e}",
                    extra={
                        "resume_after": format_timestamp(resume_after) if resume_after else None
                    }
                )
                if not oplog.operations_yielded:
                    raise


def follow(session: TailSession, max_reconnects: int, backoff_max: int, sleep=time.sleep) -> None:
    """Run ``session`` until done, reconnecting on cursor failures."""
    while not session.done:
        retrying = Retrying(
            stop=stop_after_attempt(max_reconnects + 1),
            wait=wait_exponential(multiplier=1, min=1, max=backoff_max),
            retry=retry_if_exception_type(OplogConnectionError),
            reraise=True,
            sleep=sleep,
        )
        retrying(session.run)


def build_filter(filter_json: Optional[str], op: Optional[str]):
    pattern = loads(filter_json) if filter_json else None
    if op:
        op_filter = {"op": op}
        pattern = {"$and": [pattern, op_filter]} if pattern else op_filter
    return pattern


def configure_logging(level: str, json_logs: bool) -> logging.Logger:
    if json_logs:
        return get_logger("oplog", level=getattr(logging, level))
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger("oplog")


def make_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oplog-tail",
        description="Print the operations of a MongoDB replica set oplog."
    )
    parser.add_argument("--uri", default=settings.mongo.uri, help="MongoDB connection URI")
    parser.add_argument("--namespace", default=settings.oplog.namespace, help="Oplog namespace")
    parser.add_argument(
        "--op",
        choices=["n", "i", "u", "d", "c"],
        help="Only print operations of this type"
    )
    parser.add_argument("--filter", help="Extended JSON query applied to raw oplog entries")
    parser.add_argument("--resume-after", type=parse_timestamp, help="Timestamp as SECONDS:ORDINAL")
    parser.add_argument(
        "--latest",
        action="store_true",
        help="Skip existing history and only print new operations"
    )
    parser.add_argument("--limit", type=int, help="Exit after printing this many operations")
    parser.add_argument("--format", choices=sorted(FORMATTERS), default="text")
    parser.add_argument("--max-reconnects", type=int, default=settings.oplog.max_reconnects)
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=settings.oplog.log_level
    )
    parser.add_argument("--json-logs", action="store_true", default=settings.oplog.json_logs)
    return parser


def cli(argv=None, out: TextIO = None, client_factory=pymongo.MongoClient) -> int:
    settings = get_settings()
    args = make_parser(settings).parse_args(argv)
    out = out or sys.stdout
    configure_logging(args.log_level, args.json_logs)

    client = client_factory(args.uri, **settings.mongo.client_options())
    try:
        builder = (
            OplogBuilder(client)
            .namespace(args.namespace)
            .filter(build_filter(args.filter, args.op))
            .no_cursor_timeout(settings.oplog.no_cursor_timeout)
            .await_time(settings.oplog.await_time_ms)
        )
        if args.resume_after is not None:
            builder = builder.resume_after(args.resume_after)
        elif args.latest:
            builder = builder.start_at_latest()

        formatter = FORMATTERS[args.format]

        def emit(operation: Operation) -> None:
            print(formatter(operation), file=out, flush=True)

        session = TailSession(builder, emit, limit=args.limit)
        follow(session, args.max_reconnects, settings.oplog.reconnect_backoff_max)
        logger.info(
            f"Printed {session.printed} operation(s)",
            extra={"skipped": session.skipped, "sessions": session.sessions}
        )
        return 0
    finally:
        client.close()


def main():
    try:
        sys.exit(cli())
    except KeyboardInterrupt:
        logger.info("Got a Ctrl+C. Terminating the program.")
        sys.exit(130)
    except OplogError as e:
        logger.error(f"Oplog tailing failed: {e}")
        sys.exit(f"oplog-tail: {e}")


if __name__ == "__main__":
    main()
