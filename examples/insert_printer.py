#!/usr/bin/env python3
"""
Print inserts only, filtering on the server and skipping malformed entries.

Usage:
    python examples/insert_printer.py [mongodb://localhost:27017]
"""

import sys

from pymongo import MongoClient

from oplog import DecodeError, OplogBuilder


def main():
    uri = sys.argv[1] if len(sys.argv) > 1 else "mongodb://localhost:27017"
    client = MongoClient(uri)

    oplog = OplogBuilder(client).filter({"op": "i"}).build()
    with oplog:
        while True:
            try:
                insert = next(oplog)
            except DecodeError as e:
                print(f"skipped: {e}", file=sys.stderr)
                continue
            print(f"{insert.namespace}: {insert.document}")


if __name__ == "__main__":
    main()
