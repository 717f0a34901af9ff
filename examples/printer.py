#!/usr/bin/env python3
"""
Print every operation in the oplog, waiting for new ones as they arrive.

Usage:
    python examples/printer.py [mongodb://localhost:27017]
"""

import sys

from pymongo import MongoClient

from oplog import Oplog


def main():
    uri = sys.argv[1] if len(sys.argv) > 1 else "mongodb://localhost:27017"
    client = MongoClient(uri)

    with Oplog.new(client) as oplog:
        for operation in oplog:
            print(operation)


if __name__ == "__main__":
    main()
