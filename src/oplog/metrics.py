"""
Prometheus metrics for oplog tailing.
"""

from prometheus_client import Counter

oplog_operations_total = Counter(
    'oplog_operations_total',
    'Total oplog operations yielded to consumers',
    ['op_type']
)

oplog_decode_errors_total = Counter(
    'oplog_decode_errors_total',
    'Total oplog records that could not be decoded',
    ['error_type']
)

oplog_empty_polls_total = Counter(
    'oplog_empty_polls_total',
    'Total pulls that found no new oplog entries'
)
