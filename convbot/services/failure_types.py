"""
Failure taxonomy for scheduling, conversion and billing.
Used as the `failure` label on metrics and log records.
"""
from enum import Enum


class FailureKind(str, Enum):
    DUPLICATE_ENQUEUE = "duplicate_enqueue"  # task already in flight, reported as sentinel
    CONVERSION_FAILURE = "conversion_failure"  # converter raised
    CONVERSION_TIMEOUT = "conversion_timeout"  # converter exceeded the job deadline
    DELIVERY_FAILURE = "delivery_failure"  # result produced but not sent
    INSUFFICIENT_CREDITS = "insufficient_credits"  # result flag, balance untouched
    STORAGE_FAILURE = "storage_failure"  # task store or credit store unavailable


# Kinds that leave the task in the error state and notify the user once
TERMINAL_FAILURES = frozenset({
    FailureKind.CONVERSION_FAILURE,
    FailureKind.CONVERSION_TIMEOUT,
    FailureKind.DELIVERY_FAILURE,
})
