from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_coupon_issued() -> None:
    _inc("coupons_issued")


def record_coupon_activated() -> None:
    _inc("coupons_activated")


def record_coupon_redeemed() -> None:
    _inc("coupons_redeemed")


def record_verification_failure() -> None:
    _inc("payment_verification_failures")


def record_issuance_exhausted() -> None:
    _inc("coupon_issuance_exhausted")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
