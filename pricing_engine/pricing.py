from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from pricing_engine.record_store import Record

logger = logging.getLogger(__name__)

REGION_DISCOUNTS: dict[str, float] = {
    "NAMER": 0.10,
    "EMEA": 0.15,
    "APAC": 0.08,
}
DEFAULT_DISCOUNT = 0.05


class DiscountPolicy(Protocol):
    def discount_for(self, record: Record) -> float: ...


def _check_rate(rate: float, *, label: str) -> float:
    value = float(rate)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"discount rate for {label} must be within [0, 1], got {value}")
    return value


class RegionDiscountPolicy:
    """Region-keyed discount rates.

    The region comes either from a fixed literal (``region``) or from a field on
    each parent record (``region_field``). Unmapped or empty regions get the
    default rate.
    """

    def __init__(
        self,
        *,
        rates: Mapping[str, float] | None = None,
        default_rate: float = DEFAULT_DISCOUNT,
        region: str = "NAMER",
        region_field: str = "",
    ) -> None:
        source = REGION_DISCOUNTS if rates is None else rates
        self.rates = {str(k).upper(): _check_rate(v, label=str(k)) for k, v in source.items()}
        self.default_rate = _check_rate(default_rate, label="default")
        self.region = region
        self.region_field = region_field

    def region_for(self, record: Record) -> str:
        if self.region_field:
            value = record.fields
            for part in self.region_field.split("."):
                value = value.get(part) if isinstance(value, Mapping) else None
            return str(value or "").strip().upper()
        return self.region.strip().upper()

    def discount_for(self, record: Record) -> float:
        region = self.region_for(record)
        rate = self.rates.get(region)
        if rate is None:
            logger.debug("discount_region_unmapped region=%s default=%s", region or "-", self.default_rate)
            return self.default_rate
        return rate


def apply_discount(unit_price: float, rate: float) -> float:
    return float(unit_price) * (1 - _check_rate(rate, label="line"))
