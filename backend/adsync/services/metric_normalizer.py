"""Metric normalizer: provider rows -> NormalizedMetric.

WHAT:
    Pure mapping functions, one per provider, from the raw rows returned by
    the adapters into the canonical per-day, per-campaign schema.

WHY:
    - Providers disagree on number encoding (strings, micros, currency
      objects) and on where conversions live (action lists vs. flat fields)
    - Output must be deterministic so re-processing the same page is a
      no-op upsert and so tests can compare serialized output byte for byte

DISPATCH:
    Raw rows are a tagged union (GoogleRawRow | MetaRawRow | TikTokRawRow |
    LinkedInRawRow). `normalize_rows` picks the mapper by provider id, never
    by inspecting the row's shape.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/reference/ads-action-stats/
    - adsync/services/providers/*.py (producers of raw rows)
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from adsync.models import ProviderEnum
from adsync.schemas import Creative, NormalizedMetric

# Meta action types counted as conversions / revenue
META_CONVERSION_ACTIONS = frozenset({"offsite_conversion", "purchase"})
META_REVENUE_ACTIONS = frozenset({"offsite_conversion.purchase", "omni_purchase"})


# =============================================================================
# RAW ROW VARIANTS
# =============================================================================

@dataclass(frozen=True)
class GoogleRawRow:
    """One `googleAds:search` result (campaign x segments.date)."""
    payload: Mapping[str, Any]
    provider: ProviderEnum = field(default=ProviderEnum.google, init=False)


@dataclass(frozen=True)
class MetaRawRow:
    """One insights row (campaign x day) plus optional creative enrichment."""
    payload: Mapping[str, Any]
    creatives: Sequence[Mapping[str, Any]] = ()
    provider: ProviderEnum = field(default=ProviderEnum.meta, init=False)


@dataclass(frozen=True)
class TikTokRawRow:
    """One `report/integrated/get` list entry with dimensions and metrics blocks."""
    payload: Mapping[str, Any]
    provider: ProviderEnum = field(default=ProviderEnum.tiktok, init=False)


@dataclass(frozen=True)
class LinkedInRawRow:
    """One `adAnalytics` element; fallback_date is used when the row has no dateRange."""
    payload: Mapping[str, Any]
    fallback_date: str = ""
    provider: ProviderEnum = field(default=ProviderEnum.linkedin, init=False)


RawMetricRow = Union[GoogleRawRow, MetaRawRow, TikTokRawRow, LinkedInRawRow]


# =============================================================================
# COERCION HELPERS
# =============================================================================

def coerce_number(value: Any) -> float:
    """string | number | None -> finite float (NaN, inf, garbage -> 0)."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_int(value: Any) -> int:
    return int(round(coerce_number(value)))


def coerce_currency(value: Any) -> float:
    """LinkedIn money may be a plain number or {"amount": "1.23", "currencyCode": ...}."""
    if isinstance(value, Mapping):
        return coerce_number(value.get("amount"))
    return coerce_number(value)


def _optional_revenue(value: float) -> Optional[float]:
    return value if value > 0 else None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def sum_actions(actions: Any, allowed: frozenset) -> float:
    """Sum `value` of Meta action entries whose action_type is allowed."""
    if not isinstance(actions, Sequence) or isinstance(actions, (str, bytes)):
        return 0.0
    total = 0.0
    for action in actions:
        if isinstance(action, Mapping) and action.get("action_type") in allowed:
            total += coerce_number(action.get("value"))
    return total


def _raw(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return copy.deepcopy(dict(payload))


# =============================================================================
# PER-PROVIDER MAPPERS
# =============================================================================

def normalize_google_row(row: GoogleRawRow, client_id: Optional[str], account_id: Optional[str]) -> NormalizedMetric:
    payload = row.payload
    segments = payload.get("segments") or {}
    metrics = payload.get("metrics") or {}
    campaign = payload.get("campaign") or {}

    cost_micros = metrics.get("costMicros", metrics.get("cost_micros"))
    conversions_value = metrics.get("conversionsValue", metrics.get("conversions_value"))

    return NormalizedMetric(
        provider_id=ProviderEnum.google,
        client_id=client_id,
        account_id=account_id,
        date=str(segments.get("date") or ""),
        spend=coerce_number(cost_micros) / 1_000_000,
        impressions=coerce_int(metrics.get("impressions")),
        clicks=coerce_int(metrics.get("clicks")),
        conversions=coerce_number(metrics.get("conversions")),
        revenue=_optional_revenue(coerce_number(conversions_value)),
        campaign_id=_str_or_none(campaign.get("id")),
        campaign_name=_str_or_none(campaign.get("name")),
        raw_payload=_raw(payload),
    )


def _meta_creative(entry: Mapping[str, Any]) -> Creative:
    return Creative(
        id=str(entry.get("id") or ""),
        name=str(entry.get("name") or ""),
        type=str(entry.get("type") or "ad"),
        url=_str_or_none(entry.get("url")),
        spend=coerce_number(entry["spend"]) if "spend" in entry else None,
        impressions=coerce_int(entry["impressions"]) if "impressions" in entry else None,
        clicks=coerce_int(entry["clicks"]) if "clicks" in entry else None,
        conversions=coerce_number(entry["conversions"]) if "conversions" in entry else None,
        revenue=coerce_number(entry["revenue"]) if "revenue" in entry else None,
    )


def normalize_meta_row(row: MetaRawRow, client_id: Optional[str], account_id: Optional[str]) -> NormalizedMetric:
    payload = row.payload
    return NormalizedMetric(
        provider_id=ProviderEnum.meta,
        client_id=client_id,
        account_id=account_id or _str_or_none(payload.get("account_id")),
        date=str(payload.get("date_start") or ""),
        spend=coerce_number(payload.get("spend")),
        impressions=coerce_int(payload.get("impressions")),
        clicks=coerce_int(payload.get("clicks")),
        conversions=sum_actions(payload.get("actions"), META_CONVERSION_ACTIONS),
        revenue=_optional_revenue(sum_actions(payload.get("action_values"), META_REVENUE_ACTIONS)),
        campaign_id=_str_or_none(payload.get("campaign_id")),
        campaign_name=_str_or_none(payload.get("campaign_name")),
        creatives=[_meta_creative(entry) for entry in row.creatives],
        raw_payload=_raw(payload),
    )


def normalize_tiktok_row(row: TikTokRawRow, client_id: Optional[str], account_id: Optional[str]) -> NormalizedMetric:
    payload = row.payload
    dimensions = payload.get("dimensions") or {}
    metrics = payload.get("metrics") or {}

    # stat_time_day arrives as "2024-01-01 00:00:00"
    day = str(dimensions.get("stat_time_day") or "")[:10]

    return NormalizedMetric(
        provider_id=ProviderEnum.tiktok,
        client_id=client_id,
        account_id=account_id,
        date=day,
        spend=coerce_number(metrics.get("spend")),
        impressions=coerce_int(metrics.get("impressions")),
        clicks=coerce_int(metrics.get("clicks")),
        conversions=coerce_number(metrics.get("conversion")),
        revenue=_optional_revenue(coerce_number(metrics.get("total_complete_payment"))),
        campaign_id=_str_or_none(dimensions.get("campaign_id")),
        campaign_name=_str_or_none(dimensions.get("campaign_name") or metrics.get("campaign_name")),
        raw_payload=_raw(payload),
    )


def _linkedin_date(payload: Mapping[str, Any], fallback: str) -> str:
    date_range = payload.get("dateRange") or payload.get("timeRange") or {}
    start = date_range.get("start") if isinstance(date_range, Mapping) else None
    if isinstance(start, Mapping) and start.get("year"):
        return f"{int(start['year']):04d}-{int(start.get('month', 1)):02d}-{int(start.get('day', 1)):02d}"
    if isinstance(start, str) and start:
        return start[:10]
    return fallback


def _linkedin_campaign_id(payload: Mapping[str, Any]) -> Optional[str]:
    pivot = payload.get("pivotValue") or payload.get("pivotValues")
    if isinstance(pivot, list):
        pivot = pivot[0] if pivot else None
    if isinstance(pivot, str) and pivot.startswith("urn:li:sponsoredCampaign:"):
        return pivot.rsplit(":", 1)[-1]
    return None


def normalize_linkedin_row(row: LinkedInRawRow, client_id: Optional[str], account_id: Optional[str]) -> NormalizedMetric:
    payload = row.payload
    return NormalizedMetric(
        provider_id=ProviderEnum.linkedin,
        client_id=client_id,
        account_id=account_id,
        date=_linkedin_date(payload, row.fallback_date),
        spend=coerce_currency(payload.get("costInLocalCurrency")),
        impressions=coerce_int(payload.get("impressions")),
        clicks=coerce_int(payload.get("clicks")),
        conversions=coerce_number(payload.get("externalWebsiteConversions", payload.get("conversions"))),
        revenue=_optional_revenue(coerce_currency(payload.get("externalWebsiteConversionsValue"))),
        campaign_id=_linkedin_campaign_id(payload),
        raw_payload=_raw(payload),
    )


_NORMALIZERS: Dict[ProviderEnum, Callable[[Any, Optional[str], Optional[str]], NormalizedMetric]] = {
    ProviderEnum.google: normalize_google_row,
    ProviderEnum.meta: normalize_meta_row,
    ProviderEnum.tiktok: normalize_tiktok_row,
    ProviderEnum.linkedin: normalize_linkedin_row,
}


def normalize_rows(
    provider: ProviderEnum,
    rows: Iterable[RawMetricRow],
    client_id: Optional[str] = None,
    account_id: Optional[str] = None,
) -> List[NormalizedMetric]:
    """Map raw rows from one provider to NormalizedMetric, preserving order.

    Raises:
        ValueError: If a row's variant does not belong to `provider`.
    """
    provider = ProviderEnum(provider)
    mapper = _NORMALIZERS[provider]
    out: List[NormalizedMetric] = []
    for row in rows:
        if row.provider is not provider:
            raise ValueError(f"{type(row).__name__} cannot be normalized as {provider.value}")
        out.append(mapper(row, client_id, account_id))
    return out
