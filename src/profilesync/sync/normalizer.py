"""
Business-data API response normalizer.

Converts raw dicts from the API client into clean field dicts that map
directly onto the SQLModel entity columns. No DB access here: the batch
writer handles persistence.

All functions return plain dicts so they're easy to test without any
SQLModel or DB dependencies. A record missing its natural key raises
RecordValidationError; everything else falls back to a safe default.

Resource names from the API are hierarchical paths:

  accounts/{account}                     Account.account_ref
  locations/{location}                   Location.location_ref
  accounts/{a}/locations/{l}/reviews/{r} Review (review id is the last part)
  accounts/{a}/locations/{l}/localPosts/{p}
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from profilesync.sync.errors import RecordValidationError

STAR_RATINGS = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

DESKTOP_SEARCH = "BUSINESS_IMPRESSIONS_DESKTOP_SEARCH"
MOBILE_SEARCH = "BUSINESS_IMPRESSIONS_MOBILE_SEARCH"
DESKTOP_MAPS = "BUSINESS_IMPRESSIONS_DESKTOP_MAPS"
MOBILE_MAPS = "BUSINESS_IMPRESSIONS_MOBILE_MAPS"

# metric name -> PerformanceRecord column
PERFORMANCE_METRICS = {
    DESKTOP_SEARCH: "desktop_search_impressions",
    MOBILE_SEARCH: "mobile_search_impressions",
    DESKTOP_MAPS: "desktop_maps_impressions",
    MOBILE_MAPS: "mobile_maps_impressions",
    "CALL_CLICKS": "call_clicks",
    "WEBSITE_CLICKS": "website_clicks",
    "BUSINESS_DIRECTION_REQUESTS": "direction_requests",
    "BUSINESS_CONVERSATIONS": "conversations",
    "BUSINESS_BOOKINGS": "bookings",
}


@dataclass
class WriteContext:
    """Owner references stamped onto every record written for one unit."""

    brand_id: str
    account_ref: str = ""
    location_id: Optional[int] = None
    location_ref: Optional[str] = None


def parse_api_time(s: Optional[str]) -> Optional[datetime]:
    """Parse API timestamps ("2025-01-15T07:30:00.123456Z") into naive UTC."""
    if not s:
        return None
    # Fractional seconds and the zone suffix are dropped; the API reports UTC
    base = s.strip()[:19]
    try:
        return datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        pass
    try:
        return datetime.strptime(base[:10], "%Y-%m-%d")
    except ValueError:
        return None


def _last_segment(resource_name: str) -> str:
    return resource_name.rstrip("/").split("/")[-1]


def _require(raw: Dict[str, Any], key: str, kind: str) -> Any:
    value = raw.get(key)
    if value in (None, ""):
        raise RecordValidationError(f"{kind} record missing required field '{key}'")
    return value


def _raw_json(raw: Dict[str, Any]) -> str:
    return json.dumps(raw, default=str)


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def placeholder_location_name(location_ref: str) -> str:
    """Name given to a location the API returned without a title."""
    return f"Store {location_ref}"


# ─── Per-type normalizers ─────────────────────────────────────────────────────

def normalize_account(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    account_ref = _require(raw, "name", "Account")
    return {
        "brand_id": ctx.brand_id,
        "account_ref": account_ref,
        "name": raw.get("accountName") or "",
        "account_type": raw.get("type"),
        "raw_json": _raw_json(raw),
    }


def normalize_location(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    location_ref = _require(raw, "name", "Location")
    address = raw.get("storefrontAddress") or {}
    address_parts = list(address.get("addressLines") or []) + [
        address.get("locality"),
        address.get("administrativeArea"),
        address.get("postalCode"),
    ]
    categories = raw.get("categories") or {}
    metadata = raw.get("metadata") or {}
    return {
        "brand_id": ctx.brand_id,
        "account_ref": ctx.account_ref,
        "location_ref": location_ref,
        "name": raw.get("title") or placeholder_location_name(location_ref),
        "phone": (raw.get("phoneNumbers") or {}).get("primaryPhone"),
        "address": ", ".join(p for p in address_parts if p) or None,
        "primary_category": (categories.get("primaryCategory") or {}).get("displayName"),
        "website_url": raw.get("websiteUri"),
        "maps_url": metadata.get("mapsUri"),
        "verified": bool(metadata.get("hasVoiceOfMerchant", False)),
        "raw_json": _raw_json(raw),
    }


def _star_rating(value: Any) -> int:
    if isinstance(value, str):
        rating = STAR_RATINGS.get(value.upper(), _to_int(value))
    else:
        rating = _to_int(value)
    return max(1, min(5, rating))


def normalize_review(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    review_id = raw.get("reviewId") or (raw.get("name") and _last_segment(raw["name"]))
    if not review_id:
        raise RecordValidationError("Review record missing required field 'reviewId'")
    reviewer = raw.get("reviewer") or {}
    reply = raw.get("reviewReply") or {}
    return {
        "brand_id": ctx.brand_id,
        "account_ref": ctx.account_ref,
        "location_id": ctx.location_id,
        "review_id": review_id,
        "reviewer_name": reviewer.get("displayName") or "Anonymous",
        "star_rating": _star_rating(raw.get("starRating")),
        "comment": raw.get("comment") or "",
        "reply_comment": reply.get("comment"),
        "create_time": parse_api_time(raw.get("createTime")),
        "update_time": parse_api_time(raw.get("updateTime")),
        "raw_json": _raw_json(raw),
    }


def normalize_post(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    post_id = raw.get("postId") or (raw.get("name") and _last_segment(raw["name"]))
    if not post_id:
        raise RecordValidationError("Post record missing required field 'postId'")
    return {
        "brand_id": ctx.brand_id,
        "account_ref": ctx.account_ref,
        "location_id": ctx.location_id,
        "post_id": post_id,
        "summary": raw.get("summary") or "",
        "topic_type": raw.get("topicType"),
        "state": raw.get("state") or "LIVE",
        "language_code": raw.get("languageCode") or "en",
        "call_to_action_url": (raw.get("callToAction") or {}).get("url"),
        "search_url": raw.get("searchUrl"),
        "create_time": parse_api_time(raw.get("createTime")),
        "update_time": parse_api_time(raw.get("updateTime")),
        "raw_json": _raw_json(raw),
    }


def normalize_performance(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    """
    Normalize one aggregated performance window.

    Expects ``{"periodStart", "periodEnd", "windowDays", "metrics": {name: total}}``
    as assembled by the API client from the daily-metric time series.
    """
    if ctx.location_id is None:
        raise RecordValidationError("Performance record requires a location")
    period_start = parse_api_time(_require(raw, "periodStart", "Performance"))
    period_end = parse_api_time(_require(raw, "periodEnd", "Performance"))
    if period_start is None or period_end is None:
        raise RecordValidationError("Performance record has an unparseable period")
    metrics = raw.get("metrics") or {}

    fields: Dict[str, Any] = {
        "brand_id": ctx.brand_id,
        "account_ref": ctx.account_ref,
        "location_id": ctx.location_id,
        "period_start": period_start,
        "period_end": period_end,
        "window_days": raw.get("windowDays"),
        "raw_json": _raw_json(raw),
    }
    for metric, column in PERFORMANCE_METRICS.items():
        fields[column] = _to_int(metrics.get(metric))

    views = sum(fields[c] for c in (
        "desktop_search_impressions", "mobile_search_impressions",
        "desktop_maps_impressions", "mobile_maps_impressions",
    ))
    clicks = fields["call_clicks"] + fields["website_clicks"]
    actions = clicks + fields["direction_requests"]
    fields["conversion_rate"] = (actions / views) * 100 if views > 0 else 0.0
    fields["click_through_rate"] = (clicks / views) * 100 if views > 0 else 0.0
    return fields


def normalize_keyword(raw: Dict[str, Any], ctx: WriteContext) -> Dict[str, Any]:
    if ctx.location_id is None:
        raise RecordValidationError("Search keyword record requires a location")
    keyword = _require(raw, "searchKeyword", "Search keyword")
    year = _to_int(_require(raw, "year", "Search keyword"))
    month = _to_int(_require(raw, "month", "Search keyword"))
    if not 1 <= month <= 12:
        raise RecordValidationError(f"Invalid month {month} for keyword '{keyword}'")
    value = raw.get("insightsValue") or {}
    return {
        "brand_id": ctx.brand_id,
        "account_ref": ctx.account_ref,
        "location_id": ctx.location_id,
        "keyword": keyword,
        "year": year,
        "month": month,
        "impressions": _to_int(value.get("value")),
        "impressions_threshold": _to_int(value["threshold"]) if "threshold" in value else None,
        "raw_json": _raw_json(raw),
    }


NORMALIZERS: Dict[str, Callable[[Dict[str, Any], WriteContext], Dict[str, Any]]] = {
    "accounts": normalize_account,
    "locations": normalize_location,
    "reviews": normalize_review,
    "posts": normalize_post,
    "performance": normalize_performance,
    "keywords": normalize_keyword,
}
