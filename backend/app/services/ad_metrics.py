from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from backend.app.models import (
    AdMetricCreateRequest,
    AdMetricRecord,
    AdMetricSummaryResponse,
    utc_now,
)
from backend.app.store import InMemoryStore, new_id

logger = logging.getLogger("zapdesk.ad_metrics")


def _ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, 4)


def derived_fields(*, invested: float, leads: int, pix_count: int, pix_total: float) -> dict[str, float]:
    return {
        "cpl": _ratio(invested, leads),
        "conversion": round(_ratio(pix_count, leads) * 100, 2),
        "result": round(pix_total - invested, 2),
        "roas": _ratio(pix_total, invested),
    }


def save_entry(store: InMemoryStore, user_id: str, request: AdMetricCreateRequest) -> AdMetricRecord:
    """Create the entry for a day and product, or overwrite the existing one."""
    product = request.product_name.strip()
    values = {
        "invested": request.invested,
        "leads": request.leads,
        "pix_count": request.pix_count,
        "pix_total": request.pix_total,
    }
    values.update(derived_fields(**values))
    now = utc_now()
    existing = store.find_ad_metric(user_id=user_id, day=request.day, product_name=product)
    if existing:
        record = existing.model_copy(update={**values, "updated_at_utc": now})
    else:
        record = AdMetricRecord(
            id=new_id("adm"),
            user_id=user_id,
            day=request.day,
            product_name=product,
            created_at_utc=now,
            updated_at_utc=now,
            **values,
        )
    logger.info("ad_metric_saved metric_id=%s day=%s updated=%s", record.id, record.day, existing is not None)
    return store.save_ad_metric(record)


def summarize(
    store: InMemoryStore,
    user_id: str,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> AdMetricSummaryResponse:
    entries = store.list_ad_metrics(user_id, date_from=date_from, date_to=date_to)
    invested = round(sum(entry.invested for entry in entries), 2)
    leads = sum(entry.leads for entry in entries)
    pix_count = sum(entry.pix_count for entry in entries)
    pix_total = round(sum(entry.pix_total for entry in entries), 2)
    return AdMetricSummaryResponse(
        date_from=date_from,
        date_to=date_to,
        entries=len(entries),
        invested=invested,
        leads=leads,
        pix_count=pix_count,
        pix_total=pix_total,
        **derived_fields(invested=invested, leads=leads, pix_count=pix_count, pix_total=pix_total),
    )
