from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from leadboard.crm.models import LEAD_STATUSES, utcnow
from leadboard.crm.sales import SalesLedger, sales_ledger, summarize
from leadboard.crm.schemas import AnalyticsRead, MonthlyPoint, ProductRank, SaleRead, StatusCount
from leadboard.crm.store import LeadStore, lead_store
from leadboard.platform.security.context import Principal
from leadboard.platform.security.visibility import get_team_ids

TRAILING_MONTHS = 6
TOP_PRODUCTS = 5


class _LeadLike(Protocol):
    status: str


def _trailing_months(today: date, count: int) -> list[tuple[int, int]]:
    months: list[tuple[int, int]] = []
    year, month = today.year, today.month
    for _ in range(count):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(months))


def compute_analytics(
    leads: Sequence[_LeadLike],
    sales: Sequence[SaleRead],
    today: date | None = None,
) -> AnalyticsRead:
    """Fold already-scoped leads and sales into dashboard figures."""

    current_day = today or utcnow().date()

    by_status = {status: 0 for status in LEAD_STATUSES}
    for lead in leads:
        if lead.status in by_status:
            by_status[lead.status] += 1
    total_leads = len(leads)
    won_leads = by_status["won"]
    conversion_rate = round(won_leads / total_leads * 100, 2) if total_leads else 0.0

    summary = summarize(sales)

    buckets: dict[tuple[int, int], dict[str, Decimal | int]] = {
        key: {"count": 0, "revenue": Decimal("0"), "entries": Decimal("0")}
        for key in _trailing_months(current_day, TRAILING_MONTHS)
    }
    for sale in sales:
        stamp: datetime = sale.completed_at
        bucket = buckets.get((stamp.year, stamp.month))
        if bucket is None:
            continue
        bucket["count"] = int(bucket["count"]) + 1
        field = "revenue" if sale.status == "completed" else "entries"
        bucket[field] = Decimal(bucket[field]) + sale.value

    monthly = [
        MonthlyPoint(
            year=year,
            month=month,
            label=date(year, month, 1).strftime("%b %Y"),
            count=int(values["count"]),
            revenue=Decimal(values["revenue"]),
            entries=Decimal(values["entries"]),
        )
        for (year, month), values in buckets.items()
    ]

    products: dict[str, dict[str, Decimal | int]] = {}
    for sale in sales:
        ranked = products.setdefault(sale.product, {"count": 0, "revenue": Decimal("0")})
        ranked["count"] = int(ranked["count"]) + 1
        if sale.status == "completed":
            ranked["revenue"] = Decimal(ranked["revenue"]) + sale.value
    # sorted() is stable, so ties keep first-seen order
    top = sorted(products.items(), key=lambda item: -int(item[1]["count"]))[:TOP_PRODUCTS]

    return AnalyticsRead(
        total_leads=total_leads,
        won_leads=won_leads,
        status_counts=[StatusCount(status=status, count=count) for status, count in by_status.items() if count],
        conversion_rate=conversion_rate,
        total_revenue=summary.total_revenue,
        total_entries=summary.total_entries,
        average_ticket=summary.average_ticket,
        sales_count=summary.count,
        monthly=monthly,
        top_products=[
            ProductRank(product=name, count=int(values["count"]), revenue=Decimal(values["revenue"]))
            for name, values in top
        ],
    )


def load_analytics(
    session: Session,
    principal: Principal | None,
    *,
    store: LeadStore | None = None,
    ledger: SalesLedger | None = None,
    today: date | None = None,
) -> AnalyticsRead:
    leads = (store or lead_store).query(session, principal, get_team_ids(session, principal))
    sales = (ledger or sales_ledger).team_sales(session, principal)
    return compute_analytics(leads, sales, today=today)
