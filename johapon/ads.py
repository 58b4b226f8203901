"""Advertisement sales and billing.

Partners buy ad slots (MAIN/SUB banners, BOARD posts) either for one union
or for every union. Each paid period is an AdContract; ACTIVE contracts with
auto_invoice on are billed monthly through AdInvoice rows.

Billing Rules:
- A month's invoice covers the calendar month and is due at the end of the next month
- YEARLY contract amounts are billed as a twelfth each month
- An ad can't have two ACTIVE contracts over overlapping dates
- DUE invoices past their due date count as overdue
"""

import calendar
import logging
import random
from datetime import date, datetime, timedelta
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFound, ValidationFailed
from .models import Ad, AdContract, AdInvoice, Union
from .schemas import (
    AdContractCreate,
    AdContractUpdate,
    AdInvoiceUpdate,
    AdsDashboard,
    AdType,
    AdUpdate,
    BannerAdCreate,
    BillingCycle,
    BoardAdCreate,
    ContractStats,
    ContractStatus,
    ExpiringContract,
    InvoiceGenerateResult,
    InvoiceStatus,
    MonthlyStats,
    OverduePartner,
    ad_create_adapter,
)

logger = logging.getLogger(__name__)

EXPIRING_WINDOW_DAYS = 30
DASHBOARD_LIST_LIMIT = 10
COMMON_UNION = "common"


# =============================================================================
# Month Helpers
# =============================================================================


def month_bounds(month: str) -> tuple[date, date]:
    """First and last day of a 'YYYY-MM' month."""
    try:
        year, month_num = (int(part) for part in month.split("-"))
        last_day = calendar.monthrange(year, month_num)[1]
        return date(year, month_num, 1), date(year, month_num, last_day)
    except ValueError:
        raise ValidationFailed(f"Month must be YYYY-MM, got '{month}'")


def next_month_end(day: date) -> date:
    """Last day of the month after `day`'s month."""
    year, month_num = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
    return date(year, month_num, calendar.monthrange(year, month_num)[1])


def monthly_amount(contract: AdContract) -> int:
    if contract.billing_cycle == BillingCycle.YEARLY:
        return round(contract.amount / 12)
    return contract.amount


# =============================================================================
# Ads
# =============================================================================


def _union_filter(column, union: str | UUID | None):
    """'common' selects union-less rows, an id selects that union, None everything."""
    if union is None or union == "":
        return None
    if union == COMMON_UNION:
        return column.is_(None)
    return column == (union if isinstance(union, UUID) else UUID(str(union)))


def list_ads(
    db: Session,
    union: str | UUID | None = None,
    ad_type: AdType | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> dict:
    """Paginated admin ad list."""
    query = select(Ad)
    union_clause = _union_filter(Ad.union_id, union)
    if union_clause is not None:
        query = query.where(union_clause)
    if ad_type:
        query = query.where(Ad.ad_type == ad_type)
    if is_active is not None:
        query = query.where(Ad.is_active == is_active)
    if search:
        query = query.where(or_(
            Ad.title.icontains(search, autoescape=True),
            Ad.partner_name.icontains(search, autoescape=True),
            Ad.phone.icontains(search, autoescape=True),
        ))

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    items = db.execute(
        query.order_by(Ad.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    ).scalars().all()
    return {
        "items": list(items),
        "total": total,
        "page": page,
        "page_size": page_size,
        "has_more": page * page_size < total,
    }


def get_ad(db: Session, ad_id: UUID) -> Ad:
    ad = db.get(Ad, ad_id)
    if not ad:
        raise NotFound(f"Ad {ad_id} not found")
    return ad


def _ad_columns(data: BannerAdCreate | BoardAdCreate) -> dict:
    columns = data.model_dump()
    columns["ad_type"] = AdType(data.ad_type)
    # Clear the other slot shape's fields
    if isinstance(data, BoardAdCreate):
        columns.update(image_url=None, link_url=None)
    else:
        columns["content"] = None
    return columns


def create_ad(db: Session, data: BannerAdCreate | BoardAdCreate) -> Ad:
    if data.union_id and not db.get(Union, data.union_id):
        raise NotFound(f"Union {data.union_id} not found")
    ad = Ad(**_ad_columns(data))
    db.add(ad)
    db.commit()
    logger.info(f"Created {ad.ad_type.value} ad for {ad.partner_name}")
    return ad


def update_ad(db: Session, ad_id: UUID, data: AdUpdate) -> Ad:
    """Apply a partial update and re-validate the result against its slot's shape."""
    ad = get_ad(db, ad_id)
    merged = {
        "ad_type": ad.ad_type.value,
        "union_id": ad.union_id,
        "partner_name": ad.partner_name,
        "phone": ad.phone,
        "contract_file_url": ad.contract_file_url,
        "is_active": ad.is_active,
        "image_url": ad.image_url,
        "link_url": ad.link_url,
        "title": ad.title,
        "content": ad.content,
    }
    changes = data.model_dump(exclude_unset=True)
    if "ad_type" in changes and changes["ad_type"] is not None:
        changes["ad_type"] = AdType(changes["ad_type"]).value
    merged.update(changes)

    try:
        validated = ad_create_adapter.validate_python(merged)
    except ValidationError as e:
        raise ValidationFailed(
            f"Invalid {merged['ad_type']} ad",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        )

    for column, value in _ad_columns(validated).items():
        setattr(ad, column, value)
    db.commit()
    return ad


def delete_ad(db: Session, ad_id: UUID) -> None:
    ad = get_ad(db, ad_id)
    db.delete(ad)
    db.commit()


def tenant_ads(
    db: Session,
    slug: str,
    ad_type: AdType,
    limit: int | None = None,
    today: date | None = None,
    rng: random.Random | None = None,
) -> list[Ad]:
    """Ads shown on a union's pages: its own plus common ads with a contract running today.

    With a limit, a random sample of that size is returned in random order.
    """
    union = db.execute(select(Union).where(Union.slug == slug)).scalar_one_or_none()
    if not union:
        raise NotFound(f"Union '{slug}' not found")
    today = today or date.today()

    running = (
        select(AdContract.ad_id)
        .where(AdContract.status == ContractStatus.ACTIVE)
        .where(AdContract.start_date <= today)
        .where(AdContract.end_date >= today)
    )
    ads = list(db.execute(
        select(Ad)
        .where(or_(Ad.union_id == union.id, Ad.union_id.is_(None)))
        .where(Ad.ad_type == ad_type)
        .where(Ad.is_active.is_(True))
        .where(Ad.id.in_(running))
        .order_by(Ad.created_at)
    ).scalars())

    if limit is not None:
        rng = rng or random.Random()
        ads = rng.sample(ads, min(limit, len(ads)))
    return ads


# =============================================================================
# Contracts
# =============================================================================


def _check_overlap(db: Session, ad_id: UUID, start: date, end: date, exclude_id: UUID | None = None) -> None:
    query = (
        select(AdContract)
        .where(AdContract.ad_id == ad_id)
        .where(AdContract.status == ContractStatus.ACTIVE)
        .where(AdContract.start_date <= end)
        .where(AdContract.end_date >= start)
    )
    if exclude_id:
        query = query.where(AdContract.id != exclude_id)
    overlapping = db.execute(query.limit(1)).scalar_one_or_none()
    if overlapping:
        raise ConflictError(
            f"Ad already has an active contract from {overlapping.start_date} to {overlapping.end_date}",
            details={"contract_id": str(overlapping.id)},
        )


def create_contract(db: Session, data: AdContractCreate) -> AdContract:
    ad = get_ad(db, data.ad_id)
    _check_overlap(db, ad.id, data.start_date, data.end_date)
    contract = AdContract(
        ad_id=ad.id,
        union_id=data.union_id if data.union_id is not None else ad.union_id,
        start_date=data.start_date,
        end_date=data.end_date,
        billing_cycle=data.billing_cycle,
        amount=data.amount,
        status=data.status,
        auto_invoice=data.auto_invoice,
        memo=data.memo,
    )
    db.add(contract)
    db.commit()
    logger.info(f"Created contract for {ad.partner_name}: {data.start_date} ~ {data.end_date}")
    return contract


def get_contract(db: Session, contract_id: UUID) -> AdContract:
    contract = db.get(AdContract, contract_id)
    if not contract:
        raise NotFound(f"Contract {contract_id} not found")
    return contract


def update_contract(db: Session, contract_id: UUID, data: AdContractUpdate) -> AdContract:
    contract = get_contract(db, contract_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    end_date = changes.get("end_date", contract.end_date)
    if end_date <= contract.start_date:
        raise ValidationFailed("end_date must be after start_date")
    status = changes.get("status", contract.status)
    if status == ContractStatus.ACTIVE:
        _check_overlap(db, contract.ad_id, contract.start_date, end_date, exclude_id=contract.id)

    for column, value in changes.items():
        setattr(contract, column, value)
    db.commit()
    return contract


def list_contracts(
    db: Session,
    ad_id: UUID | None = None,
    status: ContractStatus | None = None,
    union: str | UUID | None = None,
) -> list[AdContract]:
    query = select(AdContract)
    if ad_id:
        query = query.where(AdContract.ad_id == ad_id)
    if status:
        query = query.where(AdContract.status == status)
    union_clause = _union_filter(AdContract.union_id, union)
    if union_clause is not None:
        query = query.where(union_clause)
    return list(db.execute(query.order_by(AdContract.start_date.desc())).scalars())


# =============================================================================
# Invoices
# =============================================================================


def generate_invoices(db: Session, month: str) -> InvoiceGenerateResult:
    """Create the month's DUE invoices for every ACTIVE auto-invoiced contract running in it."""
    period_start, period_end = month_bounds(month)
    due_date = next_month_end(period_start)

    contracts = db.execute(
        select(AdContract)
        .where(AdContract.status == ContractStatus.ACTIVE)
        .where(AdContract.auto_invoice.is_(True))
        .where(AdContract.start_date <= period_end)
        .where(AdContract.end_date >= period_start)
    ).scalars().all()

    already_billed = set(db.execute(
        select(AdInvoice.contract_id)
        .where(AdInvoice.period_start == period_start)
        .where(AdInvoice.contract_id.in_([c.id for c in contracts]))
    ).scalars())

    created = 0
    for contract in contracts:
        if contract.id in already_billed:
            continue
        db.add(AdInvoice(
            contract_id=contract.id,
            period_start=period_start,
            period_end=period_end,
            due_date=due_date,
            amount=monthly_amount(contract),
            status=InvoiceStatus.DUE,
        ))
        created += 1
    db.commit()

    logger.info(f"Generated {created} invoices for {month} ({len(already_billed)} already existed)")
    return InvoiceGenerateResult(month=month, created=created, skipped=len(already_billed))


def invoice_row(invoice: AdInvoice) -> dict:
    """Invoice with the contract and ad fields list views show."""
    contract = invoice.contract
    return {
        "id": invoice.id,
        "contract_id": invoice.contract_id,
        "period_start": invoice.period_start,
        "period_end": invoice.period_end,
        "due_date": invoice.due_date,
        "amount": invoice.amount,
        "status": invoice.status,
        "paid_at": invoice.paid_at,
        "union_id": contract.union_id,
        "billing_cycle": contract.billing_cycle,
        "partner_name": contract.ad.partner_name,
        "ad_title": contract.ad.title,
    }


def list_invoices(
    db: Session,
    union: str | UUID | None = None,
    status: InvoiceStatus | None = None,
    month: str | None = None,
    page: int = 1,
    page_size: int = 10,
) -> dict:
    """Paginated invoices, newest due date first. `month` filters on due date."""
    query = select(AdInvoice).join(AdContract, AdInvoice.contract_id == AdContract.id)
    union_clause = _union_filter(AdContract.union_id, union)
    if union_clause is not None:
        query = query.where(union_clause)
    if status:
        query = query.where(AdInvoice.status == status)
    if month:
        first, last = month_bounds(month)
        query = query.where(AdInvoice.due_date >= first).where(AdInvoice.due_date <= last)

    total = db.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    invoices = db.execute(
        query.order_by(AdInvoice.due_date.desc()).offset((page - 1) * page_size).limit(page_size)
    ).scalars().all()
    return {
        "items": [invoice_row(i) for i in invoices],
        "total": total,
        "page": page,
        "page_size": page_size,
        "has_more": page * page_size < total,
    }


def update_invoice(db: Session, invoice_id: UUID, data: AdInvoiceUpdate) -> AdInvoice:
    invoice = db.get(AdInvoice, invoice_id)
    if not invoice:
        raise NotFound(f"Invoice {invoice_id} not found")
    invoice.status = data.status
    if data.status == InvoiceStatus.PAID:
        invoice.paid_at = data.paid_at or datetime.utcnow()
    else:
        invoice.paid_at = None
    db.commit()
    return invoice


def mark_overdue(db: Session, today: date | None = None) -> int:
    """Flag DUE invoices past their due date as OVERDUE."""
    today = today or date.today()
    invoices = db.execute(
        select(AdInvoice)
        .where(AdInvoice.status == InvoiceStatus.DUE)
        .where(AdInvoice.due_date < today)
    ).scalars().all()
    for invoice in invoices:
        invoice.status = InvoiceStatus.OVERDUE
    db.commit()
    return len(invoices)


# =============================================================================
# Dashboard
# =============================================================================


def _is_overdue(invoice: AdInvoice, today: date) -> bool:
    return invoice.status == InvoiceStatus.OVERDUE or (
        invoice.status == InvoiceStatus.DUE and invoice.due_date < today
    )


def ads_dashboard(db: Session, today: date | None = None) -> AdsDashboard:
    """Billing overview for the ad admin."""
    today = today or date.today()
    month_start = today.replace(day=1)
    month_end = today.replace(day=calendar.monthrange(today.year, today.month)[1])

    paid_amount = db.execute(
        select(func.coalesce(func.sum(AdInvoice.amount), 0))
        .where(AdInvoice.status == InvoiceStatus.PAID)
        .where(AdInvoice.paid_at >= datetime.combine(month_start, datetime.min.time()))
        .where(AdInvoice.paid_at < datetime.combine(month_end + timedelta(days=1), datetime.min.time()))
    ).scalar()
    due_amount = db.execute(
        select(func.coalesce(func.sum(AdInvoice.amount), 0))
        .where(AdInvoice.status == InvoiceStatus.DUE)
        .where(AdInvoice.due_date >= month_start)
        .where(AdInvoice.due_date <= month_end)
    ).scalar()

    open_invoices = db.execute(
        select(AdInvoice)
        .where(AdInvoice.status.in_([InvoiceStatus.DUE, InvoiceStatus.OVERDUE]))
        .order_by(AdInvoice.due_date)
    ).scalars().all()
    overdue = [i for i in open_invoices if _is_overdue(i, today)]

    counts = dict(db.execute(
        select(AdContract.status, func.count(AdContract.id)).group_by(AdContract.status)
    ).all())
    expiring = db.execute(
        select(AdContract)
        .where(AdContract.status == ContractStatus.ACTIVE)
        .where(AdContract.end_date >= today)
        .where(AdContract.end_date <= today + timedelta(days=EXPIRING_WINDOW_DAYS))
        .order_by(AdContract.end_date)
    ).scalars().all()

    return AdsDashboard(
        monthly=MonthlyStats(
            paid_amount=int(paid_amount or 0),
            due_amount=int(due_amount or 0),
            overdue_amount=sum(i.amount for i in overdue),
            overdue_partner_count=len({i.contract.ad_id for i in overdue}),
        ),
        contracts=ContractStats(
            pending=counts.get(ContractStatus.PENDING, 0),
            active=counts.get(ContractStatus.ACTIVE, 0),
            expired=counts.get(ContractStatus.EXPIRED, 0),
            cancelled=counts.get(ContractStatus.CANCELLED, 0),
            expiring_soon=len(expiring),
        ),
        overdue_partners=[
            OverduePartner(
                invoice_id=i.id,
                partner_name=i.contract.ad.partner_name,
                phone=i.contract.ad.phone,
                amount=i.amount,
                due_date=i.due_date,
                overdue_days=(today - i.due_date).days,
            )
            for i in overdue[:DASHBOARD_LIST_LIMIT]
        ],
        expiring_contracts=[
            ExpiringContract(
                contract_id=c.id,
                partner_name=c.ad.partner_name,
                end_date=c.end_date,
                days_until_expiry=(c.end_date - today).days,
            )
            for c in expiring[:DASHBOARD_LIST_LIMIT]
        ],
    )
