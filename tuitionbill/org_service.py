import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update

from tuitionbill.config import cfg
from tuitionbill.errors import UnknownOrganisation, ValidationError, require_non_negative
from tuitionbill.models.organisation import Organisation, RateCard
from tuitionbill.money import RateLike, to_rate

BILLING_MODE_DELIVERED = "delivered"
BILLING_MODE_UPFRONT = "upfront"
BILLING_MODES = (BILLING_MODE_DELIVERED, BILLING_MODE_UPFRONT)


@dataclass(frozen=True)
class OrgSettings:
    org_id: str
    vat_enabled: bool
    vat_rate_percent: Decimal
    cancellation_notice_hours: int
    billing_mode: str
    suppress_zero_invoices: bool
    invoice_due_days: int
    currency_code: str


def normalize_billing_mode(mode: Optional[str]) -> str:
    value = str(mode or "").strip().lower()
    if value not in BILLING_MODES:
        raise ValidationError(f"unknown billing mode: {mode}", billing_mode=mode)
    return value


def get_org(session, org_id: str) -> Organisation:
    org_key = str(org_id or "").strip()
    if not org_key:
        raise UnknownOrganisation("org_id is required")
    org = session.get(Organisation, org_key)
    if not org:
        raise UnknownOrganisation(f"organisation {org_key} not found", org_id=org_key)
    return org


def _pick(value, default):
    return default if value is None else value


def get_org_settings(session, org_id: str) -> OrgSettings:
    org = get_org(session, org_id)
    return OrgSettings(
        org_id=org.id,
        vat_enabled=bool(org.vat_enabled),
        vat_rate_percent=to_rate(org.vat_rate_percent or 0),
        cancellation_notice_hours=int(_pick(org.cancellation_notice_hours, cfg.get("credits.default_notice_hours", 24))),
        billing_mode=normalize_billing_mode(_pick(org.billing_mode, cfg.get("billing.default_mode", BILLING_MODE_DELIVERED))),
        suppress_zero_invoices=bool(_pick(org.suppress_zero_invoices, cfg.get("billing.suppress_zero_invoices", False))),
        invoice_due_days=int(_pick(org.invoice_due_days, cfg.get("billing.invoice_due_days", 14))),
        currency_code=str(_pick(org.currency_code, cfg.get("billing.currency_code", "GBP"))),
    )


def create_organisation(
    session,
    org_id: str,
    name: str = "",
    vat_enabled: bool = False,
    vat_rate_percent: RateLike = 0,
    cancellation_notice_hours: Optional[int] = None,
    billing_mode: Optional[str] = None,
    suppress_zero_invoices: Optional[bool] = None,
    invoice_due_days: Optional[int] = None,
    currency_code: Optional[str] = None,
) -> Organisation:
    now = datetime.now()
    org = Organisation(
        id=str(org_id).strip(),
        name=(name or "").strip()[:255],
        vat_enabled=bool(vat_enabled),
        vat_rate_percent=to_rate(vat_rate_percent),
        cancellation_notice_hours=cancellation_notice_hours,
        billing_mode=normalize_billing_mode(billing_mode) if billing_mode else None,
        suppress_zero_invoices=suppress_zero_invoices,
        invoice_due_days=invoice_due_days,
        currency_code=currency_code,
        invoice_seq=0,
        created_at=now,
        updated_at=now,
    )
    session.add(org)
    session.commit()
    return org


def add_rate_card(session, org_id: str, duration_mins: int, rate_minor: int, is_default: bool = False) -> RateCard:
    get_org(session, org_id)
    require_non_negative(rate_minor, "rate_minor")
    card = RateCard(
        id=str(uuid.uuid4()),
        org_id=org_id,
        duration_mins=int(duration_mins),
        rate_minor=rate_minor,
        is_default=bool(is_default),
        created_at=datetime.now(),
    )
    session.add(card)
    session.commit()
    return card


def list_rate_cards(session, org_id: str) -> List[RateCard]:
    return session.query(RateCard).filter(RateCard.org_id == org_id).order_by(RateCard.created_at.asc()).all()


def find_rate_for_duration(duration_mins: int, rate_cards: List[RateCard], fallback_minor: int) -> int:
    """Exact duration match, then the default card, then the first card, then the fallback."""
    if not rate_cards:
        return fallback_minor
    for card in rate_cards:
        if card.duration_mins == duration_mins:
            return card.rate_minor
    for card in rate_cards:
        if card.is_default:
            return card.rate_minor
    return rate_cards[0].rate_minor or fallback_minor


def next_invoice_number(session, org_id: str, today=None) -> str:
    """Allocates INV-<year>-<seq> inside the caller's transaction."""
    session.execute(
        update(Organisation)
        .where(Organisation.id == org_id)
        .values(invoice_seq=Organisation.invoice_seq + 1)
        .execution_options(synchronize_session=False)
    )
    seq = session.query(Organisation.invoice_seq).filter(Organisation.id == org_id).scalar()
    year = (today or datetime.now()).year
    return f"INV-{year}-{int(seq):05d}"
