"""
LINE ITEMS
==========

Typed variants of the raw meeting payload entries.

The submitting app has sent two key styles over time (snake_case from the
current mobile app, camelCase from the old one); both are accepted here so
the services only ever see validated objects.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from vsla.utils import MAX_AMOUNT, money, parse_date, parse_money


SHARE_PURCHASE = 'share_purchase'
LOAN_DISBURSEMENT = 'loan_disbursement'
LOAN_REPAYMENT = 'loan_repayment'
SOCIAL_FUND = 'social_fund'
CONTRIBUTION = 'contribution'


class LineItemError(Exception):
    """Raised when a payload entry cannot become a valid line item"""

    def __init__(self, message, type_='invalid_line_item', field=None):
        super().__init__(message)
        self.type = type_
        self.field = field


# ============================================================
# PARSING HELPERS
# ============================================================

def _first(payload, *keys, default=None):
    for key in keys:
        value = payload.get(key)
        if value is not None and value != '':
            return value
    return default


def _require_mapping(payload):
    if not isinstance(payload, dict):
        raise LineItemError(f"Line item must be a mapping, got {type(payload).__name__}",
                            type_='malformed_line_item')


def _parse_id(value, field_name, label):
    if value is None:
        raise LineItemError(f"Missing {label}", type_=f'missing_{field_name}', field=field_name)
    if isinstance(value, bool):
        raise LineItemError(f"Invalid {label}: {value!r}", type_=f'invalid_{field_name}', field=field_name)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise LineItemError(f"Invalid {label}: {value!r}", type_=f'invalid_{field_name}', field=field_name)
    if parsed <= 0:
        raise LineItemError(f"Invalid {label}: {value!r}", type_=f'invalid_{field_name}', field=field_name)
    return parsed


def _parse_positive_amount(value, field_name='amount'):
    """Zero and negative amounts are rejected for every category."""
    if value is None:
        raise LineItemError(f"Missing {field_name}", type_='missing_amount', field=field_name)
    amount = parse_money(value)
    if amount is None:
        raise LineItemError(f"Amount is not a number: {value!r}", type_='invalid_amount', field=field_name)
    if amount <= 0:
        raise LineItemError(f"Amount must be greater than 0, got {amount}",
                            type_='invalid_amount', field=field_name)
    if amount > MAX_AMOUNT:
        raise LineItemError(f"Amount {amount} exceeds the largest recordable amount {MAX_AMOUNT}",
                            type_='invalid_amount', field=field_name)
    return amount


def _parse_int(value):
    """Whole numbers only; returns None for anything else."""
    try:
        parsed = Decimal(str(value).strip())
    except ArithmeticError:
        return None
    if not parsed.is_finite() or parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def _parse_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


def _local_id(payload):
    value = _first(payload, 'local_id', 'localId', 'id')
    return str(value) if value is not None else None


# ============================================================
# SHARE PURCHASE
# ============================================================

@dataclass
class ShareLineItem:
    index: int
    member_id: int
    number_of_shares: int
    total_amount_paid: Optional[Decimal] = None
    share_price: Optional[Decimal] = None
    member_name: Optional[str] = None
    local_id: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    category = SHARE_PURCHASE

    @classmethod
    def from_payload(cls, payload, index):
        _require_mapping(payload)

        member_id = _parse_id(_first(payload, 'investor_id', 'memberId', 'member_id'), 'member', 'member id')

        raw_shares = _first(payload, 'number_of_shares', 'numberOfShares', default=0)
        shares = _parse_int(raw_shares)
        if shares is None:
            raise LineItemError(f"Invalid number of shares: {raw_shares!r}",
                                type_='invalid_shares', field='number_of_shares')
        if shares <= 0:
            raise LineItemError("Number of shares must be greater than 0",
                                type_='invalid_shares', field='number_of_shares')

        total = _first(payload, 'total_amount_paid', 'totalAmountPaid')
        price = _first(payload, 'share_price_at_purchase', 'sharePriceAtPurchase')

        return cls(
            index=index,
            member_id=member_id,
            number_of_shares=shares,
            total_amount_paid=_parse_positive_amount(total, 'total_amount_paid') if total is not None else None,
            share_price=_parse_positive_amount(price, 'share_price_at_purchase') if price is not None else None,
            member_name=_first(payload, 'investor_name', 'memberName', 'member_name'),
            local_id=_local_id(payload),
        )

    def resolve_amount(self, default_price=None):
        """Explicit total wins; otherwise shares x price (item price, then cycle price)."""
        if self.total_amount_paid is not None:
            return self.total_amount_paid
        price = self.share_price if self.share_price is not None else default_price
        if price is None or money(price) <= 0:
            raise LineItemError("Share purchase has neither a total amount nor a share price",
                                type_='missing_amount', field='total_amount_paid')
        amount = money(price) * self.number_of_shares
        if amount > MAX_AMOUNT:
            raise LineItemError(f"Share total {amount} exceeds the largest recordable amount {MAX_AMOUNT}",
                                type_='invalid_amount', field='number_of_shares')
        return money(amount)

    def resolve_price(self, amount):
        if self.share_price is not None:
            return self.share_price
        return money(amount / self.number_of_shares)


# ============================================================
# LOAN DISBURSEMENT
# ============================================================

@dataclass
class LoanLineItem:
    index: int
    member_id: int
    principal: Decimal
    interest_rate: Decimal = Decimal('0')
    duration_months: int = 1
    purpose: str = ''
    member_name: Optional[str] = None
    local_id: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    category = LOAN_DISBURSEMENT

    @classmethod
    def from_payload(cls, payload, index, max_interest_rate=100, max_duration_months=120):
        _require_mapping(payload)

        member_id = _parse_id(_first(payload, 'borrower_id', 'borrowerId', 'member_id'), 'member', 'borrower id')
        principal = _parse_positive_amount(_first(payload, 'loan_amount', 'loanAmount', 'amount'), 'loan_amount')

        warnings = []

        # Bad terms are corrected with a warning rather than rejecting the loan
        raw_rate = _first(payload, 'interest_rate', 'interestRate', default=0)
        rate = parse_money(raw_rate)
        if rate is None or rate < 0 or rate > Decimal(str(max_interest_rate)):
            warnings.append({
                'type': 'invalid_interest_rate',
                'message': f"Invalid interest rate ({raw_rate}%). Using 0%",
                'suggestion': 'Review loan terms',
            })
            rate = Decimal('0.00')

        raw_duration = _first(payload, 'repayment_period_months', 'duration_months', 'durationMonths', default=1)
        duration = _parse_int(raw_duration)
        if duration is None or duration < 1:
            warnings.append({
                'type': 'invalid_duration',
                'message': f"Invalid duration ({raw_duration} months). Using 1 month",
                'suggestion': 'Review loan terms',
            })
            duration = 1
        elif duration > int(max_duration_months):
            # Over the maximum is rejected, not corrected
            raise LineItemError(
                f"Loan duration of {duration} months exceeds the maximum of {max_duration_months}",
                type_='invalid_duration', field='duration_months',
            )

        return cls(
            index=index,
            member_id=member_id,
            principal=principal,
            interest_rate=rate,
            duration_months=duration,
            purpose=str(_first(payload, 'loan_purpose', 'loanPurpose', 'purpose', default='')),
            member_name=_first(payload, 'borrower_name', 'borrowerName', 'member_name'),
            local_id=_local_id(payload),
            warnings=warnings,
        )


# ============================================================
# LOAN REPAYMENT
# ============================================================

@dataclass
class LoanRepaymentLineItem:
    index: int
    loan_id: int
    amount: Decimal
    payment_method: str = 'cash'
    payment_date: Optional[date] = None
    notes: Optional[str] = None
    local_id: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    category = LOAN_REPAYMENT

    @classmethod
    def from_payload(cls, payload, index):
        _require_mapping(payload)

        loan_id = _parse_id(_first(payload, 'loan_id', 'loanId'), 'loan', 'loan id')
        amount = _parse_positive_amount(_first(payload, 'amount'))

        raw_date = _first(payload, 'payment_date', 'paymentDate')
        payment_date = parse_date(raw_date)
        if raw_date is not None and payment_date is None:
            raise LineItemError(f"Invalid payment date: {raw_date!r}", type_='invalid_date', field='payment_date')

        return cls(
            index=index,
            loan_id=loan_id,
            amount=amount,
            payment_method=str(_first(payload, 'payment_method', 'paymentMethod', default='cash')),
            payment_date=payment_date,
            notes=_first(payload, 'notes'),
            local_id=_local_id(payload),
        )

    @property
    def member_id(self):
        return None


# ============================================================
# SOCIAL FUND CONTRIBUTION
# ============================================================

@dataclass
class SocialFundLineItem:
    index: int
    member_id: int
    amount: Decimal
    notes: Optional[str] = None
    member_name: Optional[str] = None
    local_id: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    category = SOCIAL_FUND

    @classmethod
    def from_payload(cls, payload, index):
        """Returns None when the member did not contribute at this meeting."""
        _require_mapping(payload)

        if not _parse_bool(_first(payload, 'contributed', default=False)):
            return None

        return cls(
            index=index,
            member_id=_parse_id(_first(payload, 'member_id', 'memberId'), 'member', 'member id'),
            amount=_parse_positive_amount(_first(payload, 'amount')),
            notes=_first(payload, 'notes', 'reason'),
            member_name=_first(payload, 'member_name', 'memberName'),
            local_id=_local_id(payload),
        )


# ============================================================
# GENERAL CONTRIBUTION
# ============================================================

@dataclass
class ContributionLineItem:
    """Savings or other account money handed in at the meeting."""
    index: int
    member_id: int
    account_type: str
    amount: Decimal
    description: Optional[str] = None
    member_name: Optional[str] = None
    local_id: Optional[str] = None
    warnings: List[dict] = field(default_factory=list)

    category = CONTRIBUTION

    @classmethod
    def from_payload(cls, payload, index):
        _require_mapping(payload)

        raw_account = _first(payload, 'accountType', 'account_type')
        if raw_account is None or not str(raw_account).strip():
            raise LineItemError("Missing account type", type_='missing_account_type', field='account_type')
        account_type = str(raw_account).strip().lower()
        if len(account_type) > 30:
            raise LineItemError(f"Invalid account type: {raw_account!r}",
                                type_='invalid_account_type', field='account_type')

        return cls(
            index=index,
            member_id=_parse_id(_first(payload, 'memberId', 'member_id'), 'member', 'member id'),
            account_type=account_type,
            amount=_parse_positive_amount(_first(payload, 'amount')),
            description=_first(payload, 'description'),
            member_name=_first(payload, 'memberName', 'member_name'),
            local_id=_local_id(payload),
        )


PARSERS = {
    CONTRIBUTION: ContributionLineItem.from_payload,
    SHARE_PURCHASE: ShareLineItem.from_payload,
    LOAN_DISBURSEMENT: LoanLineItem.from_payload,
    LOAN_REPAYMENT: LoanRepaymentLineItem.from_payload,
    SOCIAL_FUND: SocialFundLineItem.from_payload,
}


def parse_line_item(category, payload, index, **options):
    """Parse one raw entry of the given category; raises LineItemError."""
    try:
        parser = PARSERS[category]
    except KeyError:
        raise ValueError(f"Unknown line item category: {category}")
    return parser(payload, index, **options)
