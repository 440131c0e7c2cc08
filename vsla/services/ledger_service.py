"""
LEDGER SERVICE - DOUBLE-ENTRY POSTING & BALANCES
================================================

CRITICAL BUSINESS RULES:
1. Balances ONLY come from LedgerEntry rows (never cached totals)
2. Every business event posts exactly TWO rows via PairedLedgerEntry
3. Both rows carry the SAME signed amount (group pool + member position)
4. Rows are append-only; reprocessing deletes and recreates them
5. One pair per line item (unique line_item_key)
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from vsla.extensions import db
from vsla.models import (
    LedgerEntry, LedgerSource, Loan, LoanStatus, OwnerType
)
from vsla.utils import money


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class InvalidAmountError(LedgerError):
    """Raised when amount is invalid"""
    pass


class InsufficientBalanceError(LedgerError):
    """Raised when a pool has insufficient balance"""
    pass


class DuplicateTransactionError(LedgerError):
    """Raised when a line item key was already posted"""
    pass


class UnbalancedEntryError(LedgerError):
    """Raised when the two sides of a pair would not match"""
    pass


# Sign each source must carry on BOTH sides of the pair
SOURCE_SIGNS = {
    LedgerSource.SHARE_PURCHASE.value: 1,
    LedgerSource.LOAN_DISBURSEMENT.value: -1,
    LedgerSource.LOAN_REPAYMENT.value: 1,
    LedgerSource.SOCIAL_FUND_CONTRIBUTION.value: 1,
    LedgerSource.SOCIAL_FUND_WITHDRAWAL.value: -1,
    LedgerSource.MEETING_CONTRIBUTION.value: 1,
}


# ============================================================
# IDEMPOTENCY HELPERS
# ============================================================

def generate_idempotency_key(prefix="txn"):
    """Generate unique idempotency key"""
    return f"{prefix}_{uuid.uuid4().hex}"


def line_item_key(meeting_id, category, item):
    """Stable key for a meeting line item: client local id if sent, else its position."""
    ref = item.local_id if getattr(item, 'local_id', None) else f"#{item.index}"
    return f"meeting:{meeting_id}:{category}:{ref}"


def entry_exists(key):
    """Check if a pair with this line item key was already posted"""
    return LedgerEntry.query.filter_by(line_item_key=key).first() is not None


# ============================================================
# PAIRED LEDGER ENTRY
# ============================================================

@dataclass(frozen=True)
class PairedLedgerEntry:
    """
    The two halves of one business event, written together.

    Building one validates the amount and sign; post() writes both rows
    and links them through contra_entry_id. There is no way to write a
    single side.
    """
    group_id: int
    member_id: int
    source: str
    amount: Decimal
    transaction_date: date
    line_item_key: str
    cycle_id: Optional[int] = None
    meeting_id: Optional[int] = None
    group_description: Optional[str] = None
    member_description: Optional[str] = None
    account_type: Optional[str] = None

    def __post_init__(self):
        source = self.source.value if isinstance(self.source, LedgerSource) else self.source
        if source not in SOURCE_SIGNS:
            raise LedgerError(f"Unknown ledger source: {source}")
        object.__setattr__(self, 'source', source)

        if self.member_id is None:
            raise UnbalancedEntryError("A ledger pair needs a member side")

        if self.amount is None:
            raise InvalidAmountError("Ledger amount is required")
        amount = money(self.amount)
        if amount == 0:
            raise InvalidAmountError("Ledger amount must not be zero")
        if (amount > 0) != (SOURCE_SIGNS[source] > 0):
            raise InvalidAmountError(
                f"{source} entries must be {'positive' if SOURCE_SIGNS[source] > 0 else 'negative'}, got {amount}"
            )
        object.__setattr__(self, 'amount', amount)

    def post(self):
        """
        Write both rows into the current session (no commit).

        Returns: (group_entry, member_entry)
        """
        if entry_exists(self.line_item_key):
            raise DuplicateTransactionError(f"Line item {self.line_item_key} already posted")

        group_entry = LedgerEntry(
            group_id=self.group_id,
            member_id=None,
            owner_type=OwnerType.GROUP.value,
            cycle_id=self.cycle_id,
            meeting_id=self.meeting_id,
            source=self.source,
            amount=self.amount,
            transaction_date=self.transaction_date,
            description=self.group_description,
            account_type=self.account_type,
            line_item_key=self.line_item_key,
        )
        member_entry = LedgerEntry(
            group_id=self.group_id,
            member_id=self.member_id,
            owner_type=OwnerType.MEMBER.value,
            cycle_id=self.cycle_id,
            meeting_id=self.meeting_id,
            source=self.source,
            amount=self.amount,
            transaction_date=self.transaction_date,
            description=self.member_description,
            account_type=self.account_type,
            line_item_key=self.line_item_key,
        )
        db.session.add_all([group_entry, member_entry])
        db.session.flush()

        group_entry.contra_entry_id = member_entry.id
        member_entry.contra_entry_id = group_entry.id

        return group_entry, member_entry


# ============================================================
# BALANCE CALCULATOR
# ============================================================

def _filtered(query, group_id, cycle_id=None, member_id=None, source=None, meeting_id=None,
              account_type=None):
    query = query.filter(LedgerEntry.group_id == group_id)

    if member_id is None:
        query = query.filter(LedgerEntry.member_id.is_(None))
    else:
        query = query.filter(LedgerEntry.member_id == member_id)

    if cycle_id is not None:
        query = query.filter(LedgerEntry.cycle_id == cycle_id)

    if source is not None:
        if isinstance(source, LedgerSource):
            source = source.value
        query = query.filter(LedgerEntry.source == source)

    if meeting_id is not None:
        query = query.filter(LedgerEntry.meeting_id == meeting_id)

    if account_type is not None:
        query = query.filter(LedgerEntry.account_type == account_type)

    return query


def get_balance(group_id, cycle_id=None, member_id=None, source=None, account_type=None):
    """
    Sum ledger rows for the group pool (member_id=None) or one member.

    Pure aggregation: no side effects, independent of call order.
    """
    query = _filtered(
        db.session.query(db.func.sum(LedgerEntry.amount)),
        group_id, cycle_id=cycle_id, member_id=member_id, source=source,
        account_type=account_type
    )
    return money(query.scalar() or 0)


def get_member_balances(group_id, cycle_id=None):
    """Balance of every member with ledger activity: {member_id: Decimal}"""
    query = db.session.query(
        LedgerEntry.member_id, db.func.sum(LedgerEntry.amount)
    ).filter(
        LedgerEntry.group_id == group_id,
        LedgerEntry.member_id.isnot(None)
    )
    if cycle_id is not None:
        query = query.filter(LedgerEntry.cycle_id == cycle_id)

    rows = query.group_by(LedgerEntry.member_id).all()
    return {member_id: money(total or 0) for member_id, total in rows}


def get_meeting_entries(meeting_id):
    return LedgerEntry.query.filter_by(meeting_id=meeting_id) \
        .order_by(LedgerEntry.id).all()


# ============================================================
# DOUBLE-ENTRY AUDIT
# ============================================================

def verify_double_entry(group_id, cycle_id=None, meeting_id=None):
    """
    Recheck the pairing invariant from the rows themselves.

    Every group row must point at a member row with the same line item key
    and the same signed amount (and back). Group and member totals must
    match overall and per source.
    """
    query = LedgerEntry.query.filter(LedgerEntry.group_id == group_id)
    if cycle_id is not None:
        query = query.filter(LedgerEntry.cycle_id == cycle_id)
    if meeting_id is not None:
        query = query.filter(LedgerEntry.meeting_id == meeting_id)

    entries = query.order_by(LedgerEntry.id).all()
    by_id = {e.id: e for e in entries}

    per_source = defaultdict(lambda: {'group_total': Decimal('0.00'), 'member_total': Decimal('0.00'), 'pairs': 0})
    unpaired = []
    mismatched = []

    for entry in entries:
        bucket = per_source[entry.source]
        if entry.member_id is None:
            bucket['group_total'] += money(entry.amount)
            bucket['pairs'] += 1
        else:
            bucket['member_total'] += money(entry.amount)

        contra = by_id.get(entry.contra_entry_id)
        if contra is None or contra.contra_entry_id != entry.id \
                or (contra.member_id is None) == (entry.member_id is None):
            unpaired.append(entry.id)
        elif money(contra.amount) != money(entry.amount) or contra.line_item_key != entry.line_item_key:
            mismatched.append(entry.id)

    group_total = sum((b['group_total'] for b in per_source.values()), Decimal('0.00'))
    member_total = sum((b['member_total'] for b in per_source.values()), Decimal('0.00'))

    return {
        'group_id': group_id,
        'cycle_id': cycle_id,
        'meeting_id': meeting_id,
        'entry_count': len(entries),
        'group_total': money(group_total),
        'member_total': money(member_total),
        'by_source': {
            source: {
                'group_total': money(b['group_total']),
                'member_total': money(b['member_total']),
                'pairs': b['pairs'],
            }
            for source, b in sorted(per_source.items())
        },
        'unpaired_entry_ids': unpaired,
        'mismatched_entry_ids': mismatched,
        'balanced': not unpaired and not mismatched and group_total == member_total,
    }


# ============================================================
# LEDGER SUMMARY
# ============================================================

def get_ledger_summary(group_id, cycle_id=None):
    """Totals per source for a group (and cycle), for reporting"""
    from vsla.services.social_fund_service import get_social_fund_balance

    totals = {}
    counts = {}
    for source in LedgerSource:
        totals[source.value] = get_balance(group_id, cycle_id=cycle_id, source=source)
        counts[source.value] = _filtered(
            LedgerEntry.query, group_id, cycle_id=cycle_id, source=source
        ).count()

    loans = Loan.query.filter(
        Loan.group_id == group_id,
        Loan.status != LoanStatus.REPAID.value
    )
    if cycle_id is not None:
        loans = loans.filter(Loan.cycle_id == cycle_id)
    outstanding = sum((money(loan.balance) for loan in loans.all()), Decimal('0.00'))

    return {
        'group_id': group_id,
        'cycle_id': cycle_id,
        'balance': get_balance(group_id, cycle_id=cycle_id),
        'totals': totals,
        'transaction_counts': counts,
        'social_fund_balance': get_social_fund_balance(group_id, cycle_id),
        'outstanding_loans': money(outstanding),
        'member_balances': get_member_balances(group_id, cycle_id),
    }


# ============================================================
# REPROCESSING CLEANUP
# ============================================================

def delete_meeting_entries(meeting_id):
    """Remove every ledger pair of a meeting. Only reprocessing may call this."""
    return LedgerEntry.query.filter_by(meeting_id=meeting_id).delete(synchronize_session='fetch')
