"""
SOCIAL FUND SERVICE
===================

Welfare fund kept apart from savings:
- Contributions (meetings or manual entry) add to the fund
- Withdrawals are checked against the current group/cycle balance
  BEFORE anything is written

Every movement writes a SocialFundTransaction and a ledger pair.
"""

from decimal import Decimal

from vsla.extensions import db
from vsla.logger_config import logger
from vsla.models import (
    Cycle, Group, LedgerSource, Member, SocialFundTransaction, SocialFundType
)
from vsla.services.authorization_service import (
    AuthorizationError, can_record_withdrawal, require_authorization
)
from vsla.services.ledger_service import (
    InsufficientBalanceError, LedgerError, PairedLedgerEntry, entry_exists,
    generate_idempotency_key, DuplicateTransactionError
)
from vsla.utils import MAX_AMOUNT, format_money, money, parse_money


class SocialFundError(Exception):
    """Base exception for social fund operations"""
    pass


# ============================================================
# BALANCES
# ============================================================

def get_social_fund_balance(group_id, cycle_id=None):
    """Sum of all social fund movements for the group (and cycle)"""
    query = db.session.query(db.func.sum(SocialFundTransaction.amount)) \
        .filter(SocialFundTransaction.group_id == group_id)
    if cycle_id is not None:
        query = query.filter(SocialFundTransaction.cycle_id == cycle_id)
    return money(query.scalar() or 0)


def get_social_fund_summary(group_id, cycle_id=None):
    query = SocialFundTransaction.query.filter_by(group_id=group_id)
    if cycle_id is not None:
        query = query.filter_by(cycle_id=cycle_id)

    contributions = Decimal('0.00')
    withdrawals = Decimal('0.00')
    count = 0
    for txn in query.all():
        count += 1
        if txn.transaction_type == SocialFundType.CONTRIBUTION.value:
            contributions += money(txn.amount)
        else:
            withdrawals += abs(money(txn.amount))

    return {
        'balance': get_social_fund_balance(group_id, cycle_id),
        'total_contributions': money(contributions),
        'total_withdrawals': money(withdrawals),
        'transaction_count': count,
    }


# ============================================================
# WRITES (caller owns the transaction)
# ============================================================

def add_contribution(group_id, cycle_id, member, amount, transaction_date, line_item_key,
                     meeting=None, reason=None, description=None, created_by_id=None):
    """
    Writes SocialFundTransaction(+amount) and ledger pair (+amount). No commit.

    Returns: SocialFundTransaction
    """
    amount = money(amount)

    where = f" at Meeting #{meeting.meeting_number}" if meeting is not None else ""
    description = description or f"Social fund contribution from {member.name}{where}"

    pair = PairedLedgerEntry(
        group_id=group_id,
        member_id=member.id,
        cycle_id=cycle_id,
        meeting_id=meeting.id if meeting is not None else None,
        source=LedgerSource.SOCIAL_FUND_CONTRIBUTION,
        amount=amount,
        transaction_date=transaction_date,
        line_item_key=line_item_key,
        group_description=f"Group received social fund contribution from {member.name}",
        member_description=description,
    )

    txn = SocialFundTransaction(
        group_id=group_id,
        cycle_id=cycle_id,
        member_id=member.id,
        meeting_id=meeting.id if meeting is not None else None,
        transaction_type=SocialFundType.CONTRIBUTION.value,
        amount=amount,
        transaction_date=transaction_date,
        description=description,
        reason=reason,
        created_by_id=created_by_id,
        line_item_key=line_item_key,
    )
    db.session.add(txn)
    pair.post()

    return txn


def add_withdrawal(group_id, cycle_id, member, amount, transaction_date, line_item_key,
                   reason=None, description=None, created_by_id=None, meeting=None):
    """
    Writes SocialFundTransaction(-amount) and ledger pair (-amount). No commit.

    Rejected with InsufficientBalanceError before any row is written when
    the amount exceeds the fund balance.
    """
    amount = money(amount)

    current_balance = get_social_fund_balance(group_id, cycle_id)
    if amount > current_balance:
        raise InsufficientBalanceError(
            f"Insufficient social fund balance. Requested: {format_money(amount)}, "
            f"Available: {format_money(current_balance)}"
        )

    description = description or f"Social fund withdrawal for {member.name}"

    pair = PairedLedgerEntry(
        group_id=group_id,
        member_id=member.id,
        cycle_id=cycle_id,
        meeting_id=meeting.id if meeting is not None else None,
        source=LedgerSource.SOCIAL_FUND_WITHDRAWAL,
        amount=-amount,
        transaction_date=transaction_date,
        line_item_key=line_item_key,
        group_description=f"Group paid social fund withdrawal to {member.name}",
        member_description=description,
    )

    txn = SocialFundTransaction(
        group_id=group_id,
        cycle_id=cycle_id,
        member_id=member.id,
        meeting_id=meeting.id if meeting is not None else None,
        transaction_type=SocialFundType.WITHDRAWAL.value,
        amount=-amount,
        transaction_date=transaction_date,
        description=description,
        reason=reason,
        created_by_id=created_by_id,
        line_item_key=line_item_key,
    )
    db.session.add(txn)
    pair.post()

    return txn


# ============================================================
# MANUAL ENTRIES (ATOMIC)
# ============================================================

def _load_scope(group_id, cycle_id, member_id):
    group = db.session.get(Group, group_id)
    if not group:
        raise SocialFundError(f"Group {group_id} not found")

    if cycle_id is not None:
        cycle = db.session.get(Cycle, cycle_id)
        if not cycle or cycle.group_id != group_id:
            raise SocialFundError(f"Cycle {cycle_id} not found in group {group_id}")

    member = db.session.get(Member, member_id)
    if not member or member.group_id != group_id:
        raise SocialFundError(f"Member {member_id} is not in group {group_id}")

    return group, member


def _check_key(idempotency_key, prefix):
    if not idempotency_key:
        return generate_idempotency_key(prefix)
    if entry_exists(idempotency_key):
        raise DuplicateTransactionError("Transaction already exists")
    return idempotency_key


def record_contribution(group_id, cycle_id, member_id, amount, transaction_date,
                        reason=None, description=None, created_by_id=None, idempotency_key=None):
    """
    Manual contribution outside a meeting.

    ATOMIC: All or nothing.
    Returns: SocialFundTransaction
    """
    try:
        parsed = parse_money(amount)
        if parsed is None:
            raise SocialFundError("Contribution amount is not a number")
        if parsed <= 0:
            raise SocialFundError("Contribution amount must be greater than 0")
        if parsed > MAX_AMOUNT:
            raise SocialFundError(f"Contribution amount exceeds {format_money(MAX_AMOUNT)}")
        amount = parsed

        _, member = _load_scope(group_id, cycle_id, member_id)
        key = _check_key(idempotency_key, "social_fund_contrib")

        txn = add_contribution(
            group_id, cycle_id, member, amount, transaction_date, key,
            reason=reason, description=description, created_by_id=created_by_id
        )
        db.session.commit()

        logger.info("Social fund contribution %s from member %s (group %s)", money(amount), member_id, group_id)
        return txn

    except (SocialFundError, LedgerError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise SocialFundError(f"Contribution failed: {str(e)}")


def record_withdrawal(group_id, cycle_id, member_id, amount, transaction_date, created_by_id,
                      reason=None, description=None, idempotency_key=None):
    """
    Officer-recorded withdrawal for a member emergency.

    ATOMIC OPERATION:
    1. Authorization (officer of the group)
    2. Balance check (zero rows written on failure)
    3. SocialFundTransaction + ledger pair

    Returns: SocialFundTransaction
    """
    try:
        parsed = parse_money(amount)
        if parsed is None:
            raise SocialFundError("Withdrawal amount is not a number")
        if parsed <= 0:
            raise SocialFundError("Withdrawal amount must be greater than 0")
        if parsed > MAX_AMOUNT:
            raise SocialFundError(f"Withdrawal amount exceeds {format_money(MAX_AMOUNT)}")
        amount = parsed

        _, member = _load_scope(group_id, cycle_id, member_id)
        require_authorization(can_record_withdrawal, created_by_id, group_id)
        key = _check_key(idempotency_key, "social_fund_withdraw")

        txn = add_withdrawal(
            group_id, cycle_id, member, amount, transaction_date, key,
            reason=reason, description=description, created_by_id=created_by_id
        )
        db.session.commit()

        logger.info("Social fund withdrawal %s for member %s (group %s)", money(amount), member_id, group_id)
        return txn

    except (SocialFundError, LedgerError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise SocialFundError(f"Withdrawal failed: {str(e)}")
