"""
LOAN SERVICE
============

Handles:
- Interest policy (flat vs per-month)
- Loan disbursement (Loan + LoanTransactions + ledger pair)
- Repayments
- Lazy status evaluation (overdue) and explicit default
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from flask import current_app

from vsla.extensions import db
from vsla.logger_config import logger
from vsla.models import (
    LedgerSource, Loan, LoanStatus, LoanTransaction, LoanTransactionType
)
from vsla.services.authorization_service import (
    AuthorizationError, can_default_loan, require_authorization
)
from vsla.services.ledger_service import PairedLedgerEntry, InvalidAmountError
from vsla.utils import add_months, format_money, money


class LoanError(Exception):
    """Base exception for loan operations"""
    pass


class InvalidStateError(LoanError):
    """Raised when operation is invalid for current loan status"""
    pass


# ============================================================
# INTEREST POLICY
# ============================================================

class InterestPolicy(Enum):
    FLAT = 'flat'          # rate% of principal once, whatever the duration
    MONTHLY = 'monthly'    # rate% of principal per month of duration


def resolve_interest_policy(policy=None):
    """Explicit policy wins; otherwise VSLA_INTEREST_POLICY from app config."""
    if policy is None:
        policy = current_app.config.get('VSLA_INTEREST_POLICY', InterestPolicy.FLAT.value)
    if isinstance(policy, InterestPolicy):
        return policy
    try:
        return InterestPolicy(str(policy).lower())
    except ValueError:
        raise LoanError(f"Unknown interest policy: {policy}")


def compute_interest(principal, interest_rate, duration_months=1, policy=InterestPolicy.FLAT):
    """
    FLAT:
      interest = principal * rate% / 100

    MONTHLY:
      interest = principal * rate% / 100 * duration_months

    Example (flat): principal=100000, rate=10 => 10000.00
    """
    principal = money(principal)
    rate = Decimal(str(interest_rate or 0))
    interest = principal * rate / Decimal('100')
    if resolve_interest_policy(policy) == InterestPolicy.MONTHLY:
        interest *= int(duration_months)
    return money(interest)


def compute_total_due(principal, interest_rate, duration_months=1, policy=InterestPolicy.FLAT):
    return money(money(principal) + compute_interest(principal, interest_rate, duration_months, policy))


def next_loan_number(cycle_id):
    """One past the highest number used in the cycle; reprocessing leaves gaps."""
    prefix = f"LN-{cycle_id}-"
    rows = db.session.query(Loan.loan_number).filter(
        Loan.cycle_id == cycle_id,
        Loan.loan_number.like(f"{prefix}%")
    ).all()
    used = [int(number[len(prefix):]) for (number,) in rows
            if number and number[len(prefix):].isdigit()]
    return f"{prefix}{max(used, default=0) + 1:04d}"


# ============================================================
# LOAN DISBURSEMENT
# ============================================================

def disburse_loan(meeting, item, borrower, line_item_key, policy=None):
    """
    Create a loan from a validated LoanLineItem.

    Writes (no commit, caller owns the transaction):
    1. Loan with balance = total_amount_due
    2. LoanTransactions: principal (-P) and interest (-I, if any)
    3. Ledger pair: -P on group pool and on the borrower (cash out)

    Interest is a receivable on the loan only; the ledger pair carries the
    disbursed cash.

    Returns: Loan
    """
    policy = resolve_interest_policy(policy)

    principal = money(item.principal)
    interest = compute_interest(principal, item.interest_rate, item.duration_months, policy)
    total_due = money(principal + interest)

    # Validate the pair before anything is written
    pair = PairedLedgerEntry(
        group_id=meeting.group_id,
        member_id=borrower.id,
        cycle_id=meeting.cycle_id,
        meeting_id=meeting.id,
        source=LedgerSource.LOAN_DISBURSEMENT,
        amount=-principal,
        transaction_date=meeting.meeting_date,
        line_item_key=line_item_key,
        group_description=f"Group disbursed loan to {borrower.name}" + (f" ({item.purpose})" if item.purpose else ""),
        member_description=(
            f"{borrower.name} received loan of {format_money(principal)} "
            f"@ {item.interest_rate}% for {item.duration_months} months"
        ),
    )

    loan = Loan(
        group_id=meeting.group_id,
        cycle_id=meeting.cycle_id,
        meeting_id=meeting.id,
        borrower_id=borrower.id,
        loan_number=next_loan_number(meeting.cycle_id),
        principal=principal,
        interest_rate=item.interest_rate,
        duration_months=item.duration_months,
        total_amount_due=total_due,
        amount_paid=Decimal('0.00'),
        balance=total_due,
        disbursement_date=meeting.meeting_date,
        due_date=add_months(meeting.meeting_date, item.duration_months),
        purpose=item.purpose,
        status=LoanStatus.ACTIVE.value,
        line_item_key=line_item_key,
    )
    db.session.add(loan)
    db.session.flush()

    db.session.add(LoanTransaction(
        loan_id=loan.id,
        meeting_id=meeting.id,
        type=LoanTransactionType.PRINCIPAL.value,
        amount=-principal,
        balance_before=Decimal('0.00'),
        balance_after=principal,
        transaction_date=meeting.meeting_date,
        description=f"Loan principal disbursed to {borrower.name}",
    ))

    if interest > 0:
        db.session.add(LoanTransaction(
            loan_id=loan.id,
            meeting_id=meeting.id,
            type=LoanTransactionType.INTEREST.value,
            amount=-interest,
            balance_before=principal,
            balance_after=total_due,
            transaction_date=meeting.meeting_date,
            description=f"Interest charge @ {item.interest_rate}% for {item.duration_months} months ({policy.value})",
        ))

    pair.post()

    logger.info(
        "Loan %s created for meeting #%s: borrower=%s principal=%s interest=%s total_due=%s",
        loan.loan_number, meeting.meeting_number, borrower.name, principal, interest, total_due
    )

    return loan


# ============================================================
# REPAYMENT
# ============================================================

def check_repayable(loan):
    """Raise if the loan cannot take a repayment in its current state"""
    if loan.status == LoanStatus.DEFAULTED.value:
        raise InvalidStateError(f"Loan {loan.loan_number} is defaulted")
    if loan.status == LoanStatus.REPAID.value or money(loan.balance) <= 0:
        raise InvalidStateError(f"Loan {loan.loan_number} is already fully repaid")


def apply_repayment(loan, amount, transaction_date, line_item_key, meeting=None,
                    payment_method='cash', notes=None):
    """
    Record a repayment (no commit, caller owns the transaction).

    Writes:
    1. LoanTransaction(+amount)
    2. Loan amount_paid/balance/status
    3. Ledger pair: +amount on group pool and on the borrower

    The amount must already be capped at the balance by the caller.

    Returns: LoanTransaction
    """
    amount = money(amount)
    if amount <= 0:
        raise InvalidAmountError("Repayment amount must be greater than 0")

    check_repayable(loan)

    balance_before = money(loan.balance)
    if amount > balance_before:
        raise InvalidAmountError(
            f"Repayment {format_money(amount)} exceeds loan balance {format_money(balance_before)}"
        )
    balance_after = money(balance_before - amount)

    suffix = f" - {notes}" if notes else ""
    pair = PairedLedgerEntry(
        group_id=loan.group_id,
        member_id=loan.borrower_id,
        cycle_id=meeting.cycle_id if meeting else loan.cycle_id,
        meeting_id=meeting.id if meeting else None,
        source=LedgerSource.LOAN_REPAYMENT,
        amount=amount,
        transaction_date=transaction_date,
        line_item_key=line_item_key,
        group_description=f"{loan.borrower.name} repaid loan {loan.loan_number} via {payment_method}{suffix}",
        member_description=f"Repaid loan {loan.loan_number} via {payment_method}{suffix}",
    )

    transaction = LoanTransaction(
        loan_id=loan.id,
        meeting_id=meeting.id if meeting else None,
        type=LoanTransactionType.REPAYMENT.value,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        payment_method=payment_method,
        transaction_date=transaction_date,
        description=notes or f"Repayment of {format_money(amount)} via {payment_method}",
        line_item_key=line_item_key,
    )
    db.session.add(transaction)

    loan.amount_paid = money(money(loan.amount_paid) + amount)
    loan.balance = balance_after
    refresh_loan_status(loan, as_of=transaction_date)

    pair.post()

    return transaction


# ============================================================
# BALANCE & STATUS
# ============================================================

def calculate_loan_balance(loan_id):
    """Outstanding balance from the loan's own transactions (-SUM)"""
    total = db.session.query(db.func.sum(LoanTransaction.amount)) \
        .filter(LoanTransaction.loan_id == loan_id).scalar()
    return money(-(total or 0))


def sync_loan_balance(loan, as_of=None):
    """Rebuild amount_paid/balance from LoanTransactions (after reprocessing)"""
    db.session.flush()
    repaid = db.session.query(db.func.sum(LoanTransaction.amount)).filter(
        LoanTransaction.loan_id == loan.id,
        LoanTransaction.type == LoanTransactionType.REPAYMENT.value
    ).scalar()

    loan.amount_paid = money(repaid or 0)
    loan.balance = calculate_loan_balance(loan.id)

    if loan.status == LoanStatus.REPAID.value and money(loan.balance) > 0:
        loan.status = LoanStatus.ACTIVE.value
    refresh_loan_status(loan, as_of=as_of)
    return loan


def refresh_loan_status(loan, as_of=None):
    """
    Apply the lifecycle:
    - active/overdue -> repaid when balance reaches zero
    - active -> overdue when past due_date with balance left
    - defaulted is terminal
    """
    as_of = as_of or date.today()
    new_status = loan.current_status(as_of)
    if new_status != loan.status:
        logger.debug("Loan %s status %s -> %s", loan.loan_number, loan.status, new_status)
        loan.status = new_status
    return loan.status


def refresh_overdue_loans(group_id=None, as_of=None):
    """Re-evaluate every open loan; returns the number whose status changed."""
    as_of = as_of or date.today()
    query = Loan.query.filter(Loan.status.in_([LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value]))
    if group_id is not None:
        query = query.filter(Loan.group_id == group_id)

    changed = 0
    try:
        for loan in query.all():
            before = loan.status
            if refresh_loan_status(loan, as_of) != before:
                changed += 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return changed


def mark_loan_defaulted(loan_id, officer_id, reason=None):
    """Explicit administrative action; defaulted loans stay defaulted."""
    try:
        loan = db.session.get(Loan, loan_id)
        if not loan:
            raise LoanError(f"Loan {loan_id} not found")

        require_authorization(can_default_loan, officer_id, loan_id)

        if loan.status == LoanStatus.REPAID.value:
            raise InvalidStateError(f"Loan {loan.loan_number} is already repaid")
        if loan.status == LoanStatus.DEFAULTED.value:
            raise InvalidStateError(f"Loan {loan.loan_number} is already defaulted")

        loan.status = LoanStatus.DEFAULTED.value
        db.session.commit()

        logger.warning("Loan %s marked defaulted by member %s: %s", loan.loan_number, officer_id, reason or '-')
        return loan

    except (LoanError, AuthorizationError):
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise LoanError(f"Failed to default loan: {str(e)}")


# ============================================================
# GET LOAN DETAILS
# ============================================================

def get_loan_history(loan_id):
    return LoanTransaction.query.filter_by(loan_id=loan_id) \
        .order_by(LoanTransaction.transaction_date, LoanTransaction.id).all()


def get_loan_details(loan_id, as_of=None):
    """Loan terms, balance and transaction history"""
    loan = db.session.get(Loan, loan_id)
    if not loan:
        return None

    as_of = as_of or date.today()

    return {
        'loan': loan,
        'status': loan.current_status(as_of),
        'financial': {
            'principal': money(loan.principal),
            'interest_rate': loan.interest_rate,
            'duration_months': loan.duration_months,
            'total_amount_due': money(loan.total_amount_due),
            'amount_paid': money(loan.amount_paid),
            'balance': money(loan.balance),
            'ledger_balance': calculate_loan_balance(loan.id),
        },
        'due_date': loan.due_date,
        'days_overdue': loan.days_overdue(as_of),
        'transactions': [
            {
                'id': t.id,
                'type': t.type,
                'amount': money(t.amount),
                'balance_after': t.balance_after,
                'payment_method': t.payment_method,
                'transaction_date': t.transaction_date,
                'description': t.description,
            }
            for t in get_loan_history(loan.id)
        ],
    }
