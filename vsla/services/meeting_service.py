"""
MEETING PROCESSING SERVICE
==========================

Turns a submitted meeting into domain records and balanced ledger pairs.

CRITICAL BUSINESS RULES:
1. Each category is processed independently, in a fixed order
2. A bad line item is recorded as an error and SKIPPED; the rest continue
3. Every line item is fully validated before any of its rows are written
4. One valid line item = at most one domain row + exactly one ledger pair
5. Line item keys make processing idempotent; reprocessing is explicit
   (delete everything keyed to the meeting, then process again)
6. Only infrastructure or unexpected failures abort the whole meeting
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from vsla.extensions import db
from vsla.line_items import (
    CONTRIBUTION, LOAN_DISBURSEMENT, LOAN_REPAYMENT, SHARE_PURCHASE, SOCIAL_FUND,
    LineItemError, parse_line_item
)
from vsla.logger_config import logger
from vsla.models import (
    Cycle, LedgerSource, Loan, LoanTransaction, LoanTransactionType, Meeting,
    MeetingStatus, Member, Share, SocialFundTransaction
)
from vsla.services.ledger_service import (
    DuplicateTransactionError, LedgerError, PairedLedgerEntry,
    delete_meeting_entries, entry_exists, line_item_key
)
from vsla.services.loan_service import (
    LoanError, apply_repayment, disburse_loan, resolve_interest_policy,
    sync_loan_balance
)
from vsla.services.social_fund_service import add_contribution
from vsla.utils import format_money, money


class MeetingProcessingError(Exception):
    """Raised when a meeting cannot be processed at all (infrastructure failure)"""
    pass


# Processing order
CATEGORIES = (
    (CONTRIBUTION, 'transactions_data'),
    (SHARE_PURCHASE, 'share_purchases_data'),
    (LOAN_REPAYMENT, 'loan_repayments_data'),
    (SOCIAL_FUND, 'social_fund_contributions_data'),
    (LOAN_DISBURSEMENT, 'loans_data'),
)

# Declared meeting totals checked against what was actually processed
DECLARED_TOTALS = {
    SHARE_PURCHASE: 'total_share_value',
    LOAN_REPAYMENT: 'total_loans_repaid',
    SOCIAL_FUND: 'total_social_fund_collected',
    LOAN_DISBURSEMENT: 'total_loans_disbursed',
}

# Declared savings are checked against contributions to this account only
SAVINGS_ACCOUNT = 'savings'


# ============================================================
# RESULT
# ============================================================

@dataclass
class ProcessingResult:
    meeting_id: int
    errors: List[dict] = field(default_factory=list)
    warnings: List[dict] = field(default_factory=list)
    counts: Dict[str, dict] = field(default_factory=dict)
    totals: Dict[str, Decimal] = field(default_factory=dict)
    account_totals: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def success(self):
        return not self.errors

    def add_error(self, type_, message, category=None, index=None, field_name=None):
        self.errors.append(_issue(type_, message, category, index, field=field_name))

    def add_warning(self, type_, message, category=None, index=None, suggestion=None):
        self.warnings.append(_issue(type_, message, category, index, suggestion=suggestion))

    def count(self, category, outcome):
        bucket = self.counts.setdefault(category, {'processed': 0, 'skipped': 0, 'failed': 0})
        bucket[outcome] += 1

    def add_total(self, category, amount):
        self.totals[category] = money(self.totals.get(category, Decimal('0.00')) + money(amount))

    def add_account_total(self, account_type, amount):
        self.account_totals[account_type] = money(
            self.account_totals.get(account_type, Decimal('0.00')) + money(amount))

    def to_dict(self):
        return {
            'meeting_id': self.meeting_id,
            'success': self.success,
            'errors': self.errors,
            'warnings': self.warnings,
            'counts': self.counts,
            'totals': {k: str(v) for k, v in self.totals.items()},
            'account_totals': {k: str(v) for k, v in self.account_totals.items()},
        }


def _issue(type_, message, category=None, index=None, **extra):
    issue = {'type': type_, 'message': message}
    if category is not None:
        issue['category'] = category
    if index is not None:
        issue['index'] = index
    issue.update({k: v for k, v in extra.items() if v is not None})
    return issue


# ============================================================
# PROCESS MEETING
# ============================================================

def process_meeting(meeting_or_id, policy=None):
    """
    Process every line item of a meeting.

    Returns: ProcessingResult (never raises for per-line-item problems)
    Raises: MeetingProcessingError when the database or an unexpected error
    stops the run; nothing of the meeting's line items is kept in that case
    and the meeting is left failed.
    """
    meeting = _load_meeting(meeting_or_id)
    meeting_id = meeting.id
    result = ProcessingResult(meeting_id=meeting_id)

    # A completed or in-flight meeting keeps its recorded outcome
    if not _check_status(meeting, result):
        logger.warning("Meeting %s not processed: %s", meeting.id, result.errors[0]['message'])
        return result

    if not _validate_meeting(meeting, result):
        meeting.mark_as_failed(result.errors, result.warnings)
        db.session.commit()
        logger.warning("Meeting %s rejected: %s", meeting.id, [e['type'] for e in result.errors])
        return result

    logger.info("Processing meeting %s (#%s, group %s, cycle %s)",
                meeting.id, meeting.meeting_number, meeting.group_id, meeting.cycle_id)

    try:
        meeting.mark_as_processing()
        policy = resolve_interest_policy(policy)

        for category, attribute in CATEGORIES:
            raw_items = getattr(meeting, attribute) or []
            if not isinstance(raw_items, list):
                result.add_error('malformed_category',
                                 f"{attribute} must be a list, got {type(raw_items).__name__}",
                                 category=category)
                continue

            for index, raw in enumerate(raw_items):
                _process_line_item(meeting, category, raw, index, result, policy)

        _check_declared_totals(meeting, result)

        if result.errors:
            meeting.mark_as_failed(result.errors, result.warnings)
        else:
            meeting.mark_as_completed(result.warnings)

        db.session.commit()

    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("Meeting %s processing failed", meeting_id)
        _record_failure(meeting_id, f"Processing failed: {str(e)}")
        raise MeetingProcessingError(f"Meeting {meeting_id} processing failed: {str(e)}") from e
    except Exception as e:
        db.session.rollback()
        logger.exception("Unexpected error processing meeting %s", meeting_id)
        _record_failure(meeting_id, f"Unexpected error: {str(e)}")
        raise MeetingProcessingError(f"Meeting {meeting_id} processing failed: {str(e)}") from e

    logger.info("Meeting %s processed: status=%s errors=%d warnings=%d",
                meeting.id, meeting.processing_status, len(result.errors), len(result.warnings))
    return result


def _load_meeting(meeting_or_id):
    if isinstance(meeting_or_id, Meeting):
        return meeting_or_id
    meeting = db.session.get(Meeting, meeting_or_id)
    if not meeting:
        raise MeetingProcessingError(f"Meeting {meeting_or_id} not found")
    return meeting


def _record_failure(meeting_id, message):
    """Mark the meeting failed in a fresh transaction after a rollback."""
    try:
        meeting = db.session.get(Meeting, meeting_id)
        if meeting is not None:
            meeting.mark_as_failed([_issue('exception', message)])
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record failure on meeting %s", meeting_id)


# ============================================================
# MEETING VALIDATION
# ============================================================

def _check_status(meeting, result):
    if meeting.processing_status == MeetingStatus.COMPLETED.value:
        result.add_error('already_processed',
                         f"Meeting {meeting.id} is already processed; reprocess it instead",
                         field_name='processing_status')
        return False

    if not meeting.can_be_processed():
        result.add_error('invalid_status',
                         f"Meeting {meeting.id} cannot be processed while {meeting.processing_status}",
                         field_name='processing_status')
        return False

    return True


def _validate_meeting(meeting, result):
    if meeting.local_id:
        duplicate = Meeting.query.filter(
            Meeting.local_id == meeting.local_id,
            Meeting.id != meeting.id,
            Meeting.processing_status == MeetingStatus.COMPLETED.value
        ).first()
        if duplicate:
            result.add_error('duplicate',
                             f"Meeting already processed (ID: {duplicate.id})",
                             field_name='local_id')

    cycle = db.session.get(Cycle, meeting.cycle_id)
    if not cycle:
        result.add_error('missing_cycle', 'VSLA cycle not found', field_name='cycle_id')
    elif cycle.group_id != meeting.group_id:
        result.add_error('cycle_group_mismatch',
                         f"Cycle {cycle.id} does not belong to group {meeting.group_id}",
                         field_name='cycle_id')
    elif not cycle.is_active:
        result.add_warning('inactive_cycle', f"Cycle {cycle.name} is not active",
                           suggestion='Verify the meeting belongs to this cycle')

    return not result.errors


def _check_declared_totals(meeting, result):
    for category, attribute in DECLARED_TOTALS.items():
        declared = getattr(meeting, attribute)
        if declared is None:
            continue
        processed = result.totals.get(category, Decimal('0.00'))
        if money(declared) != processed:
            result.add_warning(
                'total_mismatch',
                f"{attribute} mismatch: declared {format_money(declared)}, processed {format_money(processed)}",
                category=category,
                suggestion='Verify the meeting totals on the device',
            )

    declared = meeting.total_savings_collected
    if declared is not None:
        processed = result.account_totals.get(SAVINGS_ACCOUNT, Decimal('0.00'))
        if money(declared) != processed:
            result.add_warning(
                'total_mismatch',
                f"total_savings_collected mismatch: declared {format_money(declared)}, "
                f"processed {format_money(processed)}",
                category=CONTRIBUTION,
                suggestion='Verify the meeting totals on the device',
            )


# ============================================================
# LINE ITEMS
# ============================================================

def _process_line_item(meeting, category, raw, index, result, policy):
    try:
        options = {}
        if category == LOAN_DISBURSEMENT:
            options['max_interest_rate'] = current_app.config.get('VSLA_MAX_INTEREST_RATE', 100)
            options['max_duration_months'] = current_app.config.get('VSLA_MAX_LOAN_DURATION', 120)
        item = parse_line_item(category, raw, index, **options)

        if item is None:
            result.count(category, 'skipped')
            return

        for warning in item.warnings:
            result.add_warning(warning['type'], warning['message'], category=category, index=index,
                               suggestion=warning.get('suggestion'))

        key = line_item_key(meeting.id, category, item)
        if entry_exists(key):
            raise DuplicateTransactionError(f"Line item {key} already processed")

        handler = HANDLERS[category]
        amount = handler(meeting, item, key, result, policy)

        result.count(category, 'processed')
        result.add_total(category, amount)

    except DuplicateTransactionError as e:
        result.count(category, 'skipped')
        result.add_warning('duplicate_line_item', str(e), category=category, index=index,
                           suggestion='Use reprocess to rebuild this meeting')
    except LineItemError as e:
        result.count(category, 'failed')
        result.add_error(e.type, str(e), category=category, index=index, field_name=e.field)
    except (LedgerError, LoanError) as e:
        result.count(category, 'failed')
        result.add_error(_error_type(e), str(e), category=category, index=index)


def _error_type(exc):
    """InsufficientBalanceError -> insufficient_balance"""
    name = exc.__class__.__name__
    if name.endswith('Error') and name != 'Error':
        name = name[:-len('Error')]
    return ''.join('_' + c.lower() if c.isupper() else c for c in name).lstrip('_')


def _resolve_member(meeting, member_id, member_name, result, category, index):
    """Unknown or foreign members are errors; stale names are only warnings."""
    member = db.session.get(Member, member_id)
    if not member:
        label = member_name or f"ID: {member_id}"
        raise LineItemError(f"Member not found: {label}", type_='member_not_found', field='member_id')

    if member.group_id != meeting.group_id:
        raise LineItemError(f"Member {member.id} does not belong to group {meeting.group_id}",
                            type_='member_not_in_group', field='member_id')

    if not member.is_active:
        result.add_warning('inactive_member', f"Member {member.name} is not active",
                           category=category, index=index, suggestion='Verify membership')

    if not member.name:
        result.add_warning('member_name_missing', f"Member {member.id} has no name on record",
                           category=category, index=index, suggestion='Update the member record')
    elif member_name and str(member_name).strip().lower() != member.name.strip().lower():
        result.add_warning('member_name_mismatch',
                           f"Submitted name '{member_name}' differs from '{member.name}' (ID {member.id})",
                           category=category, index=index, suggestion='Using the member ID on record')

    return member


# ============================================================
# CATEGORY HANDLERS (validate, then write; return amount processed)
# ============================================================

def _handle_share_purchase(meeting, item, key, result, policy):
    member = _resolve_member(meeting, item.member_id, item.member_name, result, SHARE_PURCHASE, item.index)

    default_price = meeting.cycle.share_price if meeting.cycle else None
    if default_price is None:
        default_price = current_app.config.get('VSLA_DEFAULT_SHARE_PRICE')
    amount = item.resolve_amount(default_price)
    price = item.resolve_price(amount)

    pair = PairedLedgerEntry(
        group_id=meeting.group_id,
        member_id=member.id,
        cycle_id=meeting.cycle_id,
        meeting_id=meeting.id,
        source=LedgerSource.SHARE_PURCHASE,
        amount=amount,
        transaction_date=meeting.meeting_date,
        line_item_key=key,
        group_description=f"Group received share payment from {member.name}",
        member_description=f"{member.name} purchased {item.number_of_shares} shares @ {format_money(price)}",
    )

    db.session.add(Share(
        group_id=meeting.group_id,
        cycle_id=meeting.cycle_id,
        meeting_id=meeting.id,
        investor_id=member.id,
        number_of_shares=item.number_of_shares,
        share_price_at_purchase=price,
        total_amount_paid=amount,
        purchase_date=meeting.meeting_date,
        line_item_key=key,
    ))
    pair.post()

    return amount


def _handle_loan_disbursement(meeting, item, key, result, policy):
    borrower = _resolve_member(meeting, item.member_id, item.member_name, result, LOAN_DISBURSEMENT, item.index)

    existing = Loan.query.filter_by(meeting_id=meeting.id, borrower_id=borrower.id).first()
    if existing:
        result.add_warning('multiple_loans',
                           f"{borrower.name} already has loan {existing.loan_number} in this meeting",
                           category=LOAN_DISBURSEMENT, index=item.index,
                           suggestion='Review meeting data for duplicates')

    loan = disburse_loan(meeting, item, borrower, key, policy=policy)
    return loan.principal


def _handle_loan_repayment(meeting, item, key, result, policy):
    loan = db.session.get(Loan, item.loan_id)
    if not loan:
        raise LineItemError(f"Loan not found: ID {item.loan_id}", type_='loan_not_found', field='loan_id')
    if loan.group_id != meeting.group_id:
        raise LineItemError(f"Loan {item.loan_id} does not belong to group {meeting.group_id}",
                            type_='loan_not_in_group', field='loan_id')

    amount = item.amount
    balance = money(loan.balance)
    if balance > 0 and amount > balance:
        result.add_warning(
            'overpayment',
            f"Repayment {format_money(amount)} exceeds loan balance {format_money(balance)} "
            f"for {loan.borrower.name}",
            category=LOAN_REPAYMENT, index=item.index,
            suggestion='Adjusting payment to loan balance',
        )
        amount = balance

    apply_repayment(
        loan, amount,
        transaction_date=item.payment_date or meeting.meeting_date,
        line_item_key=key,
        meeting=meeting,
        payment_method=item.payment_method,
        notes=item.notes,
    )
    return amount


def _handle_social_fund(meeting, item, key, result, policy):
    member = _resolve_member(meeting, item.member_id, item.member_name, result, SOCIAL_FUND, item.index)

    add_contribution(
        meeting.group_id, meeting.cycle_id, member, item.amount, meeting.meeting_date, key,
        meeting=meeting, reason=item.notes, created_by_id=meeting.created_by_id,
    )
    return item.amount


def _handle_contribution(meeting, item, key, result, policy):
    member = _resolve_member(meeting, item.member_id, item.member_name, result, CONTRIBUTION, item.index)

    pair = PairedLedgerEntry(
        group_id=meeting.group_id,
        member_id=member.id,
        cycle_id=meeting.cycle_id,
        meeting_id=meeting.id,
        source=LedgerSource.MEETING_CONTRIBUTION,
        amount=item.amount,
        transaction_date=meeting.meeting_date,
        line_item_key=key,
        account_type=item.account_type,
        group_description=f"Group receipt from {member.name} - {item.account_type}",
        member_description=item.description or f"Meeting #{meeting.meeting_number} - {item.account_type}",
    )
    pair.post()

    result.add_account_total(item.account_type, item.amount)
    return item.amount


HANDLERS = {
    CONTRIBUTION: _handle_contribution,
    SHARE_PURCHASE: _handle_share_purchase,
    LOAN_DISBURSEMENT: _handle_loan_disbursement,
    LOAN_REPAYMENT: _handle_loan_repayment,
    SOCIAL_FUND: _handle_social_fund,
}


# ============================================================
# REPROCESSING
# ============================================================

def clear_meeting_records(meeting):
    """
    Delete everything keyed to the meeting (no commit).

    Loans repaid at this meeting get their balances rebuilt from the
    remaining loan transactions. Loans disbursed here that were repaid at
    another meeting block the reset: reprocess that meeting first.
    """
    loans = Loan.query.filter_by(meeting_id=meeting.id).all()
    loan_ids = [loan.id for loan in loans]

    if loan_ids:
        foreign = LoanTransaction.query.filter(
            LoanTransaction.loan_id.in_(loan_ids),
            LoanTransaction.type == LoanTransactionType.REPAYMENT.value,
            LoanTransaction.meeting_id != meeting.id
        ).count()
        if foreign:
            raise MeetingProcessingError(
                f"Loans from meeting {meeting.id} have {foreign} repayment(s) recorded at other meetings; "
                f"reprocess those meetings first"
            )

    repaid_loan_ids = {
        row.loan_id for row in LoanTransaction.query.filter(
            LoanTransaction.meeting_id == meeting.id,
            LoanTransaction.type == LoanTransactionType.REPAYMENT.value
        ).all()
    } - set(loan_ids)

    deleted = {
        'ledger_entries': delete_meeting_entries(meeting.id),
        'loan_transactions': LoanTransaction.query.filter(
            (LoanTransaction.meeting_id == meeting.id) | LoanTransaction.loan_id.in_(loan_ids or [-1])
        ).delete(synchronize_session='fetch'),
        'loans': Loan.query.filter_by(meeting_id=meeting.id).delete(synchronize_session='fetch'),
        'shares': Share.query.filter_by(meeting_id=meeting.id).delete(synchronize_session='fetch'),
        'social_fund_transactions': SocialFundTransaction.query.filter_by(
            meeting_id=meeting.id
        ).delete(synchronize_session='fetch'),
    }

    db.session.expire_all()
    for loan_id in repaid_loan_ids:
        loan = db.session.get(Loan, loan_id)
        if loan is not None:
            sync_loan_balance(loan, as_of=meeting.meeting_date)

    return deleted


def reprocess_meeting(meeting_or_id, policy=None):
    """
    Explicit delete-and-recreate of one meeting.

    Returns: ProcessingResult
    """
    meeting = _load_meeting(meeting_or_id)

    try:
        deleted = clear_meeting_records(meeting)
        meeting = db.session.get(Meeting, meeting.id)
        meeting.reset()
        db.session.commit()
    except MeetingProcessingError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        raise MeetingProcessingError(f"Failed to reset meeting {meeting.id}: {str(e)}") from e

    logger.info("Meeting %s reset for reprocessing: %s", meeting.id, deleted)
    return process_meeting(meeting, policy=policy)
