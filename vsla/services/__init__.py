"""
Services Package
================

Business logic layer for VSLA accounting.

All ledger, loan and social fund writes are handled here.
Callers (CLI, sync endpoints) should call these services, not manipulate
models directly.
"""

from vsla.services.ledger_service import (
    PairedLedgerEntry,
    get_balance,
    get_member_balances,
    get_ledger_summary,
    verify_double_entry,
    LedgerError,
    InsufficientBalanceError,
    InvalidAmountError,
    DuplicateTransactionError,
    UnbalancedEntryError
)

from vsla.services.authorization_service import (
    can_record_withdrawal,
    can_default_loan,
    is_group_member,
    is_group_officer,
    require_authorization,
    AuthorizationError
)

from vsla.services.loan_service import (
    InterestPolicy,
    compute_total_due,
    refresh_loan_status,
    refresh_overdue_loans,
    mark_loan_defaulted,
    get_loan_details,
    LoanError,
    InvalidStateError
)

from vsla.services.social_fund_service import (
    get_social_fund_balance,
    get_social_fund_summary,
    record_contribution,
    record_withdrawal,
    SocialFundError
)

from vsla.services.meeting_service import (
    ProcessingResult,
    process_meeting,
    reprocess_meeting,
    MeetingProcessingError
)
