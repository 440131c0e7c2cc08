from enum import Enum

from vsla.extensions import db
from vsla.utils import add_months, money, utcnow


# ============================================================
# ENUMS
# ============================================================

class MemberRole(Enum):
    CHAIRPERSON = 'chairperson'
    SECRETARY = 'secretary'
    TREASURER = 'treasurer'
    MEMBER = 'member'


OFFICER_ROLES = (
    MemberRole.CHAIRPERSON.value,
    MemberRole.SECRETARY.value,
    MemberRole.TREASURER.value,
)


class MeetingStatus(Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class LedgerSource(Enum):
    SHARE_PURCHASE = 'share_purchase'
    LOAN_DISBURSEMENT = 'loan_disbursement'
    LOAN_REPAYMENT = 'loan_repayment'
    SOCIAL_FUND_CONTRIBUTION = 'social_fund_contribution'
    SOCIAL_FUND_WITHDRAWAL = 'social_fund_withdrawal'
    MEETING_CONTRIBUTION = 'meeting_contribution'


class OwnerType(Enum):
    GROUP = 'group'
    MEMBER = 'member'


class LoanStatus(Enum):
    ACTIVE = 'active'
    REPAID = 'repaid'
    DEFAULTED = 'defaulted'
    OVERDUE = 'overdue'


class LoanTransactionType(Enum):
    PRINCIPAL = 'principal'
    INTEREST = 'interest'
    REPAYMENT = 'repayment'


class SocialFundType(Enum):
    CONTRIBUTION = 'contribution'
    WITHDRAWAL = 'withdrawal'


# ============================================================
# GROUP MODEL
# ============================================================
class Group(db.Model):
    """
    A savings group (VSLA).
    Each group has members, savings cycles and meetings.
    """
    __tablename__ = 'groups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    members = db.relationship('Member', backref='group', lazy='dynamic',
                              cascade='all, delete-orphan')
    cycles = db.relationship('Cycle', backref='group', lazy='dynamic',
                             cascade='all, delete-orphan')

    def get_member_count(self):
        """Return number of active members."""
        return self.members.filter_by(is_active=True).count()

    def __repr__(self):
        return f'<Group {self.name}>'


# ============================================================
# MEMBER MODEL
# ============================================================
class Member(db.Model):
    """
    A person belonging to exactly one group.
    Role replaces the old admin flags: officers may record withdrawals
    and default loans.
    """
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30))
    role = db.Column(db.String(20), default=MemberRole.MEMBER.value, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow)

    def is_officer(self):
        return self.role in OFFICER_ROLES

    def __repr__(self):
        return f'<Member {self.name} group={self.group_id}>'


# ============================================================
# CYCLE MODEL
# ============================================================
class Cycle(db.Model):
    """
    A bounded savings/lending period. All financial activity is scoped to one.
    """
    __tablename__ = 'cycles'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    share_price = db.Column(db.Numeric(15, 2), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<Cycle {self.name} group={self.group_id}>'


# ============================================================
# MEETING MODEL
# ============================================================
class Meeting(db.Model):
    """
    A submitted meeting with its raw line items.

    Lifecycle:
    1. Received with processing_status='pending'
    2. process_meeting() marks it 'processing'
    3. Ends 'completed' (maybe with warnings) or 'failed' (with errors)
    4. reprocess_meeting() deletes its records and starts again
    """
    __tablename__ = 'meetings'

    id = db.Column(db.Integer, primary_key=True)
    local_id = db.Column(db.String(64), nullable=True, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycles.id'), nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=True)
    meeting_number = db.Column(db.Integer, nullable=True)
    meeting_date = db.Column(db.Date, nullable=False)
    notes = db.Column(db.Text)

    # Totals declared by the submitting device
    total_share_value = db.Column(db.Numeric(15, 2), nullable=True)
    total_loans_disbursed = db.Column(db.Numeric(15, 2), nullable=True)
    total_loans_repaid = db.Column(db.Numeric(15, 2), nullable=True)
    total_social_fund_collected = db.Column(db.Numeric(15, 2), nullable=True)
    total_savings_collected = db.Column(db.Numeric(15, 2), nullable=True)

    # Raw line items
    transactions_data = db.Column(db.JSON, nullable=True)
    share_purchases_data = db.Column(db.JSON, nullable=True)
    loans_data = db.Column(db.JSON, nullable=True)
    loan_repayments_data = db.Column(db.JSON, nullable=True)
    social_fund_contributions_data = db.Column(db.JSON, nullable=True)

    # Processing state
    processing_status = db.Column(db.String(20), default=MeetingStatus.PENDING.value, nullable=False)
    has_errors = db.Column(db.Boolean, default=False, nullable=False)
    has_warnings = db.Column(db.Boolean, default=False, nullable=False)
    errors = db.Column(db.JSON, nullable=True)
    warnings = db.Column(db.JSON, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    received_at = db.Column(db.DateTime, default=utcnow)

    group = db.relationship('Group')
    cycle = db.relationship('Cycle')

    def can_be_processed(self):
        return self.processing_status in (MeetingStatus.PENDING.value, MeetingStatus.FAILED.value)

    def mark_as_processing(self):
        self.processing_status = MeetingStatus.PROCESSING.value

    def mark_as_completed(self, warnings=None):
        self.processing_status = MeetingStatus.COMPLETED.value
        self.has_errors = False
        self.errors = None
        self.has_warnings = bool(warnings)
        self.warnings = list(warnings) if warnings else None
        self.processed_at = utcnow()

    def mark_as_failed(self, errors, warnings=None):
        self.processing_status = MeetingStatus.FAILED.value
        self.has_errors = True
        self.errors = list(errors)
        self.has_warnings = bool(warnings)
        self.warnings = list(warnings) if warnings else None
        self.processed_at = utcnow()

    def reset(self):
        """Back to pending, forgetting the previous outcome."""
        self.processing_status = MeetingStatus.PENDING.value
        self.has_errors = False
        self.has_warnings = False
        self.errors = None
        self.warnings = None
        self.processed_at = None

    def __repr__(self):
        return f'<Meeting #{self.meeting_number} group={self.group_id} status={self.processing_status}>'


# ============================================================
# LEDGER ENTRY MODEL
# ============================================================
class LedgerEntry(db.Model):
    """
    CRITICAL: single source of truth for group and member balances.

    Rows always come in pairs written by PairedLedgerEntry:
    - owner_type='group', member_id=NULL: how the group pool changed
    - owner_type='member', member_id set: how the member's position changed
    Both rows carry the SAME signed amount:
    - share_purchase, loan_repayment, social_fund_contribution, meeting_contribution: positive
    - loan_disbursement, social_fund_withdrawal: negative

    Rows are never updated; reprocessing deletes and recreates them.
    """
    __tablename__ = 'ledger_entries'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=True, index=True)
    owner_type = db.Column(db.String(10), nullable=False)
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycles.id'), nullable=True, index=True)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=True, index=True)

    source = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    transaction_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(255), nullable=True)
    account_type = db.Column(db.String(30), nullable=True)  # meeting_contribution only

    # The other half of the pair
    contra_entry_id = db.Column(db.Integer, db.ForeignKey('ledger_entries.id'), nullable=True)

    # Idempotency: one pair per line item
    line_item_key = db.Column(db.String(120), nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)

    member = db.relationship('Member')

    __table_args__ = (
        db.UniqueConstraint('line_item_key', 'owner_type', name='unique_ledger_line_item'),
    )

    @property
    def is_group_entry(self):
        return self.member_id is None

    def __repr__(self):
        owner = 'group' if self.member_id is None else f'member={self.member_id}'
        return f'<LedgerEntry {self.source} {owner} amount={self.amount}>'


# ============================================================
# SHARE MODEL
# ============================================================
class Share(db.Model):
    """One share purchase by a member at a meeting."""
    __tablename__ = 'shares'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycles.id'), nullable=False)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=True)
    investor_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    number_of_shares = db.Column(db.Integer, nullable=False)
    share_price_at_purchase = db.Column(db.Numeric(15, 2), nullable=False)
    total_amount_paid = db.Column(db.Numeric(15, 2), nullable=False)
    purchase_date = db.Column(db.Date, nullable=False)
    line_item_key = db.Column(db.String(120), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    investor = db.relationship('Member')

    def __repr__(self):
        return f'<Share investor={self.investor_id} shares={self.number_of_shares}>'


# ============================================================
# LOAN MODEL
# ============================================================
class Loan(db.Model):
    """
    A loan disbursed at a meeting.

    Lifecycle:
    1. Created 'active' with balance = total_amount_due
    2. Repayments reduce balance; at zero status='repaid'
    3. Past due_date with balance left it reads as 'overdue'
    4. 'defaulted' only by explicit officer action
    """
    __tablename__ = 'loans'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycles.id'), nullable=False)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    loan_number = db.Column(db.String(40), nullable=True)

    principal = db.Column(db.Numeric(15, 2), nullable=False)
    interest_rate = db.Column(db.Numeric(7, 2), default=0, nullable=False)
    duration_months = db.Column(db.Integer, default=1, nullable=False)
    total_amount_due = db.Column(db.Numeric(15, 2), nullable=False)
    amount_paid = db.Column(db.Numeric(15, 2), default=0, nullable=False)
    balance = db.Column(db.Numeric(15, 2), nullable=False)

    disbursement_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    purpose = db.Column(db.String(255))
    status = db.Column(db.String(20), default=LoanStatus.ACTIVE.value, nullable=False)

    line_item_key = db.Column(db.String(120), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    borrower = db.relationship('Member')
    transactions = db.relationship('LoanTransaction', backref='loan', lazy='dynamic',
                                   cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('cycle_id', 'loan_number', name='unique_cycle_loan_number'),
    )

    def compute_due_date(self):
        return add_months(self.disbursement_date, self.duration_months)

    def is_overdue(self, as_of):
        if self.status in (LoanStatus.REPAID.value, LoanStatus.DEFAULTED.value):
            return False
        return money(self.balance) > 0 and as_of > self.due_date

    def current_status(self, as_of):
        """Status as of a date; overdue is derived lazily, never by a job."""
        if self.status == LoanStatus.DEFAULTED.value:
            return self.status
        if money(self.balance) <= 0:
            return LoanStatus.REPAID.value
        if as_of > self.due_date:
            return LoanStatus.OVERDUE.value
        return LoanStatus.ACTIVE.value

    def days_overdue(self, as_of):
        if not self.is_overdue(as_of):
            return 0
        return (as_of - self.due_date).days

    def __repr__(self):
        return f'<Loan {self.loan_number} borrower={self.borrower_id} balance={self.balance} status={self.status}>'


# ============================================================
# LOAN TRANSACTION MODEL
# ============================================================
class LoanTransaction(db.Model):
    """
    Every event in a loan's life. Loan balance = -SUM(amount):
    - principal: negative (debt created)
    - interest: negative (additional debt)
    - repayment: positive (debt reduced)
    """
    __tablename__ = 'loan_transactions'

    id = db.Column(db.Integer, primary_key=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=False, index=True)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=True, index=True)
    type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    balance_before = db.Column(db.Numeric(15, 2), nullable=True)
    balance_after = db.Column(db.Numeric(15, 2), nullable=True)
    payment_method = db.Column(db.String(30), nullable=True)
    transaction_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(255))
    line_item_key = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def is_debit(self):
        return money(self.amount) < 0

    def __repr__(self):
        return f'<LoanTransaction loan={self.loan_id} {self.type} amount={self.amount}>'


# ============================================================
# SOCIAL FUND TRANSACTION MODEL
# ============================================================
class SocialFundTransaction(db.Model):
    """
    Welfare fund movements:
    - contribution: positive amount
    - withdrawal: negative amount (never beyond the current balance)
    """
    __tablename__ = 'social_fund_transactions'

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False, index=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey('cycles.id'), nullable=True, index=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=True)
    transaction_type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    transaction_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(255))
    reason = db.Column(db.String(500))
    created_by_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=True)
    line_item_key = db.Column(db.String(120), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    member = db.relationship('Member', foreign_keys=[member_id])

    def __repr__(self):
        return f'<SocialFundTransaction {self.transaction_type} amount={self.amount}>'
