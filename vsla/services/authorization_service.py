"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

Role checks for officer-only actions. Roles come from Member.role;
nothing here reads global flags.

Each can_* function returns (allowed, reason).
"""

from vsla.extensions import db
from vsla.models import Loan, Member, OFFICER_ROLES


class AuthorizationError(Exception):
    """Raised when authorization fails"""
    pass


# ============================================================
# GROUP MEMBERSHIP CHECKS
# ============================================================

def get_membership(member_id, group_id):
    """Get active member record belonging to the group"""
    return Member.query.filter_by(
        id=member_id,
        group_id=group_id,
        is_active=True
    ).first()


def is_group_member(member_id, group_id):
    """Check if member is active in group"""
    return get_membership(member_id, group_id) is not None


def is_group_officer(member_id, group_id):
    """Check if member is an active officer (chairperson, secretary, treasurer)"""
    membership = get_membership(member_id, group_id)
    return membership is not None and membership.role in OFFICER_ROLES


# ============================================================
# SOCIAL FUND AUTHORIZATION
# ============================================================

def can_record_withdrawal(member_id, group_id):
    """
    Check if member can record a social fund withdrawal.

    Requirements:
    - Must be an active officer of the group
    """
    if not is_group_member(member_id, group_id):
        return False, "You are not a member of this group"

    if not is_group_officer(member_id, group_id):
        return False, "Only group officers can record social fund withdrawals"

    return True, None


# ============================================================
# LOAN AUTHORIZATION
# ============================================================

def can_default_loan(member_id, loan_id):
    """
    Check if member can mark a loan as defaulted.

    Requirements:
    - Must be an active officer of the loan's group
    - Officers cannot default their own loans
    """
    loan = db.session.get(Loan, loan_id)
    if not loan:
        return False, "Loan not found"

    if not is_group_officer(member_id, loan.group_id):
        return False, "Only group officers can mark loans as defaulted"

    if loan.borrower_id == member_id:
        return False, "You cannot default your own loan"

    return True, None


# ============================================================
# HELPER FUNCTION: REQUIRE AUTHORIZATION
# ============================================================

def require_authorization(check_func, *args, error_class=AuthorizationError):
    """
    Wrapper to raise exception if authorization fails.

    Usage:
        require_authorization(can_record_withdrawal, member_id, group_id)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason)
