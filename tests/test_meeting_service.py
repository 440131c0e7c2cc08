from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from vsla.extensions import db
from vsla.line_items import SOCIAL_FUND
from vsla.models import (
    LedgerEntry, Loan, LoanStatus, LoanTransaction, MeetingStatus, Share,
    SocialFundTransaction
)
from vsla.services import meeting_service
from vsla.services.ledger_service import (
    get_balance, get_member_balances, verify_double_entry
)
from vsla.services.meeting_service import (
    MeetingProcessingError, process_meeting, reprocess_meeting
)
from vsla.services.social_fund_service import get_social_fund_balance


def _types(issues):
    return [issue['type'] for issue in issues]


def _share(member, amount, **extra):
    payload = {'investor_id': member.id, 'number_of_shares': 1, 'total_amount_paid': amount,
               'investor_name': member.name}
    payload.update(extra)
    return payload


def _loan(member, principal, rate=10, months=3):
    return {'borrower_id': member.id, 'loan_amount': principal, 'interest_rate': rate,
            'repayment_period_months': months, 'loan_purpose': 'Business stock',
            'borrower_name': member.name}


class TestConcreteScenarios:
    def test_two_share_purchases(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            _share(vsla.alice, 100000),
            _share(vsla.bob, 200000, number_of_shares=2),
        ])

        result = process_meeting(meeting.id)

        assert result.success
        assert meeting.processing_status == MeetingStatus.COMPLETED.value
        assert Share.query.filter_by(meeting_id=meeting.id).count() == 2

        group_rows = LedgerEntry.query.filter_by(meeting_id=meeting.id, owner_type='group').all()
        member_rows = LedgerEntry.query.filter_by(meeting_id=meeting.id, owner_type='member').all()
        assert len(group_rows) == 2
        assert sum(e.amount for e in group_rows) == Decimal('300000.00')
        assert sorted(e.amount for e in member_rows) == [Decimal('100000.00'), Decimal('200000.00')]
        assert sum(e.amount for e in member_rows) == sum(e.amount for e in group_rows)

        assert get_balance(vsla.group.id) == Decimal('300000.00')
        assert result.counts['share_purchase']['processed'] == 2
        assert result.totals['share_purchase'] == Decimal('300000.00')

    def test_one_loan_disbursement(self, vsla, make_meeting):
        meeting = make_meeting(loans_data=[_loan(vsla.bob, 100000)])

        result = process_meeting(meeting)

        assert result.success
        loan = Loan.query.filter_by(meeting_id=meeting.id).one()
        assert loan.total_amount_due == Decimal('110000.00')

        rows = LoanTransaction.query.filter_by(loan_id=loan.id).all()
        assert sorted(t.amount for t in rows) == [Decimal('-100000.00'), Decimal('-10000.00')]
        assert sum(t.amount for t in rows) == Decimal('-110000.00')

        entries = LedgerEntry.query.filter_by(meeting_id=meeting.id).all()
        assert sorted((e.owner_type, e.amount) for e in entries) == [
            ('group', Decimal('-100000.00')),
            ('member', Decimal('-100000.00')),
        ]

    def test_monthly_interest_policy(self, vsla, make_meeting):
        meeting = make_meeting(loans_data=[_loan(vsla.bob, 100000)])
        process_meeting(meeting, policy='monthly')

        loan = Loan.query.filter_by(meeting_id=meeting.id).one()
        assert loan.total_amount_due == Decimal('130000.00')
        assert get_balance(vsla.group.id) == Decimal('-100000.00')


class TestLineItemFailures:
    def test_partial_failure_keeps_valid_items(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            _share(vsla.alice, 100000),
            {'investor_id': 9999, 'number_of_shares': 1, 'total_amount_paid': 5000},
            _share(vsla.bob, 0),
            _share(vsla.bob, -500),
            _share(vsla.outsider, 1000),
        ])

        result = process_meeting(meeting)

        assert not result.success
        assert _types(result.errors) == [
            'member_not_found', 'invalid_amount', 'invalid_amount', 'member_not_in_group',
        ]
        assert [e['index'] for e in result.errors] == [1, 2, 3, 4]
        assert meeting.processing_status == MeetingStatus.FAILED.value
        assert meeting.has_errors is True
        assert len(meeting.errors) == 4

        assert Share.query.count() == 1
        assert LedgerEntry.query.count() == 2
        assert get_balance(vsla.group.id) == Decimal('100000.00')
        assert result.counts['share_purchase'] == {'processed': 1, 'skipped': 0, 'failed': 4}

    def test_zero_amounts_rejected_in_every_category(self, vsla, make_meeting):
        meeting = make_meeting(
            share_purchases_data=[_share(vsla.alice, 0)],
            loans_data=[_loan(vsla.bob, 0)],
            loan_repayments_data=[{'loan_id': 1, 'amount': 0}],
            social_fund_contributions_data=[{'member_id': vsla.alice.id, 'amount': 0, 'contributed': True}],
            transactions_data=[{'memberId': vsla.alice.id, 'accountType': 'savings', 'amount': 0}],
        )

        result = process_meeting(meeting)

        assert _types(result.errors) == ['invalid_amount'] * 5
        assert LedgerEntry.query.count() == 0

    def test_amount_beyond_storage_fails_only_that_item(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            _share(vsla.alice, 1000),
            _share(vsla.bob, '1e30'),
        ])

        result = process_meeting(meeting)

        assert _types(result.errors) == ['invalid_amount']
        assert result.errors[0]['index'] == 1
        assert meeting.processing_status == MeetingStatus.FAILED.value
        assert Share.query.count() == 1
        assert get_balance(vsla.group.id) == Decimal('1000.00')

    def test_overlong_loan_is_rejected(self, vsla, make_meeting):
        meeting = make_meeting(
            share_purchases_data=[_share(vsla.alice, 1000)],
            loans_data=[_loan(vsla.bob, 500, months=200000)],
        )

        result = process_meeting(meeting)

        assert _types(result.errors) == ['invalid_duration']
        assert result.errors[0]['field'] == 'duration_months'
        assert meeting.processing_status == MeetingStatus.FAILED.value
        assert Loan.query.count() == 0
        assert Share.query.count() == 1

    def test_name_mismatch_is_only_a_warning(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            _share(vsla.alice, 1000, investor_name='Alice N.'),
        ])

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['member_name_mismatch']
        assert meeting.processing_status == MeetingStatus.COMPLETED.value
        assert meeting.has_warnings is True

    def test_share_amount_from_cycle_price(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            {'investor_id': vsla.alice.id, 'number_of_shares': 3},
        ])

        process_meeting(meeting)

        share = Share.query.one()
        assert share.total_amount_paid == Decimal('30000.00')
        assert share.share_price_at_purchase == Decimal('10000.00')

    def test_bad_loan_terms_are_corrected(self, vsla, make_meeting):
        meeting = make_meeting(loans_data=[_loan(vsla.bob, 1000, rate=-5, months='abc')])

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['invalid_interest_rate', 'invalid_duration']
        loan = Loan.query.one()
        assert loan.total_amount_due == Decimal('1000.00')
        assert loan.duration_months == 1

    def test_malformed_category(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data={'not': 'a list'})
        result = process_meeting(meeting)
        assert _types(result.errors) == ['malformed_category']

    def test_social_fund_not_contributed_is_skipped(self, vsla, make_meeting):
        meeting = make_meeting(social_fund_contributions_data=[
            {'member_id': vsla.alice.id, 'amount': 2000, 'contributed': True},
            {'member_id': vsla.bob.id, 'amount': 2000, 'contributed': False},
        ])

        result = process_meeting(meeting)

        assert result.success
        assert result.warnings == []
        assert result.counts['social_fund'] == {'processed': 1, 'skipped': 1, 'failed': 0}
        assert SocialFundTransaction.query.count() == 1
        assert get_social_fund_balance(vsla.group.id, vsla.cycle.id) == Decimal('2000.00')

    def test_declared_total_mismatch_warns(self, vsla, make_meeting):
        meeting = make_meeting(
            total_share_value=Decimal('150000'),
            total_social_fund_collected=Decimal('0'),
            share_purchases_data=[_share(vsla.alice, 100000)],
        )

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['total_mismatch']
        assert result.warnings[0]['category'] == 'share_purchase'


class TestContributions:
    def _contribution(self, member, amount, account='savings', **extra):
        payload = {'memberId': member.id, 'accountType': account, 'amount': amount,
                   'memberName': member.name}
        payload.update(extra)
        return payload

    def test_pairs_carry_account_type(self, vsla, make_meeting):
        meeting = make_meeting(
            transactions_data=[
                self._contribution(vsla.alice, 20000),
                self._contribution(vsla.bob, 500, account='Fines'),
            ],
            total_savings_collected=Decimal('20000'),
        )

        result = process_meeting(meeting)

        assert result.success
        assert result.warnings == []
        assert result.totals['contribution'] == Decimal('20500.00')
        assert result.account_totals == {'savings': Decimal('20000.00'), 'fines': Decimal('500.00')}

        rows = LedgerEntry.query.filter_by(meeting_id=meeting.id).all()
        assert len(rows) == 4
        assert {e.source for e in rows} == {'meeting_contribution'}
        alice_rows = [e for e in rows if e.line_item_key.endswith('#0')]
        assert {e.amount for e in alice_rows} == {Decimal('20000.00')}
        assert {e.account_type for e in alice_rows} == {'savings'}
        member_row = next(e for e in alice_rows if e.member_id == vsla.alice.id)
        assert member_row.description == f"Meeting #{meeting.meeting_number} - savings"

        assert get_balance(vsla.group.id) == Decimal('20500.00')
        assert get_balance(vsla.group.id, account_type='savings') == Decimal('20000.00')
        assert get_balance(vsla.group.id, member_id=vsla.bob.id, account_type='fines') == Decimal('500.00')
        assert verify_double_entry(vsla.group.id)['balanced']

    def test_processed_before_shares(self, vsla, make_meeting):
        meeting = make_meeting(
            share_purchases_data=[_share(vsla.alice, 1000)],
            transactions_data=[self._contribution(vsla.alice, 300)],
        )

        process_meeting(meeting)

        first = LedgerEntry.query.order_by(LedgerEntry.id).first()
        assert first.source == 'meeting_contribution'

    def test_unknown_member_is_an_error(self, vsla, make_meeting):
        meeting = make_meeting(transactions_data=[
            {'memberId': 9999, 'accountType': 'savings', 'amount': 100},
            self._contribution(vsla.outsider, 100),
        ])

        result = process_meeting(meeting)

        assert _types(result.errors) == ['member_not_found', 'member_not_in_group']
        assert all(e['category'] == 'contribution' for e in result.errors)
        assert LedgerEntry.query.count() == 0

    def test_missing_account_type_is_an_error(self, vsla, make_meeting):
        meeting = make_meeting(transactions_data=[{'memberId': vsla.alice.id, 'amount': 100}])

        result = process_meeting(meeting)

        assert _types(result.errors) == ['missing_account_type']
        assert meeting.processing_status == MeetingStatus.FAILED.value

    def test_savings_total_mismatch_warns(self, vsla, make_meeting):
        meeting = make_meeting(
            transactions_data=[
                self._contribution(vsla.alice, 20000),
                self._contribution(vsla.bob, 5000, account='fines'),
            ],
            total_savings_collected=Decimal('25000'),
        )

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['total_mismatch']
        assert result.warnings[0]['category'] == 'contribution'

    def test_reprocess_rebuilds_contributions(self, vsla, make_meeting):
        meeting = make_meeting(transactions_data=[
            self._contribution(vsla.alice, 20000),
            self._contribution(vsla.bob, 500, account='fines'),
        ])
        process_meeting(meeting)

        result = reprocess_meeting(meeting.id)

        assert result.success
        assert LedgerEntry.query.count() == 4
        assert get_balance(vsla.group.id, account_type='savings') == Decimal('20000.00')
        assert get_member_balances(vsla.group.id) == {
            vsla.alice.id: Decimal('20000.00'),
            vsla.bob.id: Decimal('500.00'),
        }


class TestMeetingValidation:
    def test_cycle_from_other_group(self, vsla, make_meeting):
        meeting = make_meeting(cycle_id=vsla.other_cycle.id, share_purchases_data=[_share(vsla.alice, 1000)])

        result = process_meeting(meeting)

        assert _types(result.errors) == ['cycle_group_mismatch']
        assert meeting.processing_status == MeetingStatus.FAILED.value
        assert Share.query.count() == 0

    def test_already_processed(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[_share(vsla.alice, 1000)])
        process_meeting(meeting)

        result = process_meeting(meeting)

        assert _types(result.errors) == ['already_processed']
        assert meeting.processing_status == MeetingStatus.COMPLETED.value
        assert LedgerEntry.query.count() == 2

    def test_duplicate_local_id(self, vsla, make_meeting):
        first = make_meeting(local_id='device-7:meeting-3', share_purchases_data=[_share(vsla.alice, 1000)])
        process_meeting(first)

        second = make_meeting(local_id='device-7:meeting-3', share_purchases_data=[_share(vsla.alice, 1000)])
        result = process_meeting(second)

        assert _types(result.errors) == ['duplicate']
        assert second.processing_status == MeetingStatus.FAILED.value
        assert Share.query.count() == 1

    def test_unknown_meeting(self, app):
        with pytest.raises(MeetingProcessingError):
            process_meeting(12345)

    def test_failed_meeting_can_be_completed_later(self, vsla, make_meeting):
        meeting = make_meeting(share_purchases_data=[
            _share(vsla.alice, 1000),
            {'investor_id': 9999, 'number_of_shares': 1, 'total_amount_paid': 500},
        ])
        process_meeting(meeting)
        assert meeting.processing_status == MeetingStatus.FAILED.value

        meeting.share_purchases_data = [_share(vsla.alice, 1000), _share(vsla.bob, 500)]
        db.session.commit()

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['duplicate_line_item']
        assert meeting.processing_status == MeetingStatus.COMPLETED.value
        assert Share.query.count() == 2
        assert get_balance(vsla.group.id) == Decimal('1500.00')


class TestLoanRepayments:
    @pytest.fixture
    def loan(self, vsla, make_meeting):
        meeting = make_meeting(loans_data=[_loan(vsla.bob, 100000)])
        process_meeting(meeting)
        return Loan.query.filter_by(meeting_id=meeting.id).one()

    def test_repayment(self, vsla, make_meeting, loan):
        meeting = make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 40000}])

        result = process_meeting(meeting)

        assert result.success
        assert loan.balance == Decimal('70000.00')
        assert loan.amount_paid == Decimal('40000.00')
        assert get_balance(vsla.group.id, member_id=vsla.bob.id) == Decimal('-60000.00')

    def test_overpayment_is_capped(self, vsla, make_meeting, loan):
        meeting = make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 200000}])

        result = process_meeting(meeting)

        assert result.success
        assert _types(result.warnings) == ['overpayment']
        assert result.totals['loan_repayment'] == Decimal('110000.00')
        assert loan.balance == Decimal('0.00')
        assert loan.status == LoanStatus.REPAID.value

    def test_repaid_loan_is_an_error(self, vsla, make_meeting, loan):
        process_meeting(make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 110000}]))

        result = process_meeting(make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 10}]))

        assert _types(result.errors) == ['invalid_state']

    def test_unknown_loan(self, vsla, make_meeting):
        result = process_meeting(make_meeting(loan_repayments_data=[{'loan_id': 4242, 'amount': 10}]))
        assert _types(result.errors) == ['loan_not_found']


class TestReprocessing:
    def _snapshot(self, vsla):
        return {
            'group': get_balance(vsla.group.id),
            'members': get_member_balances(vsla.group.id),
            'social_fund': get_social_fund_balance(vsla.group.id),
            'loans': sorted((l.borrower_id, l.balance, l.status) for l in Loan.query.all()),
            'rows': LedgerEntry.query.count(),
        }

    def test_reprocess_is_idempotent(self, vsla, make_meeting):
        meeting = make_meeting(
            share_purchases_data=[_share(vsla.alice, 100000), _share(vsla.bob, 200000)],
            loans_data=[_loan(vsla.alice, 50000)],
            social_fund_contributions_data=[{'member_id': vsla.bob.id, 'amount': 2000, 'contributed': True}],
        )
        process_meeting(meeting)
        before = self._snapshot(vsla)

        result = reprocess_meeting(meeting.id)

        assert result.success
        assert self._snapshot(vsla) == before
        assert verify_double_entry(vsla.group.id)['balanced']
        assert Share.query.count() == 2
        assert Loan.query.count() == 1

    def test_reprocess_resyncs_repaid_loans(self, vsla, make_meeting):
        disbursed = make_meeting(loans_data=[_loan(vsla.bob, 100000)])
        process_meeting(disbursed)
        loan = Loan.query.one()

        repaid = make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 50000}])
        process_meeting(repaid)
        before = self._snapshot(vsla)

        reprocess_meeting(repaid)

        assert self._snapshot(vsla) == before
        assert loan.balance == Decimal('60000.00')
        assert LoanTransaction.query.filter_by(loan_id=loan.id).count() == 3

    def test_reprocess_refused_when_loans_repaid_elsewhere(self, vsla, make_meeting):
        disbursed = make_meeting(loans_data=[_loan(vsla.bob, 100000)])
        process_meeting(disbursed)
        loan = Loan.query.one()
        process_meeting(make_meeting(loan_repayments_data=[{'loan_id': loan.id, 'amount': 50000}]))

        with pytest.raises(MeetingProcessingError):
            reprocess_meeting(disbursed)

        assert Loan.query.count() == 1
        assert disbursed.processing_status == MeetingStatus.COMPLETED.value

    def test_loan_numbers_stay_unique_after_reprocessing(self, vsla, make_meeting):
        first = make_meeting(loans_data=[_loan(vsla.alice, 10000)])
        process_meeting(first)
        process_meeting(make_meeting(loans_data=[_loan(vsla.bob, 20000)]))

        result = reprocess_meeting(first)

        assert result.success
        numbers = sorted(loan.loan_number for loan in Loan.query.all())
        assert numbers == [f"LN-{vsla.cycle.id}-0002", f"LN-{vsla.cycle.id}-0003"]


def test_database_failure_rolls_back_meeting(vsla, make_meeting, monkeypatch):
    def boom(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setitem(meeting_service.HANDLERS, SOCIAL_FUND, boom)
    meeting = make_meeting(
        share_purchases_data=[_share(vsla.alice, 1000)],
        social_fund_contributions_data=[{'member_id': vsla.alice.id, 'amount': 100, 'contributed': True}],
    )

    with pytest.raises(MeetingProcessingError):
        process_meeting(meeting)

    assert Share.query.count() == 0
    assert LedgerEntry.query.count() == 0
    assert meeting.processing_status == MeetingStatus.FAILED.value
    assert _types(meeting.errors) == ['exception']


def test_unexpected_error_fails_meeting(vsla, make_meeting, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("handler bug")

    monkeypatch.setitem(meeting_service.HANDLERS, SOCIAL_FUND, boom)
    meeting = make_meeting(
        share_purchases_data=[_share(vsla.alice, 1000)],
        social_fund_contributions_data=[{'member_id': vsla.alice.id, 'amount': 100, 'contributed': True}],
    )

    with pytest.raises(MeetingProcessingError) as exc:
        process_meeting(meeting)

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert Share.query.count() == 0
    assert LedgerEntry.query.count() == 0
    assert meeting.processing_status == MeetingStatus.FAILED.value
    assert _types(meeting.errors) == ['exception']
    assert 'handler bug' in meeting.errors[0]['message']


def test_result_to_dict(vsla, make_meeting):
    meeting = make_meeting(share_purchases_data=[_share(vsla.alice, 1000)])

    data = process_meeting(meeting).to_dict()

    assert data['success'] is True
    assert data['meeting_id'] == meeting.id
    assert data['totals'] == {'share_purchase': '1000.00'}
