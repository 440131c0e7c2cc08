from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from config import TestConfig
from vsla import create_app
from vsla.extensions import db
from vsla.models import Cycle, Group, Meeting, Member, MemberRole


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def vsla(app):
    """A group with an active cycle, a chairperson, two members and a foreign member."""
    group = Group(name="Kisoga Savers")
    other_group = Group(name="Other Group")
    db.session.add_all([group, other_group])
    db.session.flush()

    cycle = Cycle(group_id=group.id, name="2024 Cycle", share_price=Decimal("10000.00"),
                  start_date=date(2024, 1, 1), end_date=date(2024, 12, 31))
    other_cycle = Cycle(group_id=other_group.id, name="Other Cycle", share_price=Decimal("5000.00"))
    db.session.add_all([cycle, other_cycle])

    chair = Member(group_id=group.id, name="Grace Nakato", role=MemberRole.CHAIRPERSON.value)
    alice = Member(group_id=group.id, name="Alice Namubiru")
    bob = Member(group_id=group.id, name="Bob Okello")
    outsider = Member(group_id=other_group.id, name="Peter Ssali")
    db.session.add_all([chair, alice, bob, outsider])
    db.session.commit()

    return SimpleNamespace(
        group=group, cycle=cycle, other_group=other_group, other_cycle=other_cycle,
        chair=chair, alice=alice, bob=bob, outsider=outsider,
    )


@pytest.fixture
def make_meeting(vsla):
    counter = {'n': 0}

    def _make(**kwargs):
        counter['n'] += 1
        data = {
            'group_id': vsla.group.id,
            'cycle_id': vsla.cycle.id,
            'created_by_id': vsla.chair.id,
            'meeting_number': counter['n'],
            'meeting_date': date(2024, 1, 15),
            'share_purchases_data': [],
            'loans_data': [],
            'loan_repayments_data': [],
            'social_fund_contributions_data': [],
            'transactions_data': [],
        }
        data.update(kwargs)
        meeting = Meeting(**data)
        db.session.add(meeting)
        db.session.commit()
        return meeting

    return _make
