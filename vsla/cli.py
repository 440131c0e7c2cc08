"""Flask CLI commands for meeting processing and ledger checks (`flask vsla ...`)."""

import click
from flask import current_app
from flask.cli import AppGroup

from vsla.extensions import db
from vsla.line_items import CONTRIBUTION
from vsla.models import Meeting
from vsla.services.authorization_service import AuthorizationError
from vsla.services.ledger_service import (
    LedgerError, get_balance, get_ledger_summary, verify_double_entry
)
from vsla.services.loan_service import refresh_overdue_loans
from vsla.services.meeting_service import (
    MeetingProcessingError, process_meeting, reprocess_meeting
)
from vsla.services.social_fund_service import SocialFundError, record_withdrawal
from vsla.utils import format_money as _format_money, parse_date, utcnow

vsla_cli = AppGroup('vsla', help='VSLA accounting commands.')


def format_money(amount):
    return _format_money(amount, current_app.config.get('VSLA_CURRENCY', 'UGX'))


def _get_meeting(meeting_id):
    meeting = db.session.get(Meeting, meeting_id)
    if not meeting:
        raise click.ClickException(f"Meeting {meeting_id} not found")
    return meeting


def _echo_result(result):
    for category, counts in result.counts.items():
        total = result.totals.get(category)
        line = (f"  {category}: {counts['processed']} processed, "
                f"{counts['skipped']} skipped, {counts['failed']} failed")
        if total is not None:
            line += f" ({format_money(total)})"
        click.echo(line)
        if category == CONTRIBUTION:
            for account_type, account_total in result.account_totals.items():
                click.echo(f"    {account_type}: {format_money(account_total)}")

    for error in result.errors:
        where = f"[{error['category']} #{error['index']}] " if 'index' in error else ''
        click.secho(f"  ERROR {where}{error['type']}: {error['message']}", fg='red')

    for warning in result.warnings:
        where = f"[{warning['category']} #{warning['index']}] " if 'index' in warning else ''
        click.secho(f"  WARNING {where}{warning['type']}: {warning['message']}", fg='yellow')

    if result.success:
        click.secho(f"Meeting {result.meeting_id} completed.", fg='green')
    else:
        click.secho(f"Meeting {result.meeting_id} failed with {len(result.errors)} error(s).", fg='red')


@vsla_cli.command('init-db')
def init_db():
    """Create all tables."""
    db.create_all()
    click.secho("Database tables created.", fg='green')


@vsla_cli.command('process-meeting')
@click.argument('meeting_id', type=int)
@click.option('--policy', type=click.Choice(['flat', 'monthly']), default=None,
              help='Interest policy (defaults to VSLA_INTEREST_POLICY).')
def process_meeting_command(meeting_id, policy):
    """Process a pending or failed meeting."""
    meeting = _get_meeting(meeting_id)
    click.echo(f"Processing meeting {meeting.id} (#{meeting.meeting_number})...")
    try:
        result = process_meeting(meeting, policy=policy)
    except MeetingProcessingError as e:
        raise click.ClickException(str(e))

    _echo_result(result)
    if not result.success:
        click.get_current_context().exit(1)


@vsla_cli.command('reprocess-meeting')
@click.argument('meeting_id', type=int)
@click.option('--policy', type=click.Choice(['flat', 'monthly']), default=None,
              help='Interest policy (defaults to VSLA_INTEREST_POLICY).')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt.')
def reprocess_meeting_command(meeting_id, policy, yes):
    """Delete every record of a meeting and process it again."""
    meeting = _get_meeting(meeting_id)
    if not yes:
        click.confirm(
            f"This deletes all ledger entries, shares, loans and social fund records "
            f"of meeting {meeting.id}. Continue?",
            abort=True,
        )

    click.echo(f"Reprocessing meeting {meeting.id}...")
    try:
        result = reprocess_meeting(meeting, policy=policy)
    except MeetingProcessingError as e:
        raise click.ClickException(str(e))

    _echo_result(result)
    if not result.success:
        click.get_current_context().exit(1)


@vsla_cli.command('balance')
@click.argument('group_id', type=int)
@click.option('--cycle', 'cycle_id', type=int, default=None, help='Limit to one cycle.')
@click.option('--member', 'member_id', type=int, default=None, help='Member balance instead of the group pool.')
@click.option('--summary', is_flag=True, help='Show totals per source and member balances.')
def balance_command(group_id, cycle_id, member_id, summary):
    """Show a group pool or member balance."""
    if not summary:
        balance = get_balance(group_id, cycle_id=cycle_id, member_id=member_id)
        owner = f"Member {member_id}" if member_id is not None else f"Group {group_id}"
        click.echo(f"{owner} balance: {format_money(balance)}")
        return

    data = get_ledger_summary(group_id, cycle_id=cycle_id)
    click.echo(f"Group {group_id} balance: {format_money(data['balance'])}")
    for source, total in data['totals'].items():
        click.echo(f"  {source}: {format_money(total)} ({data['transaction_counts'][source]} entries)")
    click.echo(f"  social fund: {format_money(data['social_fund_balance'])}")
    click.echo(f"  outstanding loans: {format_money(data['outstanding_loans'])}")
    for mid, bal in sorted(data['member_balances'].items()):
        click.echo(f"  member {mid}: {format_money(bal)}")


@vsla_cli.command('verify-ledger')
@click.argument('group_id', type=int)
@click.option('--cycle', 'cycle_id', type=int, default=None, help='Limit to one cycle.')
@click.option('--meeting', 'meeting_id', type=int, default=None, help='Limit to one meeting.')
def verify_ledger_command(group_id, cycle_id, meeting_id):
    """Check that every ledger row has its matching pair."""
    report = verify_double_entry(group_id, cycle_id=cycle_id, meeting_id=meeting_id)

    click.echo(f"Entries: {report['entry_count']}")
    click.echo(f"Group total: {format_money(report['group_total'])}")
    click.echo(f"Member total: {format_money(report['member_total'])}")
    for source, row in report['by_source'].items():
        click.echo(f"  {source}: {row['pairs']} pairs, "
                   f"group {format_money(row['group_total'])}, member {format_money(row['member_total'])}")

    if report['balanced']:
        click.secho("Ledger is balanced.", fg='green')
        return

    if report['unpaired_entry_ids']:
        click.secho(f"Unpaired entries: {report['unpaired_entry_ids']}", fg='red')
    if report['mismatched_entry_ids']:
        click.secho(f"Mismatched entries: {report['mismatched_entry_ids']}", fg='red')
    raise click.ClickException("Ledger is NOT balanced")


@vsla_cli.command('refresh-loans')
@click.option('--group', 'group_id', type=int, default=None, help='Limit to one group.')
@click.option('--as-of', 'as_of', default=None, help='Evaluation date (YYYY-MM-DD), default today.')
def refresh_loans_command(group_id, as_of):
    """Re-evaluate overdue and repaid loan statuses."""
    as_of_date = None
    if as_of:
        as_of_date = parse_date(as_of)
        if as_of_date is None:
            raise click.BadParameter(f"Invalid date: {as_of}", param_hint='--as-of')

    changed = refresh_overdue_loans(group_id=group_id, as_of=as_of_date)
    click.echo(f"{changed} loan(s) changed status.")


@vsla_cli.command('social-fund-withdraw')
@click.argument('group_id', type=int)
@click.argument('member_id', type=int)
@click.argument('amount')
@click.option('--cycle', 'cycle_id', type=int, default=None, help='Cycle the withdrawal belongs to.')
@click.option('--officer', 'officer_id', type=int, required=True, help='Officer recording the withdrawal.')
@click.option('--reason', default=None, help='Reason for the withdrawal.')
@click.option('--date', 'on_date', default=None, help='Transaction date (YYYY-MM-DD), default today.')
def social_fund_withdraw_command(group_id, member_id, amount, cycle_id, officer_id, reason, on_date):
    """Record a social fund withdrawal for a member."""
    transaction_date = utcnow().date()
    if on_date:
        transaction_date = parse_date(on_date)
        if transaction_date is None:
            raise click.BadParameter(f"Invalid date: {on_date}", param_hint='--date')

    try:
        txn = record_withdrawal(
            group_id, cycle_id, member_id, amount, transaction_date,
            created_by_id=officer_id, reason=reason
        )
    except (SocialFundError, LedgerError, AuthorizationError) as e:
        raise click.ClickException(str(e))

    click.secho(f"Withdrawal of {format_money(-txn.amount)} recorded for member {member_id}.", fg='green')
