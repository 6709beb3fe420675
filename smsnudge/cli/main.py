#!/usr/bin/env python3
"""
SMS Nudge Terminal CLI
Command-line interface for recipient previews, holidays, credits and auto-nudge.
"""

import json
import logging
import click
from datetime import date, datetime
from typing import Optional

from smsnudge.engine import selection, credits, auto_nudge, delivery, holidays
from smsnudge.errors import ValidationError, InsufficientCredits, NotFound, UpstreamUnavailable
from smsnudge.logging_config import configure_logging, log_call
from smsnudge.models import VisitingType

VISITING_TYPE_CHOICES = [v.value for v in VisitingType]


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"'{value}' is not a date. Use YYYY-MM-DD.")


def _report_error(command: str, e: Exception) -> None:
    """Print a failure the way every command does, logging at the right level."""
    logger = logging.getLogger("smsnudge")
    if isinstance(e, (ValidationError, NotFound)):
        logger.warning(f"{command} failed: {e}")
        click.echo(f"Error: {e}", err=True)
    elif isinstance(e, InsufficientCredits):
        logger.warning(f"{command} declined: {e}")
        click.echo(f"Insufficient credits: {e.available} available, {e.requested} requested.", err=True)
    elif isinstance(e, UpstreamUnavailable):
        logger.error(f"{command} database error: {e}", exc_info=True)
        click.echo(f"Database unavailable: {e}", err=True)
    else:
        logger.error(f"{command} unexpected error: {e}", exc_info=True)
        click.echo(f"Unexpected error: {e}", err=True)


@click.group()
def cli():
    """SMS Nudge - client recall messaging for barbers"""
    configure_logging()


# =============================================================================
# PREVIEW
# =============================================================================

@cli.command('preview')
@click.argument('account_id')
@click.option('--algorithm', type=click.Choice(list(selection.ALGORITHMS)),
              default=selection.ALGORITHM_CAMPAIGN, show_default=True, help='Selection algorithm')
@click.option('--limit', type=int, help='Max recipients (default depends on algorithm)')
@click.option('--visiting-type', type=click.Choice(VISITING_TYPE_CHOICES), help='Only this cadence')
@click.option('--message-id', help='Apply manual picks saved on a scheduled message')
@click.option('--date', 'on_date', help='Pretend today is YYYY-MM-DD')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw preview as JSON')
@log_call
def preview(account_id, algorithm, limit, visiting_type, message_id, on_date, as_json):
    """Preview who an SMS batch would go to"""
    try:
        result = selection.preview_recipients(
            account_id,
            algorithm=algorithm,
            limit=limit,
            visiting_type=visiting_type,
            message_id=message_id,
            today=_parse_date(on_date),
        )
    except click.BadParameter:
        raise
    except Exception as e:
        _report_error('preview', e)
        return

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    if not result.clients:
        click.echo(result.message or "No eligible clients found.")
        return

    click.echo(f"\n{result.algorithm}: {len(result.clients)} of {result.total_available_clients} eligible clients\n")
    click.echo(f"{'Name':<28} {'Phone':<14} {'Type':<16} {'Score':>7} {'Since':>6} {'Overdue':>8}")
    click.echo("-" * 84)

    for c in result.clients:
        click.echo(
            f"{c.full_name[:26]:<28} {c.phone_normalized or '':<14} "
            f"{(c.visiting_type or '')[:14]:<16} {c.score:>7.1f} "
            f"{c.days_since_last_visit:>6} {c.days_overdue:>8}"
        )

    stats = result.stats
    click.echo(f"\nAverage score: {stats['avg_score']}, average days overdue: {stats['avg_days_overdue']}")
    click.echo("Breakdown: " + ", ".join(f"{k}={v}" for k, v in sorted(stats['breakdown'].items())))
    if result.deselected_clients:
        click.echo(f"Left out: {len(result.deselected_clients)}")
    click.echo()


# =============================================================================
# HOLIDAYS
# =============================================================================

@cli.group('holidays')
def holidays_group():
    """Seasonal boost windows"""
    pass


@holidays_group.command('list')
@log_call
def holidays_list():
    """List all known holidays"""
    click.echo(f"\n{'ID':<22} {'Name':<22} {'Start':<12} {'End':<12} {'Lead':>5}")
    click.echo("-" * 78)
    for h in sorted(holidays.HOLIDAYS, key=lambda h: h.start_date):
        click.echo(
            f"{h.id:<22} {h.name:<22} {h.start_date.isoformat():<12} "
            f"{h.end_date.isoformat():<12} {h.activation_days_before:>5}"
        )


@holidays_group.command('active')
@click.option('--date', 'on_date', help='Check YYYY-MM-DD instead of today')
@log_call
def holidays_active(on_date):
    """Show the holiday boosting auto-nudge today"""
    day = _parse_date(on_date) or selection.local_today()
    holiday = holidays.get_active_holiday_for_boosting(day)
    if not holiday:
        click.echo(f"No active holiday on {day}.")
        return

    click.echo(f"Active on {day}: {holiday.name} {holiday.year} ({holiday.id})")
    click.echo(f"Window: {holidays.activation_start(holiday)} to {holiday.end_date}")
    previous = holidays.get_previous_year_holiday(holiday)
    if previous:
        click.echo(f"Compared against: {previous.id}")
    else:
        click.echo("No previous year to compare against, no boost applied.")


# =============================================================================
# CREDITS
# =============================================================================

@cli.group('credits')
def credits_group():
    """SMS credit balances"""
    pass


def _echo_balance(account) -> None:
    click.echo(f"Account:   {account.account_id}")
    click.echo(f"Available: {account.available_credits}")
    click.echo(f"Reserved:  {account.reserved_credits}")


@credits_group.command('show')
@click.argument('account_id')
@log_call
def credits_show(account_id):
    """Show an account's credit balance"""
    try:
        account = credits.get_balance(account_id)
    except Exception as e:
        _report_error('credits show', e)
        return

    if not account:
        logging.getLogger("smsnudge").warning(f"credits_show | account_id={account_id} not found")
        click.echo(f"No credit account for {account_id}.", err=True)
        return
    _echo_balance(account)


@credits_group.command('reserve')
@click.argument('account_id')
@click.argument('count', type=int)
@click.option('--reference', help='Scheduled message id for the audit trail')
@log_call
def credits_reserve(account_id, count, reference):
    """Reserve credits before sending a batch"""
    try:
        account = credits.reserve(account_id, count, reference_id=reference)
    except Exception as e:
        _report_error('credits reserve', e)
        return
    click.echo(f"✓ Reserved {count} credits")
    _echo_balance(account)


@credits_group.command('grant')
@click.argument('account_id')
@click.argument('amount', type=int)
@click.option('--action', type=click.Choice(list(credits.GRANT_ACTIONS)),
              default=credits.ACTION_PURCHASE, show_default=True, help='Why credits are added')
@click.option('--reference', help='Payment or ticket id for the audit trail')
@log_call
def credits_grant(account_id, amount, action, reference):
    """Add credits (pack purchase, trial bonus, adjustment)"""
    try:
        account = credits.grant(account_id, amount, action=action, reference_id=reference)
    except Exception as e:
        _report_error('credits grant', e)
        return
    click.echo(f"✓ Granted {amount} credits ({action})")
    _echo_balance(account)


@credits_group.command('settle')
@click.argument('account_id')
@click.argument('outcome', type=click.Choice(['delivered', 'success', 'failed', 'undelivered']))
@click.option('--reference', help='Message id for the audit trail')
@log_call
def credits_settle(account_id, outcome, reference):
    """Settle one reserved credit by delivery outcome"""
    try:
        account = credits.settle_account(account_id, outcome, reference_id=reference)
    except Exception as e:
        _report_error('credits settle', e)
        return
    click.echo(f"✓ Settled 1 credit as {outcome}")
    _echo_balance(account)


# =============================================================================
# AUTO-NUDGE
# =============================================================================

@cli.group()
def nudge():
    """Weekly auto-nudge buckets"""
    pass


@nudge.command('check')
@click.argument('account_id')
@click.option('--date', 'on_date', help='Check YYYY-MM-DD instead of today')
@log_call
def nudge_check(account_id, on_date):
    """Show this week's bucket status without creating one"""
    day = _parse_date(on_date) or selection.local_today()
    iso_week = auto_nudge.iso_week_label(day)
    try:
        bucket_id = auto_nudge.find_weekly_bucket(account_id, iso_week)
    except Exception as e:
        _report_error('nudge check', e)
        return

    click.echo(f"Week:       {iso_week}")
    click.echo(f"Batch size: {auto_nudge.weekly_batch_size(day)}")
    if bucket_id is None:
        click.echo("Bucket:     not created yet")
    else:
        click.echo(f"Bucket:     #{bucket_id}")


@nudge.command('run')
@click.argument('account_id')
@log_call
def nudge_run(account_id):
    """Create this week's auto-nudge bucket (safe to re-run)"""
    try:
        result = auto_nudge.create_weekly_bucket(account_id)
    except Exception as e:
        _report_error('nudge run', e)
        return

    if result.created:
        click.echo(f"✓ Created bucket #{result.bucket_id} for {result.iso_week} with {result.total_clients} clients")
    elif result.bucket_id is not None:
        click.echo(f"Bucket #{result.bucket_id} already exists for {result.iso_week}.")
    else:
        click.echo(f"No eligible clients for {result.iso_week}. No bucket created.")


# =============================================================================
# DELIVERY
# =============================================================================

@cli.command('status-callback')
@click.option('--status', 'message_status', required=True, help='MessageStatus (delivered, failed, undelivered, ...)')
@click.option('--to', 'to', required=True, help='Destination phone number')
@click.option('--error-code', help='Transport ErrorCode')
@click.option('--message-id', help='Scheduled message id')
@log_call
def status_callback(message_status, to, error_code, message_id):
    """Replay a delivery status webhook"""
    form = {'MessageStatus': message_status, 'To': to}
    if error_code:
        form['ErrorCode'] = error_code

    delivery.handle_status_callback(form, message_id=message_id)

    click.echo(f"✓ Processed '{message_status}' for {to}")
    if error_code:
        click.echo(f"Reason: {delivery.describe_error(int(error_code) if error_code.isdigit() else None)}")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    cli()
