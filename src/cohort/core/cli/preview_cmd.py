"""cohort preview — show what a plan file would schedule for one participant."""

from __future__ import annotations

from datetime import datetime, timedelta

import click


@click.command()
@click.argument("plans_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--health-code", default="preview-participant", show_default=True, help="Participant health code.")
@click.option(
    "--enrolled-on",
    type=click.DateTime(formats=["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Enrollment time in --timezone (default: now).",
)
@click.option("--days", type=int, default=7, show_default=True, help="Length of the window, starting now.")
@click.option("--timezone", "tz_name", default="UTC", show_default=True, help="IANA time zone of the participant.")
@click.option("--app-version", type=int, default=None, help="Client app version, for version-gated plans.")
@click.option("--data-group", "data_groups", multiple=True, help="Participant data group (repeatable).")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False), default=None)
def preview(
    plans_file: str,
    health_code: str,
    enrolled_on: datetime | None,
    days: int,
    tz_name: str,
    app_version: int | None,
    data_groups: tuple[str, ...],
    config_file: str | None,
) -> None:
    """Preview the occurrences a plan file schedules for a participant."""
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

    from cohort.core.cli.common import load_config, setup_cli_logging
    from cohort.core.exceptions import CohortError
    from cohort.schedules.loader import load_plans
    from cohort.schedules.models import ENROLLMENT, ClientInfo, ScheduleContext, utc_now
    from cohort.schedules.reconcile import order_activities, v4_visible
    from cohort.schedules.strategies import schedule_for

    config = load_config(config_file)
    setup_cli_logging(config)

    max_days = config.validated().schedule.max_date_range_days
    if days <= 0 or days > max_days:
        raise click.BadParameter(f"must be between 1 and {max_days}", param_hint="--days")
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise click.BadParameter(f"unknown time zone {tz_name!r}", param_hint="--timezone") from e

    now = utc_now()
    enrolled = enrolled_on.replace(tzinfo=zone) if enrolled_on else now.astimezone(zone)
    starts_on = now.astimezone(zone)
    context = ScheduleContext(
        health_code=health_code,
        study_id="",
        starts_on=starts_on,
        ends_on=starts_on + timedelta(days=days),
        time_zone=zone,
        events={ENROLLMENT: enrolled},
        account_created_on=enrolled,
        client_info=ClientInfo(app_version=app_version),
        data_groups=frozenset(data_groups),
        now=now,
    )

    try:
        plans = load_plans(plans_file)
        occurrences = []
        for plan in plans:
            if not plan.applies_to(context.client_info):
                continue
            schedule = schedule_for(plan, context)
            if schedule is not None:
                occurrences.extend(schedule.get_scheduled_activities(plan, context.with_schedule_plan(plan.guid)))
    except CohortError as e:
        raise click.ClickException(str(e)) from e

    ordered = order_activities(occurrences, v4_visible, now)
    if not ordered:
        click.echo("Nothing scheduled in this window.")
        return
    for activity in ordered:
        status = activity.status_at(now).value
        click.echo(f"{activity.scheduled_on:%Y-%m-%d %H:%M}  {status:<10} {activity.activity.label}  [{activity.guid}]")
    click.echo(f"\n{len(ordered)} occurrence(s) from {len(plans)} plan(s)")
