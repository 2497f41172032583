"""Command-line client for AI Super Nanny."""

import asyncio
import json
from datetime import date, datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .app import App, setup_logging
from .auth import route_for
from .cache import LocalStore, TimelineCache
from .config import load_settings
from .describe import to_display_event
from .errors import ConfigError, SuperNannyError
from .models import DisplayTimelineEvent
from .recording import FileAudioSource, RecordingState
from .timeutil import day_bounds, parse_time_reference

console = Console()

TYPE_STYLES = {
    "feeding": "green",
    "sleep": "blue",
    "diaper": "yellow",
    "milestone": "magenta",
}


def _run(ctx: click.Context, action):
    """Build the app, run ``action(app)`` on a fresh loop, always clean up."""

    async def runner():
        app = App(ctx.obj["settings"])
        try:
            await app.auth.initialize()
            return await action(app)
        finally:
            await app.aclose()

    try:
        return asyncio.run(runner())
    except (SuperNannyError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)


def _render_events(events: list[DisplayTimelineEvent], title: str) -> None:
    if not events:
        console.print("No events found.")
        return

    table = Table(title=title)
    table.add_column("Time", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Description")
    table.add_column("", no_wrap=True)

    for event in events:
        style = TYPE_STYLES.get(event.type, "white")
        marker = "[green]new[/green]" if event.is_new else ""
        if event.has_details:
            marker = f"{marker} [dim]details[/dim]".strip()
        table.add_row(event.time, f"[{style}]{event.type}[/{style}]", event.description, marker)

    console.print(table)


def _resolve_day(ref: str | None, tz) -> date:
    now = datetime.now(tz)
    if not ref:
        return now.date()
    return parse_time_reference(ref, now=now).astimezone(tz).date()


@click.group()
@click.option(
    "--home",
    envvar="SUPERNANNY_HOME",
    type=click.Path(path_type=Path),
    help="Directory for settings, cache and logs (default: ~/.supernanny)",
)
@click.pass_context
def cli(ctx, home):
    """AI Super Nanny - log and review baby-care events."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings(home)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)
    ctx.obj["settings"] = settings
    setup_logging(settings)


# --- Account ---


@cli.command()
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True)
@click.pass_context
def login(ctx, email, password):
    """Sign in with email and password."""

    async def action(app: App):
        session = await app.auth.sign_in(email, password)
        return session

    session = _run(ctx, action)
    console.print(f"[green]✓[/green] Signed in as {session.user.email or session.user.id}")
    if route_for("/auth/login", session) == "/onboarding":
        console.print("[yellow]![/yellow] Onboarding not finished. Add a baby and run `supernanny onboard`.")


@cli.command()
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.pass_context
def signup(ctx, email, password):
    """Create an account."""

    async def action(app: App):
        return await app.auth.sign_up(email, password)

    session = _run(ctx, action)
    if session is None:
        console.print(f"Check {email} for a confirmation link.")
    else:
        console.print(f"[green]✓[/green] Account created for {email}")


@cli.command("magic-link")
@click.argument("email")
@click.pass_context
def magic_link(ctx, email):
    """Email a sign-in link."""

    async def action(app: App):
        await app.auth.sign_in_with_magic_link(email)

    _run(ctx, action)
    console.print(f"[green]✓[/green] Magic link sent to {email}")


@cli.command()
@click.pass_context
def logout(ctx):
    """Sign out."""

    async def action(app: App):
        await app.auth.sign_out()

    _run(ctx, action)
    console.print("[green]✓[/green] Signed out")


@cli.command()
@click.pass_context
def whoami(ctx):
    """Show the signed-in user."""

    async def action(app: App):
        if not app.auth.is_authenticated:
            return None
        return await app.client.auth.get_user()

    user = _run(ctx, action)
    if user is None:
        console.print("Not signed in.")
        return
    console.print(f"User: [cyan]{user.email or user.id}[/cyan]")
    console.print(f"Onboarding completed: {'yes' if user.onboarding_completed else 'no'}")
    if user.roles:
        console.print(f"Roles: {', '.join(user.roles)}")


@cli.command()
@click.pass_context
def onboard(ctx):
    """Mark onboarding as finished."""

    async def action(app: App):
        await app.auth.complete_onboarding()

    _run(ctx, action)
    console.print("[green]✓[/green] Onboarding complete")


# --- Capture ---


@cli.command()
@click.argument("audio_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--duration", "seconds", default=10, show_default=True, help="Seconds to record")
@click.pass_context
def record(ctx, audio_file, seconds):
    """Capture AUDIO_FILE as a voice note and log the events it mentions."""

    async def action(app: App):
        session = app.recording_session(lambda: FileAudioSource(audio_file))
        try:
            if not await session.start():
                return session.state, session.processing_error, []
            console.print("Recording...")
            await asyncio.sleep(seconds)
            await session.stop()
            console.print(f"Processing {session.formatted_duration} of audio...")
            state = await session.wait()
            return state, session.processing_error, list(session.last_event_ids)
        finally:
            session.close()

    state, error, event_ids = _run(ctx, action)
    if state is RecordingState.COMPLETION:
        console.print(f"[green]✓[/green] Logged {len(event_ids)} event(s)")
        store = LocalStore(ctx.obj["settings"].db_path)
        try:
            cached = {e.id: e for e in TimelineCache(store).load()}
        finally:
            store.close()
        _render_events([cached[i] for i in event_ids if i in cached], "New events")
    else:
        console.print(f"[red]Error:[/red] {error or 'Recording failed'}")
        ctx.exit(1)


# --- Timeline ---


@cli.command()
@click.option("--day", "day_ref", help="Day to show (today, yesterday, '3 days ago', ISO date)")
@click.option("--remote", is_flag=True, help="Fetch from the server instead of the local cache")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def timeline(ctx, day_ref, remote, as_json):
    """Show the timeline for a day."""
    settings = ctx.obj["settings"]
    try:
        tz = settings.tz
        day = _resolve_day(day_ref, tz)
    except (ConfigError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(1)

    if remote:
        start, end = day_bounds(day, tz)

        async def action(app: App):
            stored = await app.processing.fetch_timeline_events(start, end)
            return [to_display_event(e, tz=tz, mark_new=False) for e in stored]

        events = _run(ctx, action)
    else:
        store = LocalStore(settings.db_path)
        try:
            events = TimelineCache(store).events_for_day(day, tz)
        finally:
            store.close()

    if as_json:
        click.echo(json.dumps([e.to_cache_dict() for e in events], indent=2))
        return

    title = "Today" if day == datetime.now(tz).date() else f"{day:%B} {day.day}"
    _render_events(events, title)


@cli.group()
def cache():
    """Manage the local timeline cache."""


@cache.command("show")
@click.pass_context
def cache_show(ctx):
    """List every cached event, newest first."""
    store = LocalStore(ctx.obj["settings"].db_path)
    try:
        events = TimelineCache(store).sorted_events()
    finally:
        store.close()
    _render_events(events, f"Cached events ({len(events)})")


@cache.command("clear")
@click.pass_context
def cache_clear(ctx):
    """Drop all cached events."""
    store = LocalStore(ctx.obj["settings"].db_path)
    try:
        cleared = TimelineCache(store).clear()
    finally:
        store.close()
    if not cleared:
        console.print("[red]Error:[/red] Could not clear the timeline cache")
        ctx.exit(1)
    console.print("[green]✓[/green] Timeline cache cleared")


# --- Family ---


@cli.group()
def baby():
    """Baby profiles."""


@baby.command("add")
@click.argument("name")
@click.option("--dob", required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help="Date of birth")
@click.option("--sex", type=click.Choice(["male", "female", "other"]), default=None)
@click.option("--birth-weight", type=float, default=None)
@click.pass_context
def baby_add(ctx, name, dob, sex, birth_weight):
    """Add a baby to your family."""

    async def action(app: App):
        return await app.family.create_baby_profile(name, dob.date(), sex, birth_weight)

    profile = _run(ctx, action)
    console.print(f"[green]✓[/green] {profile.name}'s profile has been created")


@baby.command("list")
@click.pass_context
def baby_list(ctx):
    """List the babies in your family."""

    async def action(app: App):
        return await app.family.list_babies()

    babies = _run(ctx, action)
    if not babies:
        console.print("No babies yet.")
        return
    for profile in babies:
        console.print(f"[cyan]{profile.name}[/cyan]  born {profile.dob.isoformat()}")


@cli.command()
@click.argument("email")
@click.option("--role", type=click.Choice(["parent", "caregiver", "family"]), default="parent", show_default=True)
@click.pass_context
def invite(ctx, email, role):
    """Invite a partner or caregiver to your family."""

    async def action(app: App):
        return await app.family.invite_partner(email, role)

    result = _run(ctx, action)
    if result.success:
        console.print(f"[green]✓[/green] {result.display_message}")
        if result.code:
            console.print(f"Invitation code: [bold]{result.code}[/bold]")
    else:
        console.print(f"[red]Error:[/red] {result.display_message}")
        ctx.exit(1)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
