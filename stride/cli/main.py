"""
Stride CLI entry point.

Operator commands that run the notification services directly against the
configured database, outside the HTTP application. Realtime broadcasts made
from here reach no subscribers; push and in-app delivery work as usual.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import click

from stride import __version__
from stride.realtime.hub import RealtimeHub
from stride.schemas.notifications import DeliveryResult, PushMessage
from stride.services.exceptions import DeliveryFailedError, NotFoundError, ValidationError
from stride.services.notification_dispatcher import NotificationDispatcher, NotificationTemplates
from stride.services.push_gateway import ExpoPushClient, WebPushSender
from stride.services.token_registry import TokenRegistryService
from stride.utils.logging_config import init_logging


@asynccontextmanager
async def _dispatcher() -> AsyncIterator[NotificationDispatcher]:
    from stride.db.database import SessionLocal

    db = SessionLocal()
    hub = RealtimeHub()
    try:
        async with ExpoPushClient() as push_client:
            yield NotificationDispatcher(
                db=db,
                push_client=push_client,
                web_push=WebPushSender(),
                hub=hub,
            )
    finally:
        await hub.close()
        db.close()


def _build_message(title: Optional[str], body: Optional[str], data: Optional[str]) -> PushMessage:
    if title is None and body is None:
        return NotificationTemplates.test()
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--data")
    payload.setdefault("type", "custom")
    return NotificationTemplates.system_announcement(title or "", body or "", payload)


def _print_result(result: DeliveryResult) -> None:
    status = click.style("OK", fg="green") if result.success else click.style("FAIL", fg="red")
    channels = []
    if result.push_sent:
        channels.append("push")
    if result.in_app_notification_created:
        channels.append("in-app")
    if result.realtime_event_triggered:
        channels.append("realtime")
    click.echo(f"  {result.user_id}: {', '.join(channels) or 'none'}  {status}")
    for error in result.errors:
        click.echo(click.style(f"    {error}", fg="yellow"))


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="stride")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Stride Campus notification service tools.

    Use 'stride COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    init_logging()


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to listen on")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str, port: int, reload: bool) -> None:
    """Start the notification API server."""
    import uvicorn

    click.echo(f"Starting Stride notification service on http://{host}:{port}")
    click.echo(f"Health check: http://{host}:{port}/health")
    try:
        uvicorn.run(
            "stride.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        click.echo("\nServer stopped by user (CTRL+C)")


@cli.command("init-db")
def init_db_command() -> None:
    """Create database tables."""
    from stride.db.database import init_db

    init_db()
    click.echo("Database initialized.")


@cli.command()
@click.argument("user_id")
@click.option("--title", help="Notification title (omit with --body for a test notification)")
@click.option("--body", help="Notification body")
@click.option("--data", help="JSON object attached to the notification")
@click.option("--sender", "sender_id", help="Sending user id")
def send(
    user_id: str,
    title: Optional[str],
    body: Optional[str],
    data: Optional[str],
    sender_id: Optional[str],
) -> None:
    """Send a notification to one user."""
    message = _build_message(title, body, data)

    async def run() -> DeliveryResult:
        async with _dispatcher() as dispatcher:
            return await dispatcher.dispatch(user_id, message, sender_id=sender_id)

    try:
        result = asyncio.run(run())
    except ValidationError as e:
        _fail("; ".join(e.errors) if e.errors else e.message)
    except NotFoundError:
        _fail(f"User not found: {user_id}")
    except DeliveryFailedError as e:
        _print_result(e.result)
        _fail("Every delivery channel failed")
    else:
        _print_result(result)


@cli.command()
@click.argument("school_domain")
@click.option("--title", required=True, help="Notification title")
@click.option("--body", required=True, help="Notification body")
@click.option("--data", help="JSON object attached to the notification")
@click.option("--sender", "sender_id", help="Sending user id")
def campus(
    school_domain: str,
    title: str,
    body: str,
    data: Optional[str],
    sender_id: Optional[str],
) -> None:
    """Send a notification to every active user of a campus."""
    message = _build_message(title, body, data)

    async def run() -> List[DeliveryResult]:
        async with _dispatcher() as dispatcher:
            return await dispatcher.dispatch_campus(school_domain, message, sender_id=sender_id)

    try:
        results = asyncio.run(run())
    except ValidationError as e:
        _fail("; ".join(e.errors) if e.errors else e.message)

    for result in results:
        _print_result(result)
    succeeded = sum(1 for r in results if r.success)
    click.echo(f"\n{succeeded}/{len(results)} recipients reached.")


@cli.command("cleanup-tokens")
def cleanup_tokens() -> None:
    """Clear stored push tokens with a malformed format."""
    from stride.db.database import SessionLocal

    db = SessionLocal()
    try:
        cleared = TokenRegistryService(db).cleanup_invalid_tokens()
    finally:
        db.close()
    click.echo(f"Cleared {cleared} invalid token(s).")


@cli.command()
@click.option("--hours", default=24, show_default=True, help="Window for recent notifications")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def stats(hours: int, as_json: bool) -> None:
    """Show token registry and inbox counters."""
    from stride.db.database import SessionLocal

    db = SessionLocal()
    try:
        counters = TokenRegistryService(db).get_stats(recent_hours=hours)
    finally:
        db.close()

    if as_json:
        click.echo(json.dumps(counters))
        return
    for key, value in counters.items():
        click.echo(f"  {key.replace('_', ' ')}: {value}")


def main() -> None:
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
