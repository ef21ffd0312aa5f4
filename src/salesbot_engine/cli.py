"""
Sales-bot flow engine CLI
"""
import asyncio
import json
import logging
from datetime import datetime, timezone

import click

from .config import EngineSettings
from .core.engine import SalesBotEngine
from .exceptions import SalesBotEngineError
from .integrations import FixedClock, InMemoryLeadStore, InMemoryMessagingGateway
from .models import ExecutionStatus, LeadSnapshot, MemberRole, WorkspaceMember


# timer hops allowed after each simulated message
MAX_TIMER_HOPS = 100


@click.group()
@click.option('--log-level', default='WARNING', help='Python logging level')
def cli(log_level):
    """Sales-bot flow engine CLI"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
def serve(host, port):
    """Start the API server"""
    import uvicorn
    from .api import create_default_app

    settings = EngineSettings.from_env()
    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(create_default_app(settings), host=host, port=port)


@cli.command()
@click.argument('flow_file', type=click.Path(exists=True, dir_okay=False))
def validate(flow_file):
    """Check a flow file for structural issues"""
    engine = SalesBotEngine()
    try:
        issues = engine.validate_flow(flow_file)
    except SalesBotEngineError as e:
        raise click.ClickException(str(e))

    if not issues:
        click.echo("Flow is valid")
        return
    for issue in issues:
        click.echo(f"[{issue['kind']}] {issue['message']}")
    raise click.ClickException(f"{len(issues)} issue(s) found")


def _parse_member(value: str) -> WorkspaceMember:
    user_id, _, role = value.partition(':')
    try:
        return WorkspaceMember(user_id=user_id, role=MemberRole(role or 'seller'))
    except ValueError:
        raise click.BadParameter(f"Unknown role in '{value}'")


async def _drain_timers(engine: SalesBotEngine, clock: FixedClock, execution_id: str):
    """Jump the clock to each pending timer until the execution stops waiting on one"""
    for _ in range(MAX_TIMER_HOPS):
        execution = await engine.get_execution(execution_id)
        if execution.status != ExecutionStatus.WAITING or execution.wait_until is None:
            return
        if execution.wait_until > clock.now():
            clock.set(execution.wait_until)
        await engine.run_due_timers(clock.now())


async def _simulate(flow_file, lead_id, messages, members, stage, tags, start):
    clock = FixedClock(start)
    crm = InMemoryLeadStore()
    messaging = InMemoryMessagingGateway()
    engine = SalesBotEngine(crm=crm, messaging=messaging, clock=clock)

    flow = await engine.publish_flow(flow_file)
    crm.add_lead(LeadSnapshot(lead_id=lead_id, stage=stage, tags=list(tags)))
    for member in members:
        crm.add_member(flow.workspace_id, _parse_member(member))

    execution = await engine.start_execution(flow.id, lead_id)
    await _drain_timers(engine, clock, execution.id)
    for index, text in enumerate(messages):
        await engine.receive_message(lead_id, text, message_id=f"sim-{index}")
        await _drain_timers(engine, clock, execution.id)

    report = await engine.get_execution_status(execution.id)
    report["sent"] = [
        {"kind": message.kind.value, "content": message.content} for message in messaging.sent
    ]
    report["lead"] = crm.leads[lead_id].to_dict() if lead_id in crm.leads else None
    return report


@cli.command()
@click.argument('flow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--lead-id', default='lead-1', help='Lead to run the flow for')
@click.option('--message', '-m', 'messages', multiple=True, help='Inbound lead message, in order')
@click.option('--member', 'members', multiple=True, help='Workspace member as USER[:ROLE]')
@click.option('--stage', default=None, help='Initial pipeline stage of the lead')
@click.option('--tag', 'tags', multiple=True, help='Initial lead tag')
@click.option('--start', default=None, help='Simulated start time (ISO 8601, UTC if naive)')
def simulate(flow_file, lead_id, messages, members, stage, tags, start):
    """Run a flow against an in-memory lead with scripted messages"""
    start_at = datetime.fromisoformat(start) if start else datetime.now(timezone.utc)
    if start_at.tzinfo is None:
        start_at = start_at.replace(tzinfo=timezone.utc)
    try:
        report = asyncio.run(
            _simulate(flow_file, lead_id, messages, members, stage, tags, start_at)
        )
    except SalesBotEngineError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(report, indent=2, ensure_ascii=False, default=str))


def main():
    cli()


if __name__ == '__main__':
    main()
