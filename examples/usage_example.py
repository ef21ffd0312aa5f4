"""
Sales-bot engine usage example
"""
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

from salesbot_engine import EngineSettings, SalesBotEngine
from salesbot_engine.integrations import FixedClock, InMemoryLeadStore, InMemoryMessagingGateway
from salesbot_engine.models import LeadSnapshot, MemberRole, WorkspaceMember


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


async def main():
    clock = FixedClock(datetime(2024, 1, 20, 14, 0, tzinfo=timezone.utc))  # a Saturday
    crm = InMemoryLeadStore()
    messaging = InMemoryMessagingGateway()
    crm.add_lead(LeadSnapshot(lead_id="lead-42", name="Joana", stage="novo"))
    crm.add_member("acme", WorkspaceMember("ana", MemberRole.SELLER))
    crm.add_member("acme", WorkspaceMember("bruno", MemberRole.MANAGER))

    engine = SalesBotEngine(
        crm=crm,
        messaging=messaging,
        clock=clock,
        settings=EngineSettings(timezone="America/Sao_Paulo"),
    )

    flow = await engine.publish_flow(Path(__file__).parent / "qualification_flow.yaml")
    print(f"Published {flow.id} v{flow.version}")

    # the CRM reports the lead entering the trigger stage
    started = await engine.on_lead_event("acme", "lead-42", "stage_entered", "novo")
    execution_id = started[0].id

    await engine.receive_message("lead-42", "Oi, qual o preço?", message_id="wamid-1")
    await engine.receive_message("lead-42", "joana arroba gmail", message_id="wamid-2")
    await engine.receive_message("lead-42", "joana@example.com", message_id="wamid-3")

    status = await engine.get_execution_status(execution_id)
    print(f"Execution {execution_id}: {status['status']}")
    for message in messaging.sent:
        print(f"  bot -> {message.content}")
    lead = crm.leads["lead-42"]
    print(f"Lead tags={lead.tags} stage={lead.stage} assignee={lead.assignee_id}")
    print(f"Notes: {crm.notes['lead-42']}")


if __name__ == "__main__":
    asyncio.run(main())
