"""External collaborators: messaging, CRM, time and the event bus"""

from .clock import Clock, SystemClock, FixedClock
from .crm import LeadGateway, InMemoryLeadStore
from .event_bus import EventBus, Event, EXECUTION_EVENTS_TOPIC
from .messaging import MessagingGateway, InMemoryMessagingGateway, SentMessage

__all__ = [
    "Clock",
    "SystemClock",
    "FixedClock",
    "LeadGateway",
    "InMemoryLeadStore",
    "EventBus",
    "Event",
    "EXECUTION_EVENTS_TOPIC",
    "MessagingGateway",
    "InMemoryMessagingGateway",
    "SentMessage",
]
