from chatdesk.models.appointment import Appointment
from chatdesk.models.channel_settings import ChannelSettings
from chatdesk.models.client import Client
from chatdesk.models.conversation import Conversation
from chatdesk.models.job import Job
from chatdesk.models.message import AuthorType, Message
from chatdesk.models.practice import Practice

__all__ = [
    "Conversation",
    "Message",
    "AuthorType",
    "Job",
    "ChannelSettings",
    "Client",
    "Practice",
    "Appointment",
]
