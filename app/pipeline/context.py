"""DeskPilot – Pipeline Context.

Everything a worker needs, built once per process (gateway lifespan or
scripts/job_worker.py) and passed to the workers explicitly.
"""

from dataclasses import dataclass, field

from app.core.models import Channel
from app.gateway.persistence import ConversationStore
from app.gateway.realtime import EventSink
from app.integrations.base import ChannelAdapter
from app.jobs.queue import JobQueue
from app.pipeline.escalation import EscalationClassifier
from app.pipeline.generator import ResponseGenerator


@dataclass
class PipelineContext:
    store: ConversationStore
    classifier: EscalationClassifier
    generator: ResponseGenerator
    broadcaster: EventSink
    queue: JobQueue
    adapters: dict[Channel, ChannelAdapter] = field(default_factory=dict)

    def adapter_for(self, channel: Channel) -> ChannelAdapter | None:
        return self.adapters.get(Channel(channel))
