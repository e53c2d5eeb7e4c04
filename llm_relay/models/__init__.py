from llm_relay.models.provider_config import ProviderConfig
from llm_relay.models.queue_item import QueueItem
from llm_relay.models.usage import CallLog, UsageRecord

__all__ = [
    "CallLog",
    "ProviderConfig",
    "QueueItem",
    "UsageRecord",
]
