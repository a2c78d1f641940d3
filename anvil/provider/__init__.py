"""Provider - vendor adapters, transform pipelines, streaming fold and retry.

Public API:
    ProviderClient  - streams one provider through its adapter
    RetryController - transient/terminal classification with backoff
    accumulate      - fold MessageDeltas into a ChatCompletionMessage
"""

from anvil.provider.base import (
    ChatRequest,
    ProviderAdapter,
    ProviderConfig,
    ProviderKind,
    ReasoningConfig,
    decode_error_body,
)
from anvil.provider.client import ADAPTERS, ProviderClient, adapter_for
from anvil.provider.pipeline import Pipeline, Stage, stage
from anvil.provider.retry import RetryConfig, RetryController, is_retryable
from anvil.provider.stream import StreamAccumulator, accumulate, accumulate_stream

__all__ = [
    "ADAPTERS",
    "ChatRequest",
    "Pipeline",
    "ProviderAdapter",
    "ProviderClient",
    "ProviderConfig",
    "ProviderKind",
    "ReasoningConfig",
    "RetryConfig",
    "RetryController",
    "Stage",
    "StreamAccumulator",
    "accumulate",
    "accumulate_stream",
    "adapter_for",
    "decode_error_body",
    "is_retryable",
    "stage",
]
