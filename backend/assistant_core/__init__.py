from .dispatcher import ActionDispatcher
from .errors import (
    ActionValidationError,
    AmbiguousMatchError,
    ComplianceFailure,
    FieldViolation,
    NotFoundError,
    PersistenceFailure,
    PipelineError,
    ProviderError,
    ProviderQuotaError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    UnauthorizedError,
    UnknownActionError,
)
from .hooks import HookDecision, HookRunner, minimum_necessary_hook, notification_hook
from .lifecycle import ActionLifecycleService, LifecycleError
from .models import LIFECYCLE_STATES, TERMINAL_STATES, ActionOutcome, ActionRequest, ExecutionContext
from .notifications import InAppNotifier, Notification, Notifier
from .orchestrator import StreamingOrchestrator
from .provider import ChatCompletionsProvider, ProviderCandidate
from .rate_limit import InMemoryRateCounter, RateCounter, RateDecision
from .registry import ActionDefinition, ActionName, ActionRegistry, RegistryIncompleteError
from .resolver import EntityResolver

__all__ = [
    "LIFECYCLE_STATES",
    "TERMINAL_STATES",
    "ActionDefinition",
    "ActionDispatcher",
    "ActionLifecycleService",
    "ActionName",
    "ActionOutcome",
    "ActionRegistry",
    "ActionRequest",
    "ActionValidationError",
    "AmbiguousMatchError",
    "ChatCompletionsProvider",
    "ComplianceFailure",
    "EntityResolver",
    "ExecutionContext",
    "FieldViolation",
    "HookDecision",
    "HookRunner",
    "InAppNotifier",
    "InMemoryRateCounter",
    "LifecycleError",
    "NotFoundError",
    "Notification",
    "Notifier",
    "PersistenceFailure",
    "PipelineError",
    "ProviderCandidate",
    "ProviderError",
    "ProviderQuotaError",
    "ProviderRateLimitedError",
    "ProviderTimeoutError",
    "RateCounter",
    "RateDecision",
    "RegistryIncompleteError",
    "StreamingOrchestrator",
    "UnauthorizedError",
    "UnknownActionError",
    "minimum_necessary_hook",
    "notification_hook",
]
