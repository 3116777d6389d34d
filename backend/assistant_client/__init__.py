from .executor import ACTION_SUCCESS, ClientActionExecutor, ClientActionResult, friendly_failure
from .extraction import ExtractedAction, extract_action_payload

__all__ = [
    "ACTION_SUCCESS",
    "ClientActionExecutor",
    "ClientActionResult",
    "ExtractedAction",
    "extract_action_payload",
    "friendly_failure",
]
