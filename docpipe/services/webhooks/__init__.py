from docpipe.services.webhooks.delivery import (
    DeliveryOutcome,
    WebhookDeliveryWorker,
    classify_outcome,
)
from docpipe.services.webhooks.manager import (
    RetryPolicy,
    WebhookCreate,
    WebhookManager,
    WebhookUpdate,
)
from docpipe.services.webhooks.signing import (
    VerificationResult,
    extract_signature_components,
    require_valid_signature,
    sign,
    validate_signature,
    verify_inbound_webhook,
    verify_signature,
)

__all__ = [
    "DeliveryOutcome",
    "RetryPolicy",
    "VerificationResult",
    "WebhookCreate",
    "WebhookDeliveryWorker",
    "WebhookManager",
    "WebhookUpdate",
    "classify_outcome",
    "extract_signature_components",
    "require_valid_signature",
    "sign",
    "validate_signature",
    "verify_inbound_webhook",
    "verify_signature",
]
