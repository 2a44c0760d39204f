class ConfigurationError(RuntimeError):
    """A required setting (secret key, webhook secret, database URL) is missing."""


class WebhookSignatureError(ValueError):
    """The payment provider signature header is missing or does not match the body."""


class WebhookPayloadError(ValueError):
    """The webhook body passed signature verification but is not a usable event."""
