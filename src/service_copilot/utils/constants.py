"""Domain constants shared by the decoder, registry and executor."""

# Operations that mutate business data and must go through plan + confirmation
WRITE_OPERATIONS = frozenset(
    {
        "customers.create",
        "workOrders.create",
        "quotes.create",
        "billing.createCharge",
    }
)
CHARGE_PREVIEW_OPERATION = "billing.previewCharge"
CHARGE_COMMIT_OPERATION = "billing.createCharge"

# Billing rules
MIN_CHARGE_VALUE = 5.00
HIGH_CHARGE_VALUE = 50_000.00

# Parameter carrying the client idempotency key on the wire
IDEMPOTENCY_KEY_PARAMS = ("idempotencyKey", "idempotency_key")

# Model call settings per turn kind
IDLE_TEMPERATURE = 0.7
IDLE_MAX_TOKENS = 2048
EXTRACTION_TEMPERATURE = 0.3
EXTRACTION_MAX_TOKENS = 1024

# HTTP configuration
USER_AGENT = "service-copilot/0.1"
