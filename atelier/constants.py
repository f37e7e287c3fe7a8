"""Shared defaults."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_JITTER = 0.5

DEFAULT_LIMITER_CAPACITY = 10
DEFAULT_STEP_TIMEOUT = 120.0

# A claim lease outlives the step timeout by this much before another executor may take over.
DEFAULT_LEASE_GRACE = 30.0
DEFAULT_LEASE_POLL = 1.0

DEFAULT_MIN_LOOKS = 2
DEFAULT_MAX_LOOKS = 5
DEFAULT_MIN_ITEMS_PER_LOOK = 2
DEFAULT_MAX_REFERENCE_IMAGES = 5

# Step scope used by the chat batch entry point, which runs outside a workflow run.
BATCH_SCOPE = "chat-batch"
