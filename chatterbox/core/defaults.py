"""Shared default constants for the chatterbox library."""

# Lease granted by a successful dequeue. A worker that crashes mid-task
# leaves the task claimable again once this window passes.
DEFAULT_LEASE_SECONDS: int = 300  # 5 minutes

# Dequeue re-selects after losing a claim race; bounded so a hot table
# cannot pin a caller in the loop.
MAX_CLAIM_ROUNDS: int = 10

# Stored in place of the signature header when the provider omitted it.
MISSING_SIGNATURE_HEADER: str = 'missing-signature-header'

# Webhook timestamps older than this are rejected.
DEFAULT_SIGNATURE_TOLERANCE_SECONDS: int = 1800
