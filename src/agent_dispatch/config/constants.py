"""Named constants for values that appear in multiple places or need explanation.

Each constant has a comment explaining what the value controls, so future
maintainers can decide whether a change is safe without grepping for side-effects.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Completion detection
# ---------------------------------------------------------------------------

# Finish reasons that mean the assistant paused mid-turn (waiting on tool
# results) rather than concluding it.  A session that is idle with one of
# these as the last finish reason is not done.
NON_TERMINAL_FINISH_REASONS: frozenset[str] = frozenset({"tool-calls", "unknown"})

# Part types whose text counts as assistant output for result extraction and
# for the "text produced but no finish reason" completion fallback.
TEXT_PART_TYPES: frozenset[str] = frozenset({"text", "reasoning"})

# Emit a progress log line every N poll iterations.
POLL_LOG_EVERY: int = 10

# Lower bound on the poll wall-clock budget so a misconfigured zero budget
# still performs at least one iteration.
MIN_POLL_BUDGET_S: float = 0.05

# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

TASK_METADATA_OPEN: str = "<task_metadata>"
TASK_METADATA_CLOSE: str = "</task_metadata>"

# Placeholder used in reports when a task produced no text.
NO_TEXT_OUTPUT: str = "(No text output)"

# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

# HTTP timeout for availability discovery calls (provider/model listings).
# Kept short so a slow backend does not stall dispatch; a failed discovery
# simply leaves availability unknown.
DISCOVERY_TIMEOUT_S: float = 10.0

# Default HTTP timeout for a single backend request (session create,
# message list, status).  Prompt sending has its own bound in TimingConfig.
BACKEND_DEFAULT_TIMEOUT_S: float = 30.0

# ---------------------------------------------------------------------------
# Cache files
# ---------------------------------------------------------------------------

CONNECTED_PROVIDERS_CACHE_FILE: str = "connected-providers.json"
PROVIDER_MODELS_CACHE_FILE: str = "provider-models.json"
