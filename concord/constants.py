"""Central constants for Concord (small, stable primitives only).

Runtime/config dependent values live in ``config/default_config.json``.
"""

# Trash (immediate removal) quota per user and feature
TRASH_QUOTA: int = 3
TRASH_WINDOW_SECONDS: float = 15 * 60

# Fraction of present users whose votes trigger an automatic transition
DEFAULT_QUORUM_RATIO: float = 0.5

# Matches every classification on a target
ANY_CLASSIFICATION = "any"

DEFAULT_QUEUE_LIMIT: int = 10
DEFAULT_HISTORY_LIMIT: int = 200

TRASH_REMEDIATION = "Use thumbs down to vote items out instead!"
