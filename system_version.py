"""
SYSTEM VERSION: CANONICAL SOURCE OF TRUTH

RULES (ENFORCED BY CONVENTION):
- Any change to the decision record or partition event shape REQUIRES a version bump
- Loaded at gateway boot time
- Reported by /health and stamped on startup logs
"""

SYSTEM_NAME = "Autonomous Operations Controller"

# Semantic Versioning (MAJOR.MINOR.PATCH)
# MAJOR: audit record shape change
# MINOR: new action kinds, signals or endpoints
# PATCH: bugfix / internal hardening
VERSION = "1.0.0"

# Release channel indicates operational stability,
# not feature completeness
RELEASE_CHANNEL = "stable"
