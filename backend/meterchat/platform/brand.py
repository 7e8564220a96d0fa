"""Centralized brand configuration for user-facing copy."""

BRAND_NAME = "Meterchat"
BRAND_APP_DESCRIPTION = "Credit-metered AI chat with an ordered conversation history"
