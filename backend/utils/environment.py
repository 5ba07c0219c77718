"""
Environment Configuration Utility

ENVIRONMENT values:
- production: secrets must be configured, unsigned webhooks are still accepted but logged
- development: default, development JWT secret allowed
- test: automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def check_production_secrets() -> list:
    """
    Names of secrets that are missing for a production deployment.

    JWT_SECRET is mandatory. Webhook and admin secrets are optional but
    their absence weakens trust, so they are reported too.
    """
    missing = []
    for name in ("JWT_SECRET", "PAYMENT_WEBHOOK_SECRET", "PROVIDER_WEBHOOK_SECRET", "ADMIN_SECRET_KEY"):
        if not os.environ.get(name):
            missing.append(name)
    return missing
