"""Bootstrap of the operator API key on first run."""

import logging

from shared.config import Settings, settings as default_settings
from shared.security import generate_api_key, hash_api_key

logger = logging.getLogger(__name__)

# Distinct banner for easy grep in logs
API_KEY_BANNER = "=" * 60

# Hash of a key generated by this process when none is configured
_bootstrapped_key_hash: str | None = None


def _print_api_key(api_key: str) -> None:
    """Print API key with clear formatting for easy discovery."""
    # print() is unbuffered, unlike the batched log exporter
    print(f"\n{API_KEY_BANNER}")
    print("BOOTSTRAP OPERATOR API KEY")
    print(f"{api_key}")
    print(f"{API_KEY_BANNER}\n")
    logger.info("bootstrap_api_key_generated")


def get_operator_key_hash(config: Settings | None = None) -> str | None:
    """Argon2id hash that operator requests are checked against.

    The configured OPERATOR_API_KEY_HASH wins over a bootstrapped key.
    """
    config = config or default_settings
    return config.OPERATOR_API_KEY_HASH or _bootstrapped_key_hash


def bootstrap_operator_key_if_needed(config: Settings | None = None) -> str | None:
    """
    Generate an operator API key if none is configured.

    The key is printed once to stdout with a distinct banner (grep for '====')
    and only its hash is kept, in memory. Set OPERATOR_API_KEY_HASH to keep
    the same key across restarts.

    Returns:
        Generated API key, or None if skipped
    """
    global _bootstrapped_key_hash
    config = config or default_settings

    if config.OPERATOR_API_KEY_HASH:
        logger.debug("bootstrap_skipped", extra={"reason": "hash_configured"})
        return None

    if _bootstrapped_key_hash is not None:
        logger.debug("bootstrap_skipped", extra={"reason": "already_bootstrapped"})
        return None

    logger.info("bootstrap_started")
    api_key = generate_api_key()
    _bootstrapped_key_hash = hash_api_key(api_key)
    _print_api_key(api_key)
    return api_key


def reset_bootstrap() -> None:
    """Forget a bootstrapped key. Used by tests."""
    global _bootstrapped_key_hash
    _bootstrapped_key_hash = None
