"""
Runtime configuration. Read once from the environment at import.

Tests override values by patching module attributes or by passing
explicit arguments to the engine; nothing below is re-read later.
"""

import logging
import os


STATE_PATH = os.environ.get("MARKET_STATE", "./market_state.json")
ADMIN_KEY = os.environ.get("MARKET_ADMIN_KEY", "")
ADMIN_USER_IDS = frozenset(
    uid.strip() for uid in os.environ.get("ADMIN_USER_IDS", "").split(",")
    if uid.strip()
)

INITIAL_MANA = float(os.environ.get("INITIAL_MANA", "1000"))
ANSWER_COST = float(os.environ.get("ANSWER_COST", "50"))
MAX_ANSWERS = int(os.environ.get("MAX_ANSWERS", "100"))
MAX_INDEPENDENT_ANSWERS = int(os.environ.get("MAX_INDEPENDENT_ANSWERS", "1000"))
MAX_ANSWER_LENGTH = 240
MAX_GROUPS_PER_MARKET = int(os.environ.get("MAX_GROUPS_PER_MARKET", "10"))

TRANSACTION_MAX_ATTEMPTS = int(os.environ.get("TRANSACTION_MAX_ATTEMPTS", "5"))
MAX_WRITES_PER_TRANSACTION = 500

RATE_LIMIT_PER_MIN = int(os.environ.get("RATE_LIMIT_PER_MIN", "60"))
NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def is_admin_id(user_id: str) -> bool:
    return user_id in ADMIN_USER_IDS


def max_answers(should_answers_sum_to_one: bool) -> int:
    """Cap on unresolved answers for a multi-answer contract."""
    return MAX_ANSWERS if should_answers_sum_to_one else MAX_INDEPENDENT_ANSWERS


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
