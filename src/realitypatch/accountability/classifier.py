from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from realitypatch.accountability.phrases import (
    STRONG_FOLLOW_UP_PHRASES,
    WEAK_FOLLOW_UP_KEYWORDS,
    contains_any,
    contains_word,
    has_assignment,
)
from realitypatch.schemas.records import Interaction


class FollowUpClassifier(Protocol):
    def classify(
        self,
        message: str,
        last_interaction: Optional[Interaction],
        now: Optional[datetime] = None,
    ) -> bool: ...


class KeywordFollowUpClassifier:
    """
    Decides whether a message continues the previous exchange.

    Order of signals:
    1. No previous interaction: never a follow-up
    2. A strong phrase ("i did it", "my excuse", ...): always a follow-up
    3. A weak keyword ("did", "task", ...) after a response that gave an assignment
    4. Enough time passed since a response that gave an assignment
    """

    def __init__(self, threshold: timedelta = timedelta(hours=12)):
        self.threshold = threshold

    def classify(
        self,
        message: str,
        last_interaction: Optional[Interaction],
        now: Optional[datetime] = None,
    ) -> bool:
        if last_interaction is None:
            return False

        if contains_any(message, STRONG_FOLLOW_UP_PHRASES):
            return True

        if not has_assignment(last_interaction.response):
            return False

        if contains_word(message, WEAK_FOLLOW_UP_KEYWORDS):
            return True

        now = now or datetime.now(timezone.utc)
        return now - last_interaction.timestamp > self.threshold
