import re
import unicodedata
from typing import Iterable

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("escalation_service")


def normalize_for_matching(text: str) -> str:
    """Casefold, strip accents and collapse whitespace."""
    if not text:
        return ""

    normalized = unicodedata.normalize("NFKD", text.strip().casefold())
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized


class EscalationPolicy:
    """Decides whether an AI-handled message should go to the human queue."""

    def should_escalate(self, text: str) -> bool:
        raise NotImplementedError


class KeywordEscalationPolicy(EscalationPolicy):
    """Escalate when any keyword appears as a whole word ("Quero finalizar o pedido")."""

    def __init__(self, keywords: Iterable[str]):
        self.keywords = [normalize_for_matching(k) for k in keywords if k and k.strip()]
        self._patterns = [re.compile(rf"\b{re.escape(keyword)}\b") for keyword in self.keywords]

    def should_escalate(self, text: str) -> bool:
        normalized = normalize_for_matching(text)
        if not normalized:
            return False
        for keyword, pattern in zip(self.keywords, self._patterns):
            if pattern.search(normalized):
                logger.info("Escalation keyword matched", extra={"context": {"keyword": keyword}})
                return True
        return False


def get_escalation_policy() -> EscalationPolicy:
    return KeywordEscalationPolicy(settings.escalation_keywords)
