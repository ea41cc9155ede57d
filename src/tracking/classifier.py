"""Parcel Tracker — Status Classifier.

Maps a provider's free-text status (Portuguese or English) onto
CanonicalStatus by case-insensitive keyword search. Categories are
checked in a fixed order and the first hit wins:

    delivered > out_for_delivery > in_transit > posted > processing

so "Entregue" is never shadowed by a lower-ranked keyword that happens
to appear in the same text. No hit at all means UNKNOWN.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

from src.tracking.models import CanonicalStatus

PRECEDENCE: tuple[CanonicalStatus, ...] = (
    CanonicalStatus.DELIVERED,
    CanonicalStatus.OUT_FOR_DELIVERY,
    CanonicalStatus.IN_TRANSIT,
    CanonicalStatus.POSTED,
    CanonicalStatus.PROCESSING,
)

DEFAULT_KEYWORDS: dict[CanonicalStatus, tuple[str, ...]] = {
    CanonicalStatus.DELIVERED: ("entregue", "delivered"),
    CanonicalStatus.OUT_FOR_DELIVERY: ("saiu para entrega", "out for delivery"),
    CanonicalStatus.IN_TRANSIT: ("trânsito", "transito", "transit"),
    CanonicalStatus.POSTED: ("postado", "posted"),
    CanonicalStatus.PROCESSING: ("processamento", "processing"),
}


class StatusClassifier:
    """Keyword classifier with a fixed precedence order.

    Keyword lists can be replaced per status (e.g. from settings.yaml);
    the precedence between statuses cannot.
    """

    def __init__(
        self,
        keywords: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> None:
        table = dict(DEFAULT_KEYWORDS)
        for name, words in (keywords or {}).items():
            status = CanonicalStatus(name)
            if status is CanonicalStatus.UNKNOWN:
                raise ValueError("UNKNOWN is the fallback and takes no keywords")
            table[status] = tuple(word.lower() for word in words)
        self._keywords = table

    def classify(self, text: Optional[str]) -> CanonicalStatus:
        """Map raw carrier text to a canonical status.

        Args:
            text: Status or event description as the provider returned it.

        Returns:
            The highest-precedence status whose keywords appear in the
            text, or UNKNOWN.
        """
        if not text:
            return CanonicalStatus.UNKNOWN
        lowered = text.lower()
        for status in PRECEDENCE:
            if any(word in lowered for word in self._keywords.get(status, ())):
                return status
        return CanonicalStatus.UNKNOWN

    __call__ = classify
