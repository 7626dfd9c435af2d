"""
Voice Report Classification

Maps a transcript to an incident type by keyword lookup. Categories are
checked in table order and the first one with a matching keyword wins.
"""

import re
from typing import List, Tuple

from beacon.models.emergency import EmergencyType


KEYWORD_TABLE: List[Tuple[EmergencyType, Tuple[str, ...]]] = [
    (EmergencyType.FIRE, ("fire", "burning", "smoke", "flames")),
    (EmergencyType.MEDICAL, ("medical", "collapsed", "injured", "heart attack", "breathing", "unconscious")),
    (EmergencyType.SECURITY, ("security", "threat", "suspicious", "unauthorized", "break-in")),
    (EmergencyType.NATURAL_DISASTER, ("flood", "earthquake", "storm", "hurricane", "tornado", "tsunami")),
    (EmergencyType.OTHER, ("accident", "emergency", "help", "danger")),
]


class VoiceIncidentClassifier:
    """Keyword classifier for transcribed incident reports"""

    def __init__(self, table: List[Tuple[EmergencyType, Tuple[str, ...]]] = None):
        self.table = table or KEYWORD_TABLE

    def classify(self, text: str) -> EmergencyType:
        """
        Classify a transcript

        Args:
            text: Transcribed report

        Returns:
            The first matching incident type, or OTHER
        """
        normalized = re.sub(r"\s+", " ", (text or "").lower())

        for emergency_type, keywords in self.table:
            if any(keyword in normalized for keyword in keywords):
                return emergency_type

        return EmergencyType.OTHER
