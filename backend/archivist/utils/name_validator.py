"""
Name validator - decides whether extracted text is plausibly a human name.

Keeps form headers, column headers, document titles and OCR debris out of the
person tables.
"""
import re
from typing import Optional

from pydantic import BaseModel

from archivist.rules import HeuristicRules, load_rules

_VOWELS = re.compile(r"[aeiouyAEIOUY]")
_MULTI_SPECIAL = re.compile(r"[^a-z\s\-'.]")


class NameVerdict(BaseModel):
    valid: bool
    reason: str
    confidence: float = 0.0


class NameValidator:
    """Applies the name rules from the active heuristics file."""

    def __init__(self, rules: Optional[HeuristicRules] = None):
        self.rules = rules or load_rules()
        self._nv = self.rules.name_validator

    def is_known_name(self, name: str) -> bool:
        return name.strip().lower() in self._nv.known_names

    def validate(self, name: Optional[str]) -> NameVerdict:
        """
        Validate a candidate name and explain the decision.

        Args:
            name: Candidate string

        Returns:
            NameVerdict with valid flag, reason and a rough confidence
        """
        if not name or not isinstance(name, str):
            return NameVerdict(valid=False, reason="Empty or invalid input")

        candidate = name.strip()
        normalized = candidate.lower()

        if not candidate[0].isupper():
            return NameVerdict(valid=False, reason="Does not start with a capital letter")

        if len(candidate) < self._nv.min_length:
            return NameVerdict(valid=False, reason="Too short")

        if len(candidate) > self._nv.max_length:
            return NameVerdict(valid=False, reason="Too long - likely a description")

        if candidate.replace(" ", "").isdigit():
            return NameVerdict(valid=False, reason="Purely numeric")

        if not _VOWELS.search(candidate):
            return NameVerdict(valid=False, reason="No vowel")

        if normalized in self._nv.stopwords:
            return NameVerdict(valid=False, reason="Stopword, header or title")

        if candidate == candidate.upper() and len(candidate) > 3 and not self.is_known_name(candidate):
            return NameVerdict(valid=False, reason="All caps - likely header", confidence=0.3)

        last_token = normalized.split()[-1]
        if last_token in self._nv.verb_endings:
            return NameVerdict(valid=False, reason="Ends in a verb")

        for pattern in self._nv.garbage_patterns:
            if pattern.search(normalized):
                return NameVerdict(valid=False, reason="Garbage pattern")

        if len(_MULTI_SPECIAL.findall(normalized)) > 2:
            return NameVerdict(valid=False, reason="Too many special characters")

        if self.is_known_name(candidate):
            return NameVerdict(valid=True, reason="Known enslaved name pattern", confidence=0.9)

        if re.fullmatch(r"[A-Z][a-z]+ [A-Z][a-z]+", candidate):
            return NameVerdict(valid=True, reason="Standard First Last format", confidence=0.85)

        if re.fullmatch(r"[A-Z][a-z]+", candidate):
            return NameVerdict(valid=True, reason="Single proper noun", confidence=0.7)

        return NameVerdict(valid=True, reason="Passes all checks", confidence=0.6)

    def is_valid(self, name: Optional[str]) -> bool:
        return self.validate(name).valid
