"""
Narrative Extractor - pulls slaveholders, enslaved persons, transactions, dates and
ownership relationships out of prose (wills, histories, biographical sketches).

Pipeline:
1. Sentence segmentation
2. Relevance filter (keyword categories)
3. Entity, transaction and date extraction over relevant sentences
4. Optional target-name pass
5. Relationship building
6. Deduplication
7. Confidence aggregation

All keyword lists and regexes come from the versioned heuristics file.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from archivist.models.extraction import (
    ExtractionType, NarrativePerson, NarrativeResult, NarrativeStatistics, PersonType,
    Relationship, Row, TargetNameHit, Transaction
)
from archivist.rules import HeuristicRules, load_rules
from archivist.utils.helper import normalize_whitespace
from archivist.utils.logger import get_logger
from archivist.utils.name_validator import NameValidator

logger = get_logger(__name__)

TITLES = ("Mr.", "Mrs.", "Col.", "Gen.", "Dr.")
_ABBREVIATIONS = {"mr", "mrs", "dr", "col", "gen", "capt", "rev", "jr", "sr", "st", "esq", "co", "no", "vol"}
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])[\"')\]]*\s+(?=[\"'(\[]?[A-Z0-9])")
_SUFFIX = re.compile(r"(?:Jr\.|Sr\.|III|II|IV|V)$")
_SLAVE_COUNT = re.compile(r"(\d+)\s+(?i:slaves?)")
_LIST_SPLIT = re.compile(r"\s*,\s*(?:and\s+)?|\s+and\s+")

WINDOW = 200
MAX_COUNT_EXPANSION = 500
RELATIONSHIP_CONFIDENCE = 0.6
# Narrative-level term on top of the sentence and entity terms
RELATIONSHIP_BONUS = 0.05


@dataclass
class Sentence:
    index: int
    text: str
    categories: List[str] = field(default_factory=list)


class NarrativeExtractor:

    def __init__(self, rules: Optional[HeuristicRules] = None):
        self.rules = rules or load_rules()
        self.validator = NameValidator(self.rules)

    # ==================== Segmentation / relevance ====================

    def segment(self, text: str) -> List[str]:
        """Split prose into sentences, keeping honorifics and initials attached."""
        flat = normalize_whitespace(text)
        if not flat:
            return []

        pieces = _SENTENCE_BREAK.split(flat)
        sentences: List[str] = []
        for piece in pieces:
            if sentences and self._ends_with_abbreviation(sentences[-1]):
                sentences[-1] = f"{sentences[-1]} {piece}"
            else:
                sentences.append(piece)
        return [s.strip() for s in sentences if s.strip()]

    @staticmethod
    def _ends_with_abbreviation(sentence: str) -> bool:
        last = sentence.rstrip().split(" ")[-1].rstrip(".").lower()
        return last in _ABBREVIATIONS or (len(last) == 1 and last.isalpha())

    def categorize(self, sentence: str) -> List[str]:
        return [cat for cat, pattern in self.rules.keyword_patterns.items() if pattern.search(sentence)]

    # ==================== Public API ====================

    def extract(self, text: str, target_names: Optional[Sequence[str]] = None) -> NarrativeResult:
        """
        Extract entities and relations from narrative text.

        Args:
            text: Prose text (OCR or transcription)
            target_names: Names supplied by human context to look for explicitly

        Returns:
            NarrativeResult with entities, transactions, relationships and confidence
        """
        result = NarrativeResult()
        if not text or not text.strip():
            return result

        sentences = self.segment(text)
        relevant: List[Sentence] = []
        for i, s in enumerate(sentences):
            categories = self.categorize(s)
            if categories:
                relevant.append(Sentence(index=i, text=s, categories=categories))

        logger.info(f"Narrative: {len(relevant)}/{len(sentences)} relevant sentences")

        slaveholders: List[NarrativePerson] = []
        enslaved: List[NarrativePerson] = []
        dates: List[str] = []
        for sentence in relevant:
            slaveholders.extend(self.extract_slaveholders(sentence))
            enslaved.extend(self.extract_enslaved(sentence.text))
            transaction = self.extract_transaction(sentence.text)
            if transaction is not None:
                result.transactions.append(transaction)
            for d in self.extract_dates(sentence.text):
                if d not in dates:
                    dates.append(d)

        if target_names:
            result.target_hits = self.find_target_names(text, target_names)

        result.slaveholders = self.deduplicate(slaveholders)
        result.enslaved_persons = self.deduplicate(enslaved)
        result.dates = dates
        result.relationships = self.build_relationships(result, sentences, relevant)

        for person in result.enslaved_persons:
            owner = next(
                (r.slaveholder for r in result.relationships if r.enslaved.lower() == person.name.lower()),
                None
            )
            person.owner = owner

        result.statistics = NarrativeStatistics(
            total_sentences=len(sentences),
            relevant_sentences=len(relevant),
            slaveholders=len(result.slaveholders),
            enslaved_persons=len(result.enslaved_persons),
            transactions=len(result.transactions),
            relationships=len(result.relationships),
        )
        result.confidence = self.aggregate_confidence(result, len(relevant))

        logger.info(
            f"Narrative extraction complete: {len(result.slaveholders)} slaveholders, "
            f"{len(result.enslaved_persons)} enslaved, {len(result.transactions)} transactions, "
            f"confidence {result.confidence:.2f}"
        )
        return result

    # ==================== Entities ====================

    def extract_slaveholders(self, sentence: Sentence) -> List[NarrativePerson]:
        found = []
        text = sentence.text
        in_ownership_context = "ownership" in sentence.categories
        for pattern in self.rules.slaveholder_patterns:
            for match in pattern.finditer(text):
                raw = match.group(1).strip()
                is_title = raw.startswith(TITLES)
                if is_title and not in_ownership_context:
                    continue

                name = self._strip_title(raw) if is_title else raw
                if not self._is_slaveholder_name(name):
                    continue

                count_match = _SLAVE_COUNT.search(match.group(0))
                start = max(0, match.start() - 20)
                found.append(NarrativePerson(
                    name=name,
                    person_type=PersonType.SLAVEHOLDER,
                    slave_count=int(count_match.group(1)) if count_match else None,
                    contexts=[text[start:match.end() + 20]],
                    confidence=self.name_confidence(name, text),
                ))
        return found

    @staticmethod
    def _strip_title(raw: str) -> str:
        """'Col. Edward Lloyd' -> 'Edward Lloyd'; a lone surname keeps its title ('Col. Lloyd')."""
        parts = raw.split()
        return " ".join(parts[1:]) if len(parts) >= 3 else raw

    def _is_slaveholder_name(self, name: str) -> bool:
        parts = name.split()
        # Two tokens are required; single surnames are too ambiguous
        if len(parts) < 2:
            return False
        if parts[0].lower().rstrip(".") in self.rules.slaveholder_first_word_rejects:
            return False
        if "\n" in name or (name == name.upper() and len(name) > 3):
            return False
        return self.validator.is_valid(name)

    def extract_enslaved(self, text: str) -> List[NarrativePerson]:
        found = []
        candidates = []
        for pattern in self.rules.enslaved_patterns:
            for match in pattern.finditer(text):
                candidates.append((match.group(1), match.start(), match.end()))
        for pattern in self.rules.enslaved_list_patterns:
            for match in pattern.finditer(text):
                offset = match.start(1)
                for part in _LIST_SPLIT.split(match.group(1)):
                    part = part.strip()
                    if part:
                        pos = text.find(part, offset)
                        candidates.append((part, pos if pos >= 0 else match.start(1), match.end()))

        for name, start, end in candidates:
            name = name.strip()
            if not re.fullmatch(r"[A-Z][a-z]+", name) or len(name) < 3:
                continue
            if name.lower() in self.rules.enslaved_stopwords:
                continue
            if not self.validator.is_valid(name):
                continue
            surrounding = text[max(0, start - 50):end + 50]
            found.append(NarrativePerson(
                name=name,
                person_type=PersonType.ENSLAVED,
                age=self.extract_age(surrounding),
                gender=self.extract_gender(surrounding),
                contexts=[surrounding],
                confidence=0.7,
            ))
        return found

    def name_confidence(self, name: str, context: str) -> float:
        confidence = 0.5
        if any(t in context for t in TITLES):
            confidence += 0.2
        if len(name.split()) >= 2:
            confidence += 0.15
        if _SUFFIX.search(name):
            confidence += 0.1
        return min(confidence, 0.95)

    # ==================== Transactions / dates / money ====================

    def extract_transaction(self, text: str) -> Optional[Transaction]:
        """The first matching transaction type (in rule order) for a sentence."""
        lower = text.lower()
        for kind, keywords in self.rules.transaction_types:
            for keyword in keywords:
                match = re.search(rf"\b{re.escape(keyword)}", lower)
                if match:
                    half = WINDOW // 2
                    window = text[max(0, match.start() - half):match.start() + half]
                    return Transaction(
                        kind=kind,
                        context=window,
                        dates=self.extract_dates(window),
                        amounts=self.extract_money(window),
                    )
        return None

    def extract_dates(self, text: str) -> List[str]:
        dates: List[str] = []
        for key in ("full", "month_year", "year"):
            for match in self.rules.date_patterns[key].finditer(text):
                value = match.group(0)
                if not any(value in d for d in dates):
                    dates.append(value)
        return dates

    def extract_money(self, text: str) -> List[str]:
        return [m.group(0).strip() for m in self.rules.money_pattern.finditer(text)]

    def extract_age(self, text: str) -> Optional[str]:
        match = self.rules.age_pattern.search(text)
        return match.group(1) if match else None

    @staticmethod
    def extract_gender(text: str) -> Optional[str]:
        lower = text.lower()
        if re.search(r"\b(?:female|woman|girl)\b", lower):
            return "female"
        if re.search(r"\b(?:male|man|boy)\b", lower):
            return "male"
        return None

    # ==================== Target names ====================

    def find_target_names(self, text: str, target_names: Sequence[str]) -> List[TargetNameHit]:
        hits = []
        lower = text.lower()
        half = WINDOW // 2
        for target in target_names:
            target_lower = target.lower().strip()
            if not target_lower:
                continue
            index = lower.find(target_lower)
            while index != -1:
                window = text[max(0, index - half):index + len(target) + half]
                hits.append(TargetNameHit(name=target, context=window, role=self.determine_role(window)))
                index = lower.find(target_lower, index + len(target_lower))
        return hits

    def determine_role(self, context: str) -> str:
        lower = context.lower()
        holder = sum(1 for ind in self.rules.role_indicators["slaveholder"] if ind in lower)
        enslaved = sum(1 for ind in self.rules.role_indicators["enslaved"] if ind in lower)
        if holder > enslaved:
            return "slaveholder"
        if enslaved > holder:
            return "enslaved"
        return "unknown"

    # ==================== Relationships / dedup / confidence ====================

    def build_relationships(
            self,
            result: NarrativeResult,
            sentences: Sequence[str],
            relevant: Sequence[Sentence]
    ) -> List[Relationship]:
        """
        Pair slaveholders with enslaved persons named in the same relevant sentence.
        A sentence that names enslaved persons but no slaveholder and opens with a
        pronoun ("He freed ...") refers to the slaveholder named in the sentence
        immediately before it.
        """
        relationships: List[Relationship] = []
        seen = set()

        def add(holder: str, person: str, evidence: str) -> None:
            key = (holder.lower(), person.lower())
            if key in seen:
                return
            seen.add(key)
            relationships.append(Relationship(
                slaveholder=holder, enslaved=person, confidence=RELATIONSHIP_CONFIDENCE, evidence=evidence
            ))

        for sentence in relevant:
            lower = sentence.text.lower()
            named_enslaved = [p for p in result.enslaved_persons if self._mentions(lower, p.name)]
            if not named_enslaved:
                continue

            holders = [h for h in result.slaveholders if self._mentions(lower, h.name)]
            if not holders and sentence.index > 0 and self._has_pronoun(lower):
                previous = sentences[sentence.index - 1].lower()
                holders = [h for h in result.slaveholders if self._mentions(previous, h.name)][-1:]

            for holder in holders:
                for person in named_enslaved:
                    add(holder.name, person.name, sentence.text)

        return relationships

    @staticmethod
    def _mentions(lower_text: str, name: str) -> bool:
        return re.search(rf"\b{re.escape(name.lower())}\b", lower_text) is not None

    def _has_pronoun(self, lower_text: str) -> bool:
        return any(re.search(rf"\b{p}\b", lower_text) for p in self.rules.pronouns)

    @staticmethod
    def deduplicate(people: Sequence[NarrativePerson]) -> List[NarrativePerson]:
        """Case-insensitive by name; keep max confidence and union the contexts."""
        merged: Dict[str, NarrativePerson] = {}
        for person in people:
            key = person.name.lower()
            if key not in merged:
                merged[key] = person.model_copy(deep=True)
                continue
            existing = merged[key]
            existing.confidence = max(existing.confidence, person.confidence)
            for ctx in person.contexts:
                if ctx not in existing.contexts:
                    existing.contexts.append(ctx)
            existing.slave_count = existing.slave_count or person.slave_count
            existing.age = existing.age or person.age
            existing.gender = existing.gender or person.gender
        return list(merged.values())

    @staticmethod
    def aggregate_confidence(result: NarrativeResult, relevant_count: int) -> float:
        if relevant_count == 0:
            return 0.0
        confidence = 0.3 + min(relevant_count / 50, 0.3)
        if result.slaveholders:
            confidence += 0.15
        if result.enslaved_persons:
            confidence += 0.15
        if result.transactions:
            confidence += 0.1
        if result.relationships:
            confidence += RELATIONSHIP_BONUS
        return round(min(confidence, 0.95), 4)

    # ==================== Row format ====================

    def to_rows(
            self,
            result: NarrativeResult,
            extraction_type: ExtractionType = ExtractionType.NARRATIVE,
            expand_counts: bool = False
    ) -> List[Row]:
        """
        Convert a narrative result into Rows.

        Enslaved persons become rows with an 'Enslaved Name' column; slaveholders
        become slaveholder rows. With expand_counts, a slaveholder's slave count
        is expanded into suspected 'table-count' rows.
        """
        rows: List[Row] = []
        first_date = result.dates[0] if result.dates else ""

        for person in result.enslaved_persons:
            context = person.contexts[0] if person.contexts else ""
            rows.append(Row(
                row_index=len(rows),
                columns={
                    "Enslaved Name": person.name,
                    "Sex": person.gender or "",
                    "Age": person.age or "",
                    "Owner/Slaveholder": person.owner or "",
                    "Date": first_date,
                    "Source Context": context[:200],
                },
                confidence=person.confidence,
                raw_text=context,
                extraction_type=extraction_type,
                person_type=PersonType.ENSLAVED,
                name_column="Enslaved Name",
            ))

        for holder in result.slaveholders:
            context = holder.contexts[0] if holder.contexts else ""
            rows.append(Row(
                row_index=len(rows),
                columns={
                    "Owner/Slaveholder": holder.name,
                    "Slave Count": str(holder.slave_count) if holder.slave_count else "",
                    "Date": first_date,
                    "Source Context": context[:200],
                },
                confidence=holder.confidence,
                raw_text=context,
                extraction_type=extraction_type,
                person_type=PersonType.SLAVEHOLDER,
                name_column="Owner/Slaveholder",
            ))

            if expand_counts and holder.slave_count:
                total = min(holder.slave_count, MAX_COUNT_EXPANSION)
                for i in range(1, total + 1):
                    rows.append(Row(
                        row_index=len(rows),
                        columns={
                            "Enslaved Name": f"[Unknown - {i} of {holder.slave_count}]",
                            "Owner/Slaveholder": holder.name,
                            "Source Context": f"Suspected enslaved person from slave count of {holder.name}",
                        },
                        confidence=round(holder.confidence * 0.8, 4),
                        raw_text=f"{holder.name} slave {i} of {holder.slave_count}",
                        extraction_type=ExtractionType.TABLE_COUNT,
                        person_type=PersonType.ENSLAVED,
                        name_column="Enslaved Name",
                    ))

        return rows
