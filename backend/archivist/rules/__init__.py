"""
Versioned heuristic catalogues.

The keyword lists, stopwords, name lists and extraction regexes live in
``heuristics_<version>.yaml`` next to this module. ``load_rules()`` compiles a
version once per process and hands out the same read-only object afterwards.
"""
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Pattern, Tuple

import yaml

from archivist.core.config import settings
from archivist.utils.logger import get_logger

logger = get_logger(__name__)

RULES_DIR = Path(__file__).resolve().parent


@dataclass(frozen=True)
class NameValidatorRules:
    min_length: int
    max_length: int
    verb_endings: FrozenSet[str]
    stopwords: FrozenSet[str]
    known_names: FrozenSet[str]
    garbage_patterns: Tuple[Pattern, ...]


@dataclass(frozen=True)
class HeuristicRules:
    """Compiled view of one rules file."""
    version: str

    # Table parsing
    ditto_tokens: FrozenSet[str]
    page_number_pattern: Pattern
    separator_pattern: Pattern
    noise_patterns: Tuple[Pattern, ...]
    header_tokens: FrozenSet[str]
    header_types: Tuple[Tuple[str, str], ...]
    type_patterns: Dict[str, Tuple[Pattern, ...]]
    value_types: Dict[str, Pattern]
    gender_values: Dict[str, FrozenSet[str]]

    # Owner candidates
    owner_label_patterns: Tuple[Pattern, ...]
    owner_candidate_shape: Pattern
    owner_candidate_reject: Pattern

    # Narrative
    keywords: Dict[str, Tuple[str, ...]]
    keyword_patterns: Dict[str, Pattern]
    slaveholder_patterns: Tuple[Pattern, ...]
    enslaved_patterns: Tuple[Pattern, ...]
    enslaved_list_patterns: Tuple[Pattern, ...]
    enslaved_stopwords: FrozenSet[str]
    slaveholder_first_word_rejects: FrozenSet[str]
    transaction_types: Tuple[Tuple[str, Tuple[str, ...]], ...]
    pronouns: FrozenSet[str]
    role_indicators: Dict[str, Tuple[str, ...]]
    date_patterns: Dict[str, Pattern]
    money_pattern: Pattern
    age_pattern: Pattern

    name_validator: NameValidatorRules = field(repr=False)

    def is_ditto(self, token: Optional[str]) -> bool:
        if token is None:
            return False
        return token.strip().lower() in self.ditto_tokens


def _expand(pattern: str, fragments: Dict[str, str]) -> str:
    for key, value in fragments.items():
        pattern = pattern.replace("{" + key + "}", value)
    return pattern


def _compile_all(patterns: List[str], fragments: Optional[Dict[str, str]] = None) -> Tuple[Pattern, ...]:
    return tuple(re.compile(_expand(p, fragments or {})) for p in patterns)


def _keyword_pattern(words: List[str]) -> Pattern:
    """Word-start match for any of the keywords ('slave' also hits 'slaves')."""
    alternatives = "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)


def _build(raw: Dict) -> HeuristicRules:
    noise = raw["noise"]
    fragments = raw["name_fragments"]
    nv = raw["name_validator"]

    stopwords = set()
    for key in ("common_words", "form_headers", "document_titles", "column_headers"):
        stopwords.update(w.lower() for w in nv[key])

    keywords = {cat: tuple(words) for cat, words in raw["keywords"].items()}

    return HeuristicRules(
        version=str(raw["version"]),
        ditto_tokens=frozenset(t.lower() for t in raw["ditto_tokens"]),
        page_number_pattern=re.compile(noise["page_number"], re.IGNORECASE),
        separator_pattern=re.compile(noise["separator"]),
        noise_patterns=_compile_all(noise["phrases"]),
        header_tokens=frozenset(t.lower() for t in raw["header_tokens"]),
        header_types=tuple((k.lower(), v) for k, v in raw["header_types"]),
        type_patterns={k: _compile_all(v) for k, v in raw["type_patterns"].items()},
        value_types={k: re.compile(v) for k, v in raw["value_types"].items()},
        gender_values={k: frozenset(v) for k, v in raw["gender_values"].items()},
        owner_label_patterns=_compile_all(raw["owner_label_patterns"]),
        owner_candidate_shape=re.compile(raw["owner_candidate_shape"]),
        owner_candidate_reject=re.compile(raw["owner_candidate_reject"]),
        keywords=keywords,
        keyword_patterns={cat: _keyword_pattern(list(words)) for cat, words in keywords.items()},
        slaveholder_patterns=_compile_all(raw["slaveholder_patterns"], fragments),
        enslaved_patterns=_compile_all(raw["enslaved_patterns"]),
        enslaved_list_patterns=_compile_all(raw["enslaved_list_patterns"]),
        enslaved_stopwords=frozenset(raw["enslaved_stopwords"]),
        slaveholder_first_word_rejects=frozenset(raw["slaveholder_first_word_rejects"]),
        transaction_types=tuple((kind, tuple(words)) for kind, words in raw["transaction_types"].items()),
        pronouns=frozenset(raw["pronouns"]),
        role_indicators={k: tuple(v) for k, v in raw["role_indicators"].items()},
        date_patterns={k: re.compile(v) for k, v in raw["dates"].items()},
        money_pattern=re.compile(raw["money"], re.IGNORECASE),
        age_pattern=re.compile(raw["age"]),
        name_validator=NameValidatorRules(
            min_length=int(nv["min_length"]),
            max_length=int(nv["max_length"]),
            verb_endings=frozenset(nv["verb_endings"]),
            stopwords=frozenset(stopwords),
            known_names=frozenset(n.lower() for n in nv["known_names"]),
            garbage_patterns=_compile_all(nv["garbage_patterns"]),
        ),
    )


@lru_cache(maxsize=None)
def load_rules(version: Optional[str] = None) -> HeuristicRules:
    """
    Load and compile a rules file.

    Args:
        version: Rules version (defaults to settings.RULES_VERSION)

    Returns:
        Compiled HeuristicRules, shared read-only across jobs
    """
    version = version or settings.RULES_VERSION
    path = RULES_DIR / f"heuristics_{version}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"No heuristic rules for version '{version}' at {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    rules = _build(raw)
    logger.info(f"Loaded heuristic rules {rules.version} from {path.name}")
    return rules
