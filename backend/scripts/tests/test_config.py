"""
Tests for configuration, the heuristic rules file and the name validator.
"""
import pytest
import yaml

from archivist.core.config import Settings, get_settings, settings
from archivist.rules import RULES_DIR, load_rules
from archivist.utils.name_validator import NameValidator


# ==================== Settings ====================

def test_defaults():
    assert get_settings() is settings
    assert settings.APP_NAME
    assert settings.API_V1_PREFIX == "/api/v1"
    assert settings.OCR_PRIMARY_ACCEPT_CONFIDENCE == 0.8
    assert settings.DATABASE_URL.startswith("sqlite:///")
    assert settings.DATABASE_URL.endswith("archivist.db")


def test_data_directories_exist():
    assert settings.DATA_DIR.exists()
    assert settings.UPLOAD_DIR.exists()
    assert settings.SCREENSHOT_DIR.exists()


def test_validation_reports_bad_values(tmp_path):
    custom = Settings(DATA_DIR=tmp_path, FETCH_MIN_DELAY=5, FETCH_MAX_DELAY=1, OCR_PRIMARY_ACCEPT_CONFIDENCE=1.5,
                      GOOGLE_VISION_API_KEY="key")
    errors = custom.validate_required_settings()

    assert "FETCH_MIN_DELAY must not exceed FETCH_MAX_DELAY" in errors
    assert "OCR_PRIMARY_ACCEPT_CONFIDENCE must be within (0, 1]" in errors
    assert not any("OCR back-end" in e for e in errors)


def test_vision_enabled_follows_key(tmp_path):
    assert Settings(DATA_DIR=tmp_path, GOOGLE_VISION_API_KEY="key").vision_enabled is True
    assert Settings(DATA_DIR=tmp_path, GOOGLE_VISION_API_KEY="").vision_enabled is False


# ==================== Rules ====================

def test_rules_are_loaded_once():
    rules = load_rules()

    assert rules.version == "v1"
    assert load_rules() is rules


def _leaves(node):
    if isinstance(node, dict):
        for value in node.values():
            yield from _leaves(value)
    elif isinstance(node, list):
        for value in node:
            yield from _leaves(value)
    else:
        yield node


def test_rules_file_catalogues_are_strings():
    # Unquoted yes/no/on in YAML load as booleans
    with open(RULES_DIR / "heuristics_v1.yaml", "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    raw["name_validator"].pop("min_length")
    raw["name_validator"].pop("max_length")

    non_strings = [leaf for leaf in _leaves(raw) if not isinstance(leaf, str)]

    assert non_strings == []


def test_common_words_include_boolean_lookalikes():
    rules = load_rules()

    assert {"on", "no", "yes"} <= rules.name_validator.stopwords
    assert "on" in rules.enslaved_stopwords
    assert all(isinstance(w, str) for w in rules.enslaved_stopwords)


def test_unknown_rules_version():
    with pytest.raises(FileNotFoundError):
        load_rules("v999")


@pytest.mark.parametrize("token, expected", [
    ('"', True),
    ("”", True),
    ("do.", True),
    ("Do", True),
    ("''", True),
    ("Dora", False),
    ("", False),
    (None, False),
])
def test_ditto_tokens(token, expected):
    assert load_rules().is_ditto(token) is expected


# ==================== Name validator ====================

@pytest.mark.parametrize("name, valid, reason", [
    ("Cuffee", True, "Known enslaved name pattern"),
    ("Robin Hood", True, "Standard First Last format"),
    ("Robin", True, "Single proper noun"),
    ("Schedule", False, "Stopword, header or title"),
    ("Female", False, "Stopword, header or title"),
    ("SLAVE", False, "All caps - likely header"),
    ("Tom was", False, "Ends in a verb"),
    ("Jo", False, "Too short"),
    ("john", False, "Does not start with a capital letter"),
    ("Contact www.example.org", False, "Garbage pattern"),
    ("", False, "Empty or invalid input"),
])
def test_name_validator(name, valid, reason):
    verdict = NameValidator(load_rules()).validate(name)

    assert verdict.valid is valid
    assert verdict.reason == reason
