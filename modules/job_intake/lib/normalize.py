"""
Validation and canonicalization of raw candidate records.

Producers (browser extensions, scrapers, manual imports) hand us loosely typed
dicts. `normalize_posting` checks every field, collects *all* problems into a
single ValidationError, and returns the canonical JobPosting shape the store
expects. Unknown keys are dropped without complaint.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

from .models import LOCATION_NOT_SPECIFIED, SOURCES
from .utils import clamp

# Length bounds per text field
MAX_LEN = {
    "company": 200,
    "title": 300,
    "location": 200,
    "skill": 100,
    "salary": 100,
    "equity": 100,
    "job_type": 50,
}

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")


class ValidationError(ValueError):
    """Raised when a record violates one or more constraints; carries them all."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


def normalize_posting(raw: Any) -> dict[str, Any]:
    """
    Validate `raw` and return the canonical posting dict:

        company, title, location, source, skills, job_url,
        salary, equity, job_type, remote, raw_data

    Raises:
        ValidationError listing every violated rule.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError([f"job must be an object (got {type(raw).__name__})"])

    errors: list[str] = []

    company = _required_text(raw, "company", errors)
    title = _required_text(raw, "title", errors)
    location = _optional_text(raw, "location", errors) or LOCATION_NOT_SPECIFIED
    source = _source(raw.get("source"), errors)
    job_url = _job_url(raw.get("job_url"), errors)
    skills = _skills(raw.get("skills"), errors)
    salary = _optional_text(raw, "salary", errors)
    equity = _optional_text(raw, "equity", errors)
    job_type = _optional_text(raw, "job_type", errors)
    remote = _remote(raw.get("remote"), errors)

    raw_data = raw.get("raw_data")
    if raw_data is not None and not isinstance(raw_data, Mapping):
        errors.append('"raw_data" must be an object or null')

    if errors:
        raise ValidationError(errors)

    return {
        "company": company,
        "title": title,
        "location": location,
        "source": source,
        "skills": skills,
        "job_url": job_url,
        "salary": salary,
        "equity": equity,
        "job_type": job_type,
        "remote": remote,
        "raw_data": dict(raw_data) if raw_data is not None else None,
    }


def is_valid_uri(value: str) -> bool:
    """
    Absolute URI check: a scheme, then an authority or a path, no whitespace.
    """
    if not value or any(ch.isspace() for ch in value):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    if not parts.scheme or not _SCHEME_RE.match(parts.scheme):
        return False
    if parts.netloc:
        return True
    # scheme-only forms like "mailto:x@y" still need something after the colon
    return bool(parts.path)


# ---- Field rules -----------------------------------------------------------


def _required_text(raw: Mapping[str, Any], name: str, errors: list[str]) -> str:
    value = raw.get(name)
    if value is None:
        errors.append(f'"{name}" is required')
        return ""
    if not isinstance(value, str):
        errors.append(f'"{name}" must be a string')
        return ""
    text = clamp(value, MAX_LEN[name])
    if not text:
        errors.append(f'"{name}" is not allowed to be empty')
    return text


def _optional_text(raw: Mapping[str, Any], name: str, errors: list[str]) -> str | None:
    value = raw.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f'"{name}" must be a string')
        return None
    return clamp(value, MAX_LEN[name]) or None


def _source(value: Any, errors: list[str]) -> str:
    if value is None:
        errors.append('"source" is required')
        return ""
    if not isinstance(value, str):
        errors.append('"source" must be a string')
        return ""
    key = value.strip().lower()
    if key not in SOURCES:
        errors.append(f'"source" must be one of [{", ".join(SOURCES)}]')
    return key


def _job_url(value: Any, errors: list[str]) -> str:
    if value is None:
        errors.append('"job_url" is required')
        return ""
    if not isinstance(value, str):
        errors.append('"job_url" must be a string')
        return ""
    url = value.strip()
    if not url:
        errors.append('"job_url" is not allowed to be empty')
    elif not is_valid_uri(url):
        errors.append('"job_url" must be a valid uri')
    return url


def _skills(value: Any, errors: list[str]) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        errors.append('"skills" must be an array')
        return []
    out: list[str] = []
    seen: set[str] = set()
    for i, item in enumerate(value):
        if not isinstance(item, str):
            errors.append(f'"skills[{i}]" must be a string')
            continue
        tag = clamp(item, MAX_LEN["skill"])
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out


def _remote(value: Any, errors: list[str]) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    errors.append('"remote" must be a boolean or null')
    return None
