"""Study/subject metadata stored in the device annotation strips.

Metadata travels as a URL-encoded ``key=value&...`` string using short keys
(``_c``, ``_sc``, ...) so that it fits into fourteen 32-character strips.
"""

from __future__ import annotations

from typing import Dict, Mapping
from urllib.parse import parse_qsl, urlencode

from .config import MAX_METADATA_LENGTH, METADATA_STRIP_COUNT, METADATA_STRIP_SIZE
from .core.errors import ConfigurationError

__all__ = [
    "METADATA_KEYS",
    "decode_metadata",
    "encode_metadata",
    "metadata_strips",
]

METADATA_KEYS: Dict[str, str] = {
    "_c": "StudyCentre",
    "_s": "StudyCode",
    "_i": "StudyInvestigator",
    "_x": "StudyExerciseType",
    "_so": "StudyOperator",
    "_n": "StudyNotes",
    "_p": "SubjectSite",
    "_sc": "SubjectCode",
    "_se": "SubjectSex",
    "_h": "SubjectHeight",
    "_w": "SubjectWeight",
    "_ha": "SubjectHandedness",
    "_sn": "SubjectNotes",
}

_SHORT_KEYS = {name: short for short, name in METADATA_KEYS.items()}


def encode_metadata(values: Mapping[str, object]) -> str:
    """Encode a mapping keyed by long or short names into the annotation string.

    Empty values are omitted; unknown keys are passed through unchanged.

    Raises:
        ConfigurationError: If the encoded text does not fit the annotation strips.
    """
    pairs = []
    for key, value in values.items():
        if value is None or value == "":
            continue
        pairs.append((_SHORT_KEYS.get(key, key), str(value)))
    text = urlencode(pairs)
    if len(text) > MAX_METADATA_LENGTH:
        raise ConfigurationError(
            f"Metadata too long: {len(text)} characters (maximum {MAX_METADATA_LENGTH})"
        )
    return text


def decode_metadata(text: str) -> Dict[str, str]:
    """Decode the annotation string, expanding the known short keys."""
    text = text.strip().lstrip("?")
    return {
        METADATA_KEYS.get(key, key): value
        for key, value in parse_qsl(text, keep_blank_values=True)
    }


def metadata_strips(metadata: str) -> list[str]:
    """Split metadata into the fixed number of 32-character strips; unused strips are empty."""
    if len(metadata) > MAX_METADATA_LENGTH:
        raise ConfigurationError(
            f"Metadata too long: {len(metadata)} characters "
            f"(maximum {MAX_METADATA_LENGTH})"
        )
    return [
        metadata[index * METADATA_STRIP_SIZE : (index + 1) * METADATA_STRIP_SIZE]
        for index in range(METADATA_STRIP_COUNT)
    ]
