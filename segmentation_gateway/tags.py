"""
tags.py - DICOM tag registry and the small value types shared by the
anonymisation protocol, the engine and the deanonymiser.

Tag names in the configuration are DICOM keywords ("PatientID",
"StudyInstanceUID", ...).  They are resolved through a static keyword ->
tag table built once from pydicom's data dictionary, so an unknown name
is caught when the protocol is parsed rather than when a file is sent.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from pydicom.datadict import dictionary_VR, keyword_dict, keyword_for_tag
from pydicom.tag import BaseTag, Tag

from segmentation_gateway.errors import UnknownFieldError

logger = logging.getLogger(__name__)


class AnonymisationMethod(Enum):
    KEEP = "Keep"
    HASH = "Hash"
    RANDOMISE_DATE_TIME = "Random"


@dataclass(frozen=True)
class TagAnonymisation:
    """One (tag, method) pair of an anonymisation protocol."""
    tag: BaseTag
    method: AnonymisationMethod

    @property
    def keyword(self) -> str:
        return tag_keyword(self.tag)


@dataclass(frozen=True)
class TagReplacement:
    """A caller-supplied value that wins over anything restored from references."""
    tag: BaseTag
    value: Any

    @classmethod
    def from_keyword(cls, keyword: str, value: Any) -> "TagReplacement":
        return cls(DEFAULT_REGISTRY.resolve(keyword), value)


class TagRegistry:
    """Closed keyword -> tag lookup table."""

    def __init__(self, entries: Mapping[str, int]):
        self._tags: dict[str, BaseTag] = {name: Tag(value) for name, value in entries.items()}

    def resolve(self, keyword: str) -> BaseTag:
        try:
            return self._tags[keyword]
        except KeyError:
            raise UnknownFieldError(keyword) from None

    def resolve_all(self, keywords: Iterable[str]) -> tuple[BaseTag, ...]:
        return tuple(self.resolve(k) for k in keywords)

    def __contains__(self, keyword: object) -> bool:
        return keyword in self._tags

    def __len__(self) -> int:
        return len(self._tags)


def tag_keyword(tag: BaseTag) -> str:
    """Keyword for log messages; falls back to the (gggg,eeee) form."""
    return keyword_for_tag(tag) or str(tag)


def tag_vr(tag: BaseTag) -> str:
    """Dictionary VR of *tag*, used when a tag has to be added to a dataset."""
    try:
        return dictionary_VR(tag)
    except KeyError:
        return "UN"


# Built once at import: every public keyword known to pydicom.
DEFAULT_REGISTRY = TagRegistry(keyword_dict)

# Tags the service never needs.  They are removed before upload and copied
# back verbatim from the first reference dataset after the result arrives.
TOP_LEVEL_REPLACEMENT_KEYWORDS: tuple[str, ...] = (
    # Patient module
    "PatientID",
    "PatientName",
    "PatientBirthDate",
    "PatientSex",
    # Study module
    "StudyDate",
    "StudyTime",
    "ReferringPhysicianName",
    "StudyID",
    "AccessionNumber",
    "StudyDescription",
)

TOP_LEVEL_REPLACEMENTS: tuple[BaseTag, ...] = DEFAULT_REGISTRY.resolve_all(
    TOP_LEVEL_REPLACEMENT_KEYWORDS
)
