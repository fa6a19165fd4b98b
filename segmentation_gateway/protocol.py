"""
protocol.py - Parse the anonymisation protocol from configuration.

The configuration maps a method name to the DICOM keywords it applies to:

    keep:   [Modality, Rows, Columns, ...]
    hash:   [StudyInstanceUID, SeriesInstanceUID, ...]
    random: [SeriesDate, SeriesTime, ...]

The parsed protocol is identified by a UUID.  Hashes are keyed on that id,
so the id must change whenever the set of transforms changes; it is the
contract between outbound anonymisation and inbound deanonymisation.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Union

from pydicom.tag import BaseTag

from segmentation_gateway.errors import (
    ConflictingMethodError,
    EmptyPolicyError,
    InvalidMethodError,
)
from segmentation_gateway.tags import (
    DEFAULT_REGISTRY,
    AnonymisationMethod,
    TagAnonymisation,
    TagRegistry,
)

logger = logging.getLogger(__name__)

# Protocol id used by the segmentation service.  Change it together with
# the protocol in config.yaml.
SEGMENTATION_PROTOCOL_ID = uuid.UUID("f336816b-4de8-4633-9056-fbe0fe007a03")

METHOD_NAMES: dict[str, AnonymisationMethod] = {
    "KEEP": AnonymisationMethod.KEEP,
    "HASH": AnonymisationMethod.HASH,
    "RANDOM": AnonymisationMethod.RANDOMISE_DATE_TIME,
}


@dataclass(frozen=True)
class AnonymisationProtocol:
    """A versioned, non-empty set of (tag, method) pairs."""
    protocol_id: uuid.UUID
    tags: tuple[TagAnonymisation, ...]

    def __post_init__(self):
        if not self.tags:
            raise EmptyPolicyError()

    def method_for(self, tag: BaseTag) -> Optional[AnonymisationMethod]:
        for entry in self.tags:
            if entry.tag == tag:
                return entry.method
        return None

    def hashed_tags(self) -> tuple[BaseTag, ...]:
        return tuple(e.tag for e in self.tags if e.method is AnonymisationMethod.HASH)

    def __len__(self) -> int:
        return len(self.tags)


def parse_method(name: str) -> AnonymisationMethod:
    try:
        return METHOD_NAMES[name.upper()]
    except (KeyError, AttributeError):
        raise InvalidMethodError(name) from None


def parse_protocol(
    config: Mapping[str, Iterable[str]],
    protocol_id: Union[uuid.UUID, str] = SEGMENTATION_PROTOCOL_ID,
    registry: TagRegistry = DEFAULT_REGISTRY,
) -> AnonymisationProtocol:
    """
    Turn a ``{method name: [keyword, ...]}`` mapping into a protocol.

    Raises
    ------
    InvalidMethodError
        A method name is not one of KEEP / HASH / RANDOM (any case).
    UnknownFieldError
        A keyword is not in *registry*.
    ConflictingMethodError
        The same keyword appears under two different methods.
    EmptyPolicyError
        No tags at all were listed.
    """
    if not isinstance(protocol_id, uuid.UUID):
        protocol_id = uuid.UUID(str(protocol_id))

    parsed: dict[BaseTag, TagAnonymisation] = {}
    for method_name, keywords in config.items():
        method = parse_method(method_name)
        for keyword in keywords or ():
            tag = registry.resolve(keyword)
            existing = parsed.get(tag)
            if existing is not None and existing.method is not method:
                raise ConflictingMethodError(keyword, existing.method.value, method.value)
            parsed.setdefault(tag, TagAnonymisation(tag=tag, method=method))

    if not parsed:
        raise EmptyPolicyError()

    logger.debug("Parsed anonymisation protocol %s with %d tags", protocol_id, len(parsed))
    return AnonymisationProtocol(protocol_id=protocol_id, tags=tuple(parsed.values()))


def protocol_from_config(config: Mapping[str, Any]) -> AnonymisationProtocol:
    """Build the service protocol from the ``anonymisation`` config section."""
    section = config["anonymisation"]
    return parse_protocol(section.get("protocol") or {}, section["protocol_id"])
