"""
anonymizer.py - Protocol-driven DICOM anonymisation.

Applies an AnonymisationProtocol to a copy of a pydicom Dataset before it
is sent to the segmentation service:

- KEEP     the element is left as it is.
- HASH     the value is replaced by an HMAC-SHA256 digest keyed on the
           protocol id.  The same value always gives the same digest under
           the same protocol, which is what lets deanonymizer.py match a
           digest in the service's output back to an original dataset.
- RANDOM   dates and times are moved by a random offset.  Not stable and
           not reversible.

Tags the protocol does not name pass through untouched: the protocol is
an allow-list of tags known to need handling, not a complete inventory.
Tags given as ``suppressed_tags`` (the top-level patient/study tags) are
deleted outright and restored from a reference dataset on the way back.

LIMITATIONS
-----------
- Does NOT handle burned-in annotations (text overlaid on pixel data).
- Digests are shaped to fit the element's VR; a hashed SH/CS/AE value
  keeps only 64 bits of the digest.
- Non-text VRs cannot hold a digest and are removed when listed as HASH.
"""

import copy
import hashlib
import hmac
import logging
import random
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from pydicom.dataelem import DataElement
from pydicom.dataset import Dataset
from pydicom.multival import MultiValue
from pydicom.tag import BaseTag

from segmentation_gateway.errors import EmptyPolicyError, NullInputError
from segmentation_gateway.protocol import AnonymisationProtocol
from segmentation_gateway.tags import AnonymisationMethod, tag_keyword

logger = logging.getLogger(__name__)

# Maximum value length per text VR (DICOM PS3.5 Table 6.2-1), capped at the
# 64 hex characters of a SHA-256 digest.
HASHABLE_VR_LENGTHS: dict[str, int] = {
    "AE": 16,
    "CS": 16,
    "SH": 16,
    "LO": 64,
    "PN": 64,
    "LT": 64,
    "ST": 64,
    "UC": 64,
    "UT": 64,
    "UR": 64,
}

# UUID-derived UID root (PS3.5 B.2): "2.25." + 128-bit integer.
UID_ROOT = "2.25."

# Dates under RANDOM move by up to this many days either way.
MAX_DATE_SHIFT_DAYS = 365


def value_text(value) -> str:
    """Canonical text form of an element value, used for hashing and matching."""
    if value is None:
        return ""
    if isinstance(value, (MultiValue, list, tuple)):
        return "\\".join(str(v) for v in value)
    return str(value)


def hash_value(text: str, vr: str, protocol_id: uuid.UUID) -> str:
    """
    Deterministic one-way digest of *text*, shaped to fit *vr*.

    Raises
    ------
    ValueError
        If *vr* cannot hold a digest (numeric, binary, date VRs).
    """
    digest = hmac.new(protocol_id.bytes, text.encode("utf-8"), hashlib.sha256).digest()
    if vr == "UI":
        return UID_ROOT + str(int.from_bytes(digest[:16], "big"))
    if vr in HASHABLE_VR_LENGTHS:
        return digest.hex().upper()[: HASHABLE_VR_LENGTHS[vr]]
    raise ValueError(f"VR {vr} cannot hold a hashed value")


def _shift_date(date_str: str, shift_days: int) -> str:
    try:
        date_obj = datetime.strptime(date_str[:8], "%Y%m%d")
    except ValueError:
        return ""
    return (date_obj + timedelta(days=shift_days)).strftime("%Y%m%d")


def _random_time(rng: random.Random) -> str:
    return f"{rng.randrange(24):02d}{rng.randrange(60):02d}{rng.randrange(60):02d}"


def randomise_date_time(text: str, vr: str, rng: random.Random) -> str:
    """Move a DA / TM / DT value by a random offset; unparsable values become empty."""
    if not text:
        return text
    if vr == "DA":
        return _shift_date(text, rng.randint(-MAX_DATE_SHIFT_DAYS, MAX_DATE_SHIFT_DAYS))
    if vr == "TM":
        return _random_time(rng)
    if vr == "DT":
        shifted = _shift_date(text, rng.randint(-MAX_DATE_SHIFT_DAYS, MAX_DATE_SHIFT_DAYS))
        return shifted + _random_time(rng) if shifted else ""
    raise ValueError(f"VR {vr} is not a date/time VR")


class AnonymisationEngine:
    """
    Applies one AnonymisationProtocol to datasets.

    The engine holds no per-dataset state, so one instance can be shared
    across threads and batches can be processed in any order.

    Parameters
    ----------
    protocol : AnonymisationProtocol
        The (tag, method) pairs to apply.
    suppressed_tags : iterable of BaseTag
        Top-level tags deleted from the output.
    rng : random.Random, optional
        Source of date/time offsets.  Pass a seeded instance for
        reproducible tests.
    """

    def __init__(
        self,
        protocol: AnonymisationProtocol,
        suppressed_tags: Iterable[BaseTag] = (),
        rng: Optional[random.Random] = None,
    ):
        if protocol is None:
            raise EmptyPolicyError("No anonymisation protocol was supplied")
        self.protocol = protocol
        self.suppressed_tags = tuple(suppressed_tags)
        self._methods = {entry.tag: entry.method for entry in protocol.tags}
        self._rng = rng or random.Random()

    @property
    def protocol_id(self) -> uuid.UUID:
        return self.protocol.protocol_id

    def anonymize(self, dataset: Dataset) -> Dataset:
        """
        Return an anonymised deep copy of *dataset*.

        Nested sequence items are processed as well, so a UID repeated in
        a referenced-series sequence gets the same digest as the top-level
        one.

        Raises
        ------
        NullInputError
            If *dataset* is None.
        """
        if dataset is None:
            raise NullInputError("dataset")

        result = copy.deepcopy(dataset)

        for tag in self.suppressed_tags:
            if tag in result:
                del result[tag]
                logger.debug("Suppressed tag: %s", tag_keyword(tag))

        result.walk(self._transform_element)

        # The file meta header repeats the SOP Instance UID.
        file_meta = getattr(result, "file_meta", None)
        if file_meta is not None and "MediaStorageSOPInstanceUID" in file_meta:
            if "SOPInstanceUID" in result:
                file_meta.MediaStorageSOPInstanceUID = result.SOPInstanceUID
        return result

    def anonymize_all(self, datasets: Iterable[Dataset]) -> list[Dataset]:
        if datasets is None:
            raise NullInputError("datasets")
        return [self.anonymize(ds) for ds in datasets]

    def digests(self, dataset: Dataset) -> list[tuple[BaseTag, str, DataElement]]:
        """
        List ``(tag, digest, original element)`` for every HASH element in
        *dataset*, nested sequences included, in walk order.

        The digest is exactly what anonymize() writes for that element, so
        it can be compared with a value found in an anonymised dataset.
        """
        if dataset is None:
            raise NullInputError("dataset")

        found: list[tuple[BaseTag, str, DataElement]] = []

        def collect(_: Dataset, elem: DataElement) -> None:
            if self._methods.get(elem.tag) is not AnonymisationMethod.HASH:
                return
            text = value_text(elem.value)
            if not text:
                return
            try:
                found.append((elem.tag, hash_value(text, str(elem.VR), self.protocol_id), elem))
            except ValueError:
                pass  # removed by anonymize(), nothing to match against

        dataset.walk(collect)
        return found

    def _transform_element(self, dataset: Dataset, elem: DataElement) -> None:
        method = self._methods.get(elem.tag)
        if method is None or method is AnonymisationMethod.KEEP:
            return

        if method is AnonymisationMethod.HASH:
            self._hash_element(dataset, elem)
        elif method is AnonymisationMethod.RANDOMISE_DATE_TIME:
            self._randomise_element(dataset, elem)

    def _hash_element(self, dataset: Dataset, elem: DataElement) -> None:
        text = value_text(elem.value)
        if not text:
            return
        try:
            elem.value = hash_value(text, str(elem.VR), self.protocol_id)
        except ValueError:
            logger.warning(
                "Tag %s has VR %s which cannot be hashed; removing it",
                tag_keyword(elem.tag), elem.VR,
            )
            del dataset[elem.tag]
            return
        logger.debug("Hashed tag: %s", tag_keyword(elem.tag))

    def _randomise_element(self, dataset: Dataset, elem: DataElement) -> None:
        try:
            if isinstance(elem.value, MultiValue):
                elem.value = [randomise_date_time(str(v), str(elem.VR), self._rng) for v in elem.value]
            else:
                elem.value = randomise_date_time(value_text(elem.value), str(elem.VR), self._rng)
        except ValueError:
            logger.warning(
                "Tag %s has VR %s which is not a date/time; removing it",
                tag_keyword(elem.tag), elem.VR,
            )
            del dataset[elem.tag]
            return
        logger.debug("Randomised tag: %s", tag_keyword(elem.tag))


def anonymize_dataset(
    dataset: Dataset,
    protocol: AnonymisationProtocol,
    suppressed_tags: Iterable[BaseTag] = (),
) -> Dataset:
    """
    Anonymise one dataset under *protocol* and return the new copy.

    Parameters
    ----------
    dataset : Dataset
        The pydicom Dataset to anonymise.  Not modified.
    protocol : AnonymisationProtocol
        Parsed protocol, see protocol.parse_protocol.
    suppressed_tags : iterable of BaseTag
        Top-level tags to delete from the copy.

    Returns
    -------
    Dataset
        The anonymised copy.
    """
    return AnonymisationEngine(protocol, suppressed_tags).anonymize(dataset)
