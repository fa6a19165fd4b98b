"""
deanonymizer.py - Restore patient identity in a segmentation result.

The service answers with a new dataset (an RT structure set) built from
the anonymised images it was sent.  Nothing reversible ever left the
gateway, so identity is rebuilt from the original images ("reference
datasets") in three steps, each allowed to overwrite the previous one:

1. Top-level restore: patient/study tags that were suppressed on the way
   out are copied verbatim from the first reference dataset.
2. Hash matching: every HASH tag of the protocol is recomputed for each
   reference dataset; where the digest equals a value in the result, the
   reference's original value is put back.  The first matching reference
   wins.  A digest with no match is left in place and reported, never
   raised: a partly restored result is still useful.
3. User replacements: caller-supplied values, applied unconditionally.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydicom.dataelem import DataElement
from pydicom.dataset import Dataset
from pydicom.tag import BaseTag

from segmentation_gateway.anonymizer import AnonymisationEngine, value_text
from segmentation_gateway.errors import EmptyReferenceSetError, MissingArgumentError
from segmentation_gateway.protocol import AnonymisationProtocol
from segmentation_gateway.tags import TagReplacement, tag_keyword, tag_vr

logger = logging.getLogger(__name__)


@dataclass
class RestoreReport:
    """Outcome of restoring one result dataset."""
    dataset: Dataset
    top_level_restored: list[BaseTag] = field(default_factory=list)
    hashes_restored: list[BaseTag] = field(default_factory=list)
    unmatched: list[BaseTag] = field(default_factory=list)
    user_replaced: list[BaseTag] = field(default_factory=list)

    @property
    def fully_restored(self) -> bool:
        return not self.unmatched


def _require(**arguments: Any) -> None:
    for name, value in arguments.items():
        if value is None:
            raise MissingArgumentError(name)


def set_tag_value(dataset: Dataset, tag: BaseTag, value: Any) -> None:
    """
    Set *tag* to *value*, adding the element with its dictionary VR if absent.

    Tags missing from the DICOM dictionary (private tags) are stored as UN,
    which only holds bytes, so text values are encoded first.
    """
    vr = str(dataset[tag].VR) if tag in dataset else tag_vr(tag)
    if vr == "UN" and isinstance(value, str):
        value = value.encode("utf-8")
    if tag in dataset:
        dataset[tag].value = value
    else:
        dataset.add_new(tag, vr, value)


def restore_top_level(dataset: Dataset, reference: Dataset, tags: Iterable[BaseTag]) -> list[BaseTag]:
    """Copy each of *tags* present in *reference* into *dataset* (add or replace)."""
    restored = []
    for tag in tags:
        if tag in reference:
            dataset[tag] = copy.deepcopy(reference[tag])
            restored.append(tag)
            logger.debug("Restored top-level tag: %s", tag_keyword(tag))
    return restored


def build_hash_lookup(
    reference_datasets: list[Dataset],
    engine: AnonymisationEngine,
) -> dict[BaseTag, dict[str, DataElement]]:
    """
    Map ``tag -> {digest: original element}`` over all references.

    References are visited in input order and the first one producing a
    digest keeps it, so duplicate underlying values resolve to the
    earliest reference.
    """
    lookup: dict[BaseTag, dict[str, DataElement]] = {}
    for reference in reference_datasets:
        for tag, digest, original in engine.digests(reference):
            lookup.setdefault(tag, {}).setdefault(digest, original)
    return lookup


def restore_dataset(
    dataset: Dataset,
    reference_datasets: Optional[Iterable[Dataset]],
    top_level_replacements: Optional[Iterable[BaseTag]],
    user_replacements: Optional[Iterable[TagReplacement]],
    protocol: AnonymisationProtocol,
) -> RestoreReport:
    """
    Deanonymise a copy of *dataset* and report what was restored.

    Parameters
    ----------
    dataset : Dataset
        Result dataset returned by the service.  Not modified.
    reference_datasets : iterable of Dataset
        The original (not anonymised) datasets the request was built from.
        The first one is the source for top-level tags.
    top_level_replacements : iterable of BaseTag
        Tags copied verbatim from the first reference.
    user_replacements : iterable of TagReplacement
        Final overrides; may be empty.
    protocol : AnonymisationProtocol
        The protocol the request was anonymised with.

    Raises
    ------
    MissingArgumentError
        Any argument is None.
    EmptyReferenceSetError
        *reference_datasets* is empty.
    """
    _require(
        dataset=dataset,
        reference_datasets=reference_datasets,
        user_replacements=user_replacements,
        top_level_replacements=top_level_replacements,
        protocol=protocol,
    )

    references = list(reference_datasets)
    if not references:
        raise EmptyReferenceSetError()

    result = copy.deepcopy(dataset)
    report = RestoreReport(dataset=result)

    # Step 1 - top-level tags from the first reference
    report.top_level_restored = restore_top_level(result, references[0], top_level_replacements)

    # Step 2 - hashed tags matched by re-anonymising the references
    if protocol.hashed_tags():
        lookup = build_hash_lookup(references, AnonymisationEngine(protocol))
        top_level = set(report.top_level_restored)

        def replace_hashed(ds: Dataset, elem: DataElement) -> None:
            if ds is result and elem.tag in top_level:
                return  # already holds the reference value
            candidates = lookup.get(elem.tag)
            if candidates is None:
                return
            text = value_text(elem.value)
            original = candidates.get(text)
            if original is not None:
                elem.value = copy.deepcopy(original.value)
                report.hashes_restored.append(elem.tag)
            elif text:
                report.unmatched.append(elem.tag)

        result.walk(replace_hashed)

        for tag in report.unmatched:
            logger.warning(
                "No reference dataset matches the hashed value of %s; leaving it anonymised",
                tag_keyword(tag),
            )

    # Step 3 - caller overrides win
    for replacement in user_replacements:
        set_tag_value(result, replacement.tag, replacement.value)
        report.user_replaced.append(replacement.tag)

    logger.info(
        "Deanonymised dataset: %d top-level, %d hashed, %d unmatched, %d user replacements",
        len(report.top_level_restored), len(report.hashes_restored),
        len(report.unmatched), len(report.user_replaced),
    )
    return report


def deanonymize_dataset(
    dataset: Dataset,
    reference_datasets: Iterable[Dataset],
    top_level_replacements: Iterable[BaseTag],
    user_replacements: Iterable[TagReplacement],
    protocol: AnonymisationProtocol,
) -> Dataset:
    """Same as restore_dataset() but return only the restored dataset."""
    return restore_dataset(
        dataset, reference_datasets, top_level_replacements, user_replacements, protocol
    ).dataset
