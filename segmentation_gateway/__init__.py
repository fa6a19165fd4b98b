"""segmentation_gateway - send DICOM to a remote segmentation service and back.

- protocol      parse the anonymisation protocol from configuration
- anonymizer    apply it to datasets before they leave
- deanonymizer  restore identity in the service's result
- client        submit / poll / ping the service

Example usage:
    from segmentation_gateway import ChannelData, SegmentationClient

    async with SegmentationClient.from_config() as client:
        handle, _ = await client.start_segmentation("prostate", [ChannelData("ct", datasets)])
        result = await client.wait_for_segmentation(handle, datasets)
"""

from segmentation_gateway.anonymizer import AnonymisationEngine, anonymize_dataset
from segmentation_gateway.archive import ChannelData
from segmentation_gateway.client import (
    Complete,
    InProgress,
    JobHandle,
    NotFound,
    SegmentationClient,
    TransportFailure,
)
from segmentation_gateway.deanonymizer import RestoreReport, deanonymize_dataset, restore_dataset
from segmentation_gateway.protocol import AnonymisationProtocol, parse_protocol
from segmentation_gateway.tags import (
    TOP_LEVEL_REPLACEMENTS,
    AnonymisationMethod,
    TagAnonymisation,
    TagReplacement,
)

__all__ = [
    "AnonymisationEngine",
    "AnonymisationMethod",
    "AnonymisationProtocol",
    "ChannelData",
    "Complete",
    "InProgress",
    "JobHandle",
    "NotFound",
    "RestoreReport",
    "SegmentationClient",
    "TOP_LEVEL_REPLACEMENTS",
    "TagAnonymisation",
    "TagReplacement",
    "TransportFailure",
    "anonymize_dataset",
    "deanonymize_dataset",
    "parse_protocol",
]
