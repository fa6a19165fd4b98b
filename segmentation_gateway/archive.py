"""
archive.py - Zip packaging of DICOM datasets for the segmentation API.

Upload body: one zip archive, one folder per input channel, one
``<index>.dcm`` entry per dataset:

    ct/0.dcm
    ct/1.dcm
    mr/0.dcm

Result body: a zip archive holding exactly one DICOM file.
"""

import logging
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Iterable

import pydicom
from pydicom.dataset import Dataset

from segmentation_gateway.errors import UnsupportedPayloadError

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 6


@dataclass
class ChannelData:
    """The datasets of one input channel of a model (e.g. "ct")."""
    channel_id: str
    datasets: list[Dataset] = field(default_factory=list)


def dataset_to_bytes(dataset: Dataset) -> bytes:
    """Serialise *dataset* with pydicom, keeping its transfer syntax if it has one."""
    buffer = BytesIO()
    file_meta = getattr(dataset, "file_meta", None)
    if file_meta is not None and "TransferSyntaxUID" in file_meta:
        pydicom.dcmwrite(buffer, dataset)
    else:
        pydicom.dcmwrite(buffer, dataset, implicit_vr=False, little_endian=True)
    return buffer.getvalue()


def dataset_from_bytes(data: bytes) -> Dataset:
    return pydicom.dcmread(BytesIO(data), force=True)


def compress_channels(
    channels: Iterable[ChannelData],
    compression_level: int = DEFAULT_COMPRESSION_LEVEL,
) -> bytes:
    """Zip every dataset of every channel into one archive and return its bytes."""
    buffer = BytesIO()
    entries = 0
    with zipfile.ZipFile(
        buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compression_level
    ) as archive:
        for channel in channels:
            for index, dataset in enumerate(channel.datasets):
                archive.writestr(f"{channel.channel_id}/{index}.dcm", dataset_to_bytes(dataset))
                entries += 1

    data = buffer.getvalue()
    logger.debug("Compressed %d datasets into %d bytes", entries, len(data))
    return data


def read_entries(payload: bytes) -> dict[str, bytes]:
    """Return ``{entry name: bytes}`` for every file in a zip payload."""
    try:
        with zipfile.ZipFile(BytesIO(payload)) as archive:
            return {
                info.filename: archive.read(info)
                for info in archive.infolist()
                if not info.is_dir()
            }
    except zipfile.BadZipFile as exc:
        raise UnsupportedPayloadError(f"Result payload is not a zip archive: {exc}") from exc


def read_single_dataset(payload: bytes) -> Dataset:
    """
    Decode the one DICOM file in a result archive.

    Raises
    ------
    UnsupportedPayloadError
        The payload is not a zip, or holds zero or several files.
    """
    entries = read_entries(payload)
    if len(entries) != 1:
        raise UnsupportedPayloadError.wrong_entry_count(len(entries))

    (name, data), = entries.items()
    logger.debug("Reading result entry %s (%d bytes)", name, len(data))
    return dataset_from_bytes(data)
