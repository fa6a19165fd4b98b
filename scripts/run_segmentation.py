"""
run_segmentation.py - Send one series to the segmentation service and save
the deanonymised result.

Reads every DICOM file in a folder as channel "ct", checks the license
key, uploads the anonymised series, polls until the result is ready,
restores patient identity from the original files and writes the RT
structure set.

Usage
-----
    SEGMENTATION_LICENSE_KEY=... python scripts/run_segmentation.py MODEL_ID path/to/series [output.dcm]
"""

import asyncio
import logging
import os
import sys

# Ensure repo root is on sys.path regardless of launch directory
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _REPO_ROOT)

import pydicom  # noqa: E402
from pydicom.errors import InvalidDicomError  # noqa: E402

from segmentation_gateway.archive import ChannelData  # noqa: E402
from segmentation_gateway.client import SegmentationClient  # noqa: E402
from segmentation_gateway.config import CONFIG  # noqa: E402
from segmentation_gateway.errors import GatewayError  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)-8s %(message)s",
)
logger = logging.getLogger(__name__)

CHANNEL_ID = "ct"
POLL_INTERVAL_S = 5.0


def _read_series(folder: str) -> list[pydicom.Dataset]:
    files = sorted(f for f in os.listdir(folder) if not f.startswith("."))
    datasets = []
    for fname in files:
        try:
            datasets.append(pydicom.dcmread(os.path.join(folder, fname)))
        except InvalidDicomError:
            logger.warning("Skipping %s: not a DICOM file", fname)
    return datasets


async def run(model_id: str, folder: str, output_path: str) -> None:
    datasets = _read_series(folder)
    print(f"  Series folder : {folder}")
    print(f"  Files read    : {len(datasets)}")
    print()

    async with SegmentationClient.from_config(CONFIG) as client:
        await client.ping()
        print("  License key accepted.")

        handle, posted = await client.start_segmentation(model_id, [ChannelData(CHANNEL_ID, datasets)])
        print(f"  Uploaded {len(posted)} anonymised images, segmentation id {handle.segmentation_id}")

        complete = await client.wait_for_segmentation(handle, datasets, interval_s=POLL_INTERVAL_S)

    complete.result.save_as(output_path)
    print(f"  Result saved  : {output_path}")


def main() -> None:
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(2)

    model_id, folder = sys.argv[1], sys.argv[2]
    output_path = sys.argv[3] if len(sys.argv) > 3 else "segmentation_result.dcm"

    if not os.path.isdir(folder):
        logger.error("Folder not found: %s", folder)
        sys.exit(1)

    print("=" * 60)
    print(f"SEGMENTATION - model {model_id}")
    print("=" * 60)
    try:
        asyncio.run(run(model_id, folder, output_path))
    except GatewayError as exc:
        logger.error("Segmentation failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
