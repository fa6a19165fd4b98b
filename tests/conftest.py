"""Shared fixtures: in-memory CT datasets and a small anonymisation protocol."""

import uuid

import pydicom
import pytest
from pydicom.dataset import Dataset, FileDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from segmentation_gateway.protocol import parse_protocol

CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"

PROTOCOL_ID = uuid.UUID("0a9c2f4e-3b1d-4c55-9e0f-6d7a8b9c0d1e")

PROTOCOL_CONFIG = {
    "keep": ["Modality", "SOPClassUID", "Rows", "Columns"],
    "hash": [
        "StudyInstanceUID",
        "SeriesInstanceUID",
        "SOPInstanceUID",
        "FrameOfReferenceUID",
        "SeriesDescription",
    ],
    "random": ["SeriesDate", "SeriesTime"],
}


def make_ct_dataset(
    patient_name: str = "Doe^John",
    patient_id: str = "12345",
    study_uid: str = "1.2.826.0.1.3680043.8.498.100",
    series_uid: str = "1.2.826.0.1.3680043.8.498.200",
    sop_uid: str = None,
    frame_of_reference_uid: str = "1.2.826.0.1.3680043.8.498.300",
    **kwargs,
) -> Dataset:
    """Build a minimal in-memory CT image dataset with typical PHI."""
    sop_uid = sop_uid or generate_uid()

    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.UID(CT_IMAGE_STORAGE)
    file_meta.MediaStorageSOPInstanceUID = sop_uid
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(filename_or_obj=None, dataset={}, file_meta=file_meta, preamble=b"\0" * 128)

    # Patient / study identity
    ds.PatientName = patient_name
    ds.PatientID = patient_id
    ds.PatientBirthDate = "19800101"
    ds.PatientSex = "M"
    ds.StudyDate = "20230601"
    ds.StudyTime = "120000"
    ds.ReferringPhysicianName = "Smith^Jane"
    ds.StudyID = "STUDY001"
    ds.AccessionNumber = "ACC001"
    ds.StudyDescription = "CT HEAD"

    # UIDs and series attributes the service works with
    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.StudyInstanceUID = study_uid
    ds.SeriesInstanceUID = series_uid
    ds.SOPInstanceUID = sop_uid
    ds.FrameOfReferenceUID = frame_of_reference_uid
    ds.SeriesDescription = "AXIAL 2.5MM"
    ds.SeriesDate = "20230601"
    ds.SeriesTime = "121500"
    ds.Modality = "CT"
    ds.InstitutionName = "General Hospital"  # not in the protocol

    for key, value in kwargs.items():
        setattr(ds, key, value)

    return ds


@pytest.fixture
def protocol():
    return parse_protocol(PROTOCOL_CONFIG, PROTOCOL_ID)


@pytest.fixture
def ct_dataset():
    return make_ct_dataset()


@pytest.fixture
def ct_series():
    """Three slices of one series: shared study/series/frame UIDs, own SOP UIDs."""
    return [make_ct_dataset(InstanceNumber=i + 1) for i in range(3)]
