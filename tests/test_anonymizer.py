"""Tests for segmentation_gateway/anonymizer.py."""

import random
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from pydicom.dataset import Dataset
from pydicom.tag import Tag

from conftest import PROTOCOL_ID, make_ct_dataset
from segmentation_gateway.anonymizer import (
    MAX_DATE_SHIFT_DAYS,
    AnonymisationEngine,
    anonymize_dataset,
    hash_value,
    randomise_date_time,
)
from segmentation_gateway.errors import EmptyPolicyError, NullInputError
from segmentation_gateway.protocol import parse_protocol
from segmentation_gateway.tags import TOP_LEVEL_REPLACEMENTS


class TestHashing:
    def test_uid_digest_is_a_valid_uid(self, protocol, ct_dataset):
        result = anonymize_dataset(ct_dataset, protocol)
        uid = str(result.StudyInstanceUID)
        assert uid != str(ct_dataset.StudyInstanceUID)
        assert uid.startswith("2.25.")
        assert len(uid) <= 64
        assert all(part.isdigit() for part in uid.split("."))

    def test_text_digest_fits_vr(self, protocol, ct_dataset):
        result = anonymize_dataset(ct_dataset, protocol)
        description = str(result.SeriesDescription)  # LO
        assert description != "AXIAL 2.5MM"
        assert len(description) == 64
        assert hash_value("ACC001", "SH", PROTOCOL_ID) == hash_value("ACC001", "SH", PROTOCOL_ID)
        assert len(hash_value("ACC001", "SH", PROTOCOL_ID)) == 16

    def test_hash_is_deterministic(self, protocol, ct_dataset):
        first = anonymize_dataset(ct_dataset, protocol)
        second = anonymize_dataset(ct_dataset, protocol)
        for tag in protocol.hashed_tags():
            assert first[tag].value == second[tag].value

    def test_same_value_same_digest_across_datasets(self, protocol, ct_series):
        engine = AnonymisationEngine(protocol)
        results = engine.anonymize_all(ct_series)
        assert len({str(r.SeriesInstanceUID) for r in results}) == 1
        assert len({str(r.SOPInstanceUID) for r in results}) == len(ct_series)

    def test_protocol_id_changes_digest(self, protocol, ct_dataset):
        other = parse_protocol(
            {"hash": ["StudyInstanceUID"]}, uuid.UUID("11111111-2222-3333-4444-555555555555")
        )
        first = anonymize_dataset(ct_dataset, protocol)
        second = anonymize_dataset(ct_dataset, other)
        assert first.StudyInstanceUID != second.StudyInstanceUID

    def test_non_text_vr_is_removed(self, ct_dataset):
        ct_dataset.Rows = 512
        protocol = parse_protocol({"hash": ["Rows"]})
        result = anonymize_dataset(ct_dataset, protocol)
        assert "Rows" not in result

    def test_empty_value_left_empty(self, protocol, ct_dataset):
        ct_dataset.SeriesDescription = ""
        result = anonymize_dataset(ct_dataset, protocol)
        assert result.SeriesDescription == ""

    def test_nested_sequence_values_hashed(self, protocol, ct_dataset):
        item = Dataset()
        item.SeriesInstanceUID = ct_dataset.SeriesInstanceUID
        ct_dataset.ReferencedSeriesSequence = [item]
        result = anonymize_dataset(ct_dataset, protocol)
        nested = result.ReferencedSeriesSequence[0].SeriesInstanceUID
        assert nested == result.SeriesInstanceUID
        assert nested != ct_dataset.SeriesInstanceUID

    def test_file_meta_follows_sop_instance_uid(self, protocol, ct_dataset):
        result = anonymize_dataset(ct_dataset, protocol)
        assert result.file_meta.MediaStorageSOPInstanceUID == result.SOPInstanceUID


class TestRandomiseDateTime:
    def test_date_shifted_within_range(self, protocol, ct_dataset):
        engine = AnonymisationEngine(protocol, rng=random.Random(7))
        result = engine.anonymize(ct_dataset)
        shifted = datetime.strptime(result.SeriesDate, "%Y%m%d")
        original = datetime.strptime(ct_dataset.SeriesDate, "%Y%m%d")
        assert abs((shifted - original).days) <= MAX_DATE_SHIFT_DAYS

    def test_time_is_valid(self, protocol, ct_dataset):
        result = AnonymisationEngine(protocol, rng=random.Random(3)).anonymize(ct_dataset)
        value = result.SeriesTime
        assert len(value) == 6 and value.isdigit()
        assert int(value[:2]) < 24 and int(value[2:4]) < 60 and int(value[4:]) < 60

    def test_unparsable_date_becomes_empty(self, protocol, ct_dataset):
        ct_dataset.SeriesDate = "20231341"  # month 13
        result = anonymize_dataset(ct_dataset, protocol)
        assert result.SeriesDate == ""

    def test_date_time_shifts_date_and_replaces_time(self, ct_dataset):
        ct_dataset.AcquisitionDateTime = "20230601120000.123456+0100"
        protocol = parse_protocol({"random": ["AcquisitionDateTime"]})
        result = AnonymisationEngine(protocol, rng=random.Random(1)).anonymize(ct_dataset)

        value = str(result.AcquisitionDateTime)
        assert len(value) == 14 and value.isdigit()
        shifted = datetime.strptime(value[:8], "%Y%m%d")
        assert abs((shifted - datetime(2023, 6, 1)).days) <= MAX_DATE_SHIFT_DAYS
        assert int(value[8:10]) < 24 and int(value[10:12]) < 60 and int(value[12:]) < 60

    def test_unparsable_date_time_becomes_empty(self):
        assert randomise_date_time("20231341120000", "DT", random.Random(1)) == ""

    def test_non_date_vr_is_removed(self, ct_dataset):
        protocol = parse_protocol({"random": ["InstitutionName"]})
        result = anonymize_dataset(ct_dataset, protocol)
        assert "InstitutionName" not in result


class TestPassThroughAndSuppression:
    def test_keep_and_unlisted_tags_unchanged(self, protocol, ct_dataset):
        result = anonymize_dataset(ct_dataset, protocol)
        assert result.Modality == "CT"
        assert result.InstitutionName == "General Hospital"

    def test_suppressed_tags_removed(self, protocol, ct_dataset):
        result = anonymize_dataset(ct_dataset, protocol, suppressed_tags=TOP_LEVEL_REPLACEMENTS)
        for tag in TOP_LEVEL_REPLACEMENTS:
            assert tag not in result
        assert Tag("PatientName") in ct_dataset

    def test_input_not_modified(self, protocol, ct_dataset):
        before = str(ct_dataset.StudyInstanceUID)
        anonymize_dataset(ct_dataset, protocol, suppressed_tags=TOP_LEVEL_REPLACEMENTS)
        assert str(ct_dataset.StudyInstanceUID) == before
        assert ct_dataset.PatientName == "Doe^John"


class TestArguments:
    def test_none_dataset(self, protocol):
        with pytest.raises(NullInputError):
            AnonymisationEngine(protocol).anonymize(None)

    def test_none_batch(self, protocol):
        with pytest.raises(NullInputError):
            AnonymisationEngine(protocol).anonymize_all(None)

    def test_none_protocol(self):
        with pytest.raises(EmptyPolicyError):
            AnonymisationEngine(None)


class TestBatchOrder:
    def test_order_does_not_change_the_result_set(self, protocol):
        datasets = [
            make_ct_dataset(patient_id=f"P{i}", series_uid=f"1.2.3.{i}", sop_uid=f"1.2.3.{i}.1")
            for i in range(8)
        ]
        engine = AnonymisationEngine(protocol, suppressed_tags=TOP_LEVEL_REPLACEMENTS)

        def fingerprint(ds):
            return tuple(str(ds[tag].value) for tag in protocol.hashed_tags())

        in_order = {fingerprint(ds) for ds in engine.anonymize_all(datasets)}

        shuffled = list(datasets)
        random.Random(11).shuffle(shuffled)
        with ThreadPoolExecutor(max_workers=4) as pool:
            in_parallel = {fingerprint(ds) for ds in pool.map(engine.anonymize, shuffled)}

        assert in_order == in_parallel
        assert len(in_order) == len(datasets)
