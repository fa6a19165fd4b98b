"""Tests for segmentation_gateway/protocol.py and tags.py."""

import uuid

import pytest
from pydicom.tag import Tag

from conftest import PROTOCOL_CONFIG, PROTOCOL_ID
from segmentation_gateway.config import load_config
from segmentation_gateway.errors import (
    ConfigurationError,
    ConflictingMethodError,
    EmptyPolicyError,
    InvalidMethodError,
    UnknownFieldError,
)
from segmentation_gateway.protocol import (
    SEGMENTATION_PROTOCOL_ID,
    AnonymisationProtocol,
    parse_protocol,
    protocol_from_config,
)
from segmentation_gateway.tags import (
    DEFAULT_REGISTRY,
    TOP_LEVEL_REPLACEMENTS,
    AnonymisationMethod,
    TagRegistry,
    TagReplacement,
)


class TestParseProtocol:
    def test_parses_every_pair(self):
        protocol = parse_protocol(PROTOCOL_CONFIG, PROTOCOL_ID)
        expected = sum(len(v) for v in PROTOCOL_CONFIG.values())
        assert len(protocol) == expected
        assert protocol.protocol_id == PROTOCOL_ID

    def test_method_names_are_case_insensitive(self):
        protocol = parse_protocol(
            {"Keep": ["Modality"], "hash": ["StudyInstanceUID"], "RaNdOm": ["SeriesDate"]}
        )
        assert protocol.method_for(Tag("Modality")) is AnonymisationMethod.KEEP
        assert protocol.method_for(Tag("StudyInstanceUID")) is AnonymisationMethod.HASH
        assert protocol.method_for(Tag("SeriesDate")) is AnonymisationMethod.RANDOMISE_DATE_TIME

    def test_unlisted_tag_has_no_method(self, protocol):
        assert protocol.method_for(Tag("InstitutionName")) is None

    def test_hashed_tags(self, protocol):
        assert set(protocol.hashed_tags()) == {Tag(k) for k in PROTOCOL_CONFIG["hash"]}

    def test_protocol_id_accepts_string(self):
        protocol = parse_protocol({"hash": ["PatientID"]}, str(PROTOCOL_ID))
        assert protocol.protocol_id == PROTOCOL_ID

    def test_default_protocol_id(self):
        protocol = parse_protocol({"hash": ["PatientID"]})
        assert protocol.protocol_id == SEGMENTATION_PROTOCOL_ID

    def test_invalid_method(self):
        with pytest.raises(InvalidMethodError, match="Permitted options"):
            parse_protocol({"scramble": ["PatientID"]})

    def test_unknown_field(self):
        with pytest.raises(UnknownFieldError) as exc_info:
            parse_protocol({"hash": ["PatientID", "NotARealKeyword"]})
        assert exc_info.value.keyword == "NotARealKeyword"
        assert "NotARealKeyword" in str(exc_info.value)

    def test_unknown_field_is_a_key_error(self):
        with pytest.raises(KeyError):
            parse_protocol({"hash": ["patientid"]})  # keywords are case-sensitive

    def test_empty_mapping_rejected(self):
        with pytest.raises(EmptyPolicyError):
            parse_protocol({})

    def test_methods_without_fields_rejected(self):
        with pytest.raises(EmptyPolicyError):
            parse_protocol({"keep": [], "hash": [], "random": None})

    def test_same_tag_under_two_methods_rejected(self):
        with pytest.raises(ConflictingMethodError):
            parse_protocol({"keep": ["PatientID"], "hash": ["PatientID"]})

    def test_duplicate_under_same_method_kept_once(self):
        protocol = parse_protocol({"hash": ["PatientID", "PatientID"]})
        assert len(protocol) == 1

    def test_configuration_errors_share_a_base(self):
        for bad in ({}, {"x": ["PatientID"]}, {"hash": ["Nope"]}):
            with pytest.raises(ConfigurationError):
                parse_protocol(bad)
            assert not ConfigurationError.retryable

    def test_protocol_cannot_be_empty(self):
        with pytest.raises(EmptyPolicyError):
            AnonymisationProtocol(protocol_id=uuid.uuid4(), tags=())


class TestTagRegistry:
    def test_default_registry_resolves_keywords(self):
        assert DEFAULT_REGISTRY.resolve("PatientID") == Tag(0x0010, 0x0020)
        assert "FrameOfReferenceUID" in DEFAULT_REGISTRY

    def test_custom_registry(self):
        registry = TagRegistry({"PatientID": 0x00100020})
        protocol = parse_protocol({"hash": ["PatientID"]}, registry=registry)
        assert protocol.hashed_tags() == (Tag(0x0010, 0x0020),)
        with pytest.raises(UnknownFieldError):
            parse_protocol({"hash": ["PatientName"]}, registry=registry)

    def test_top_level_replacements(self):
        assert Tag("PatientName") in TOP_LEVEL_REPLACEMENTS
        assert Tag("StudyDescription") in TOP_LEVEL_REPLACEMENTS
        assert len(TOP_LEVEL_REPLACEMENTS) == 10

    def test_tag_replacement_from_keyword(self):
        replacement = TagReplacement.from_keyword("PatientName", "Override^Name")
        assert replacement.tag == Tag(0x0010, 0x0010)


class TestProtocolFromConfig:
    def test_default_config_protocol(self, tmp_path):
        config = load_config(str(tmp_path / "missing.yaml"))
        protocol = protocol_from_config(config)
        assert protocol.protocol_id == SEGMENTATION_PROTOCOL_ID
        assert Tag("SOPInstanceUID") in protocol.hashed_tags()

    def test_yaml_protocol_replaces_default(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "anonymisation:\n"
            f"  protocol_id: \"{PROTOCOL_ID}\"\n"
            "  protocol:\n"
            "    hash: [PatientID]\n"
        )
        protocol = protocol_from_config(load_config(str(path)))
        assert protocol.protocol_id == PROTOCOL_ID
        assert len(protocol) == 1
