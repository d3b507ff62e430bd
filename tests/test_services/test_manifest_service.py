"""Tests for the manifest wire format and validation."""

from __future__ import annotations

import gzip
import json

import pytest

from replica.exceptions import IndexInvalid
from replica.services.manifest_service import (
    ManifestEntry,
    decode_manifest,
    encode_manifest,
    load_json_blob,
    parse_manifest,
)
from tests.conftest import gzip_json


class TestParseManifest:
    def test_valid_manifest(self) -> None:
        manifest = parse_manifest(
            {"a.gz": ["2022-01-01:001", 10], "words_2.dat": ["2022-02-17:002", 0]}
        )
        assert manifest == {
            "a.gz": ManifestEntry(revision="2022-01-01:001", size=10),
            "words_2.dat": ManifestEntry(revision="2022-02-17:002", size=0),
        }

    def test_empty_object_is_valid(self) -> None:
        assert parse_manifest({}) == {}

    def test_top_level_must_be_object(self) -> None:
        with pytest.raises(IndexInvalid, match="JSON object"):
            parse_manifest([["a.gz", "2022-01-01:001", 10]])

    @pytest.mark.parametrize("name", ["index", ".a", "a.", "a..b", "", "a b", "a/b", "é.gz"])
    def test_bad_filename_invalidates_whole_manifest(self, name: str) -> None:
        with pytest.raises(IndexInvalid, match="name"):
            parse_manifest({"ok.gz": ["2022-01-01:001", 1], name: ["2022-01-01:001", 1]})

    @pytest.mark.parametrize(
        "revision", ["2022-1-01:001", "2022-01-01", "2022-01-01:01", "x022-01-01:001", 20220101]
    )
    def test_bad_revision(self, revision: object) -> None:
        with pytest.raises(IndexInvalid, match="revision"):
            parse_manifest({"a.gz": [revision, 1]})

    def test_calendar_invalid_revision_is_accepted(self) -> None:
        manifest = parse_manifest({"a.gz": ["2022-13-45:999", 1]})
        assert manifest["a.gz"].revision == "2022-13-45:999"

    @pytest.mark.parametrize("size", [-1, 1.5, "10", True, None])
    def test_bad_size(self, size: object) -> None:
        with pytest.raises(IndexInvalid, match="size"):
            parse_manifest({"a.gz": ["2022-01-01:001", size]})

    @pytest.mark.parametrize(
        "value", ["2022-01-01:001", ["2022-01-01:001"], ["2022-01-01:001", 1, 2]]
    )
    def test_entry_shape(self, value: object) -> None:
        with pytest.raises(IndexInvalid):
            parse_manifest({"a.gz": value})


class TestDecodeManifest:
    def test_decode_compressed_manifest(self) -> None:
        raw = gzip_json({"a.gz": ["2022-01-01:001", 10]})
        assert decode_manifest(raw) == {"a.gz": ManifestEntry("2022-01-01:001", 10)}

    def test_already_inflated_payload_is_rejected(self) -> None:
        """A manifest decompressed in transit no longer reaches the parser as gzip."""
        raw = json.dumps({"a.gz": ["2022-01-01:001", 10]}).encode()
        with pytest.raises(IndexInvalid, match="gzip"):
            decode_manifest(raw)

    def test_truncated_gzip_is_rejected(self) -> None:
        raw = gzip_json({"a.gz": ["2022-01-01:001", 10]})
        with pytest.raises(IndexInvalid):
            decode_manifest(raw[:-6])

    def test_gzip_of_non_json_is_rejected(self) -> None:
        with pytest.raises(IndexInvalid, match="JSON"):
            decode_manifest(gzip.compress(b"{not json"))

    def test_encode_then_decode_preserves_entries(self) -> None:
        manifest = {
            "b.gz": ManifestEntry("2022-03-01:001", 5),
            "a.gz": ManifestEntry("2022-01-01:001", 10),
        }
        assert decode_manifest(encode_manifest(manifest)) == manifest

    def test_encoded_form_is_compact_sorted_json(self) -> None:
        manifest = {
            "b.gz": ManifestEntry("2022-03-01:001", 5),
            "a.gz": ManifestEntry("2022-01-01:001", 10),
        }
        text = gzip.decompress(encode_manifest(manifest)).decode()
        assert text == '{"a.gz":["2022-01-01:001",10],"b.gz":["2022-03-01:001",5]}'


class TestLoadJsonBlob:
    def test_parses_gzip_json(self) -> None:
        assert load_json_blob(gzip_json({"k": [1, 2]})) == {"k": [1, 2]}

    def test_rejects_plain_bytes(self) -> None:
        with pytest.raises(ValueError, match="gzip"):
            load_json_blob(b"plain")
