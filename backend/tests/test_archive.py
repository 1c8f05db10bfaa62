"""Tests for the backup archive codec."""
import io
import json
import zipfile

import pytest

from pixellite.backup.archive import (
    CONTENT_DIR,
    MANIFEST_NAME,
    original_ref,
    parse_archive,
    processed_ref,
    serialize_archive,
)
from pixellite.errors import ArchiveFormatError
from pixellite.processing.models import AIAnalysis, EnhanceMethod, OutputFormat, ProcessedImageRecord, ProcessMode


def _record(rid, name="cat.png", **kw):
    defaults = dict(
        id=rid,
        original_name=name,
        original_mime="image/png",
        original_bytes=f"original-{rid}".encode() * 10,
        processed_bytes=f"processed-{rid}".encode() * 3,
        processed_mime="image/png",
        quality_used=0.7,
        timestamp=1700000000000 + int(rid),
    )
    defaults.update(kw)
    return ProcessedImageRecord(**defaults)


def _without_entry(archive: bytes, entry: str) -> bytes:
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(archive)) as src, zipfile.ZipFile(out, "w") as dst:
        for info in src.infolist():
            if info.filename != entry:
                dst.writestr(info, src.read(info.filename))
    return out.getvalue()


def _zip_with(entries: dict) -> bytes:
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return out.getvalue()


class TestRoundTrip:
    def test_empty_archive(self):
        result = parse_archive(serialize_archive([], settings={"language": "en"}, tag="none"))
        assert result.records == []
        assert result.settings == {"language": "en"}
        assert result.tag == "none"
        assert result.skipped == 0

    def test_three_records(self):
        records = [
            _record("1"),
            _record("2", name="dog.jpg", original_mime="image/jpeg", processed_mime="image/webp", output_format=OutputFormat.WEBP),
            _record(
                "3",
                mode=ProcessMode.ENHANCE,
                enhance_method=EnhanceMethod.ALGORITHM,
                quality_used=0.5,
                ai_analysis=AIAnalysis("A cat on a sofa", ["cat", "sofa"]),
            ),
        ]
        result = parse_archive(serialize_archive(records, settings={"default_quality": 0.8}, tag="weekly"))
        assert [r.id for r in result.records] == ["1", "2", "3"]
        for before, after in zip(records, result.records):
            assert after.original_bytes == before.original_bytes
            assert after.processed_bytes == before.processed_bytes
            assert after.original_name == before.original_name
            assert after.quality_used == before.quality_used
            assert after.timestamp == before.timestamp
            assert after.mode == before.mode
            assert after.change_ratio == before.change_ratio
            assert after.saved
        assert result.records[1].processed_mime == "image/webp"
        assert result.records[1].output_format == OutputFormat.WEBP
        assert result.records[2].ai_analysis.tags == ["cat", "sofa"]
        assert result.records[2].enhance_method == EnhanceMethod.ALGORITHM
        assert result.records[0].processed_preview.startswith("data:image/png;base64,")

    def test_ai_result_keeps_raw_output(self):
        record = _record(
            "4",
            mode=ProcessMode.ENHANCE,
            enhance_method=EnhanceMethod.AI,
            ai_model_used="img-model",
            ai_generated_text="Brighter now",
            ai_original_bytes=b"raw-ai",
            ai_original_mime="image/png",
        )
        restored = parse_archive(serialize_archive([record])).records[0]
        assert restored.ai_original_bytes == b"raw-ai"
        assert restored.ai_model_used == "img-model"
        assert restored.ai_generated_text == "Brighter now"
        assert restored.is_ai_result


def test_manifest_layout():
    record = _record("7", name="photos/cat.png")
    archive = serialize_archive([record], tag="t", timestamp=123)
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        manifest = json.loads(zf.read(MANIFEST_NAME))
        assert sorted(zf.namelist()) == sorted(
            [MANIFEST_NAME, CONTENT_DIR + "7_orig_cat.png", CONTENT_DIR + "7_comp_cat.png"]
        )
    assert manifest["timestamp"] == 123
    assert "settings" not in manifest
    item = manifest["items"][0]
    assert item["originalFileNameRef"] == "7_orig_cat.png"
    assert item["compressedFileNameRef"] == "7_comp_cat.png"
    assert item["originalSize"] == record.original_size
    assert item["compressedSize"] == record.processed_size
    assert item["compressionRatio"] == record.change_ratio


def test_missing_content_entry_skips_item():
    records = [_record("1"), _record("2"), _record("3")]
    archive = _without_entry(serialize_archive(records), CONTENT_DIR + processed_ref(records[1]))
    result = parse_archive(archive)
    assert [r.id for r in result.records] == ["1", "3"]
    assert result.skipped == 1


def test_missing_original_entry_skips_item():
    records = [_record("1")]
    archive = _without_entry(serialize_archive(records), CONTENT_DIR + original_ref(records[0]))
    result = parse_archive(archive)
    assert result.records == []
    assert result.skipped == 1


def test_archive_without_settings():
    manifest = {"version": "1.0", "timestamp": 1, "tag": "", "items": []}
    result = parse_archive(_zip_with({MANIFEST_NAME: json.dumps(manifest)}))
    assert result.settings is None
    assert result.records == []


def test_legacy_item_without_types():
    manifest = {
        "version": "1.0",
        "timestamp": 1,
        "tag": "",
        "items": [{
            "id": 5,
            "originalName": "cat.png",
            "qualityUsed": 0.6,
            "timestamp": 5,
            "originalFileNameRef": "5_orig_cat.png",
            "compressedFileNameRef": "5_comp_cat.png",
        }],
    }
    result = parse_archive(_zip_with({
        MANIFEST_NAME: json.dumps(manifest),
        CONTENT_DIR + "5_orig_cat.png": b"orig",
        CONTENT_DIR + "5_comp_cat.png": b"comp",
    }))
    record = result.records[0]
    assert record.id == "5"
    assert record.original_mime == "image/png"
    assert record.mode == ProcessMode.COMPRESS


class TestInvalidArchives:
    def test_missing_manifest(self):
        with pytest.raises(ArchiveFormatError, match="missing"):
            parse_archive(_zip_with({CONTENT_DIR + "1_orig_a.png": b"x"}))

    def test_unparsable_manifest(self):
        with pytest.raises(ArchiveFormatError):
            parse_archive(_zip_with({MANIFEST_NAME: "{not json"}))

    def test_not_a_zip(self):
        with pytest.raises(ArchiveFormatError):
            parse_archive(b"plain bytes")
