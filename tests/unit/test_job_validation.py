from __future__ import annotations

import pytest

from transcoder.core.exceptions import JobValidationError
from transcoder.jobs.models import DEFAULT_RESOLUTION_LADDER
from transcoder.jobs.validation import validate_job_data


def test_minimal_request_gets_defaults(job_data) -> None:
  record = validate_job_data(job_data(), job_id="video-asset-1")

  assert record.job_id == "video-asset-1"
  assert record.job_name == "transcode-asset-1"
  assert record.resolution_profile == DEFAULT_RESOLUTION_LADDER
  assert record.segment_duration_seconds == 6
  assert record.generate_thumbnail is True


def test_queue_defaults_apply_when_fields_are_omitted(job_data) -> None:
  record = validate_job_data(job_data(), job_id="j", default_segment_duration=4, default_generate_thumbnail=False)
  assert record.segment_duration_seconds == 4
  assert record.generate_thumbnail is False


def test_custom_ladder_is_kept_in_order(job_data) -> None:
  ladder = [
    {"name": "720p", "width": 1280, "height": 720, "bitrate": 3_000_000, "max_bitrate": 4_500_000},
    {"name": "240p", "width": 426, "height": 240, "bitrate": 400_000, "max_bitrate": 600_000},
  ]
  record = validate_job_data(job_data(resolution_profile=ladder, job_name="custom"), job_id="j")
  assert [rung.name for rung in record.resolution_profile] == ["720p", "240p"]
  assert record.job_name == "custom"


@pytest.mark.parametrize(
  ("overrides", "field"),
  [
    ({"asset_id": "   "}, "asset_id"),
    ({"file_size": 0}, "file_size"),
    ({"file_size": "10"}, "file_size"),
    ({"requested_by": None}, "requested_by"),
    ({"segment_duration_seconds": 0}, "segment_duration_seconds"),
    ({"unexpected": True}, "unexpected"),
  ],
)
def test_invalid_fields_are_reported(job_data, overrides, field) -> None:
  with pytest.raises(JobValidationError) as excinfo:
    validate_job_data(job_data(**overrides), job_id="j")
  assert field in {item["field"] for item in excinfo.value.fields}


def test_missing_required_fields_are_all_reported() -> None:
  with pytest.raises(JobValidationError) as excinfo:
    validate_job_data({"asset_id": "asset-1"}, job_id="j")
  fields = {item["field"] for item in excinfo.value.fields}
  assert {"source_location", "output_prefix", "requested_by", "original_file_name", "file_size"} <= fields


def test_ladder_rules_are_enforced(job_data) -> None:
  rung = {"name": "720p", "width": 1280, "height": 720, "bitrate": 3_000_000, "max_bitrate": 4_500_000}
  with pytest.raises(JobValidationError):
    validate_job_data(job_data(resolution_profile=[rung, rung]), job_id="j")
  with pytest.raises(JobValidationError):
    validate_job_data(job_data(resolution_profile=[{**rung, "max_bitrate": 1}]), job_id="j")
  with pytest.raises(JobValidationError):
    validate_job_data(job_data(resolution_profile=[]), job_id="j")


def test_non_mapping_is_rejected() -> None:
  with pytest.raises(JobValidationError):
    validate_job_data(["asset-1"], job_id="j")  # type: ignore[arg-type]


def test_existing_record_is_revalidated(job_data) -> None:
  record = validate_job_data(job_data(), job_id="video-asset-1")
  again = validate_job_data(record, job_id="video-asset-2")
  assert again.job_id == "video-asset-2"
  assert again.resolution_profile == record.resolution_profile


def test_record_job_id_is_kept_unless_overridden(job_data) -> None:
  record = validate_job_data(job_data(), job_id="video-from-caller")

  assert validate_job_data(record, job_id="").job_id == "video-from-caller"
  assert validate_job_data(record, job_id="video-override").job_id == "video-override"
  assert validate_job_data(job_data(), job_id="").job_id == ""
