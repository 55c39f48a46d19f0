"""Admission validation for transcode job requests."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError, field_validator, model_validator

from transcoder.core.exceptions import JobValidationError
from transcoder.jobs.models import DEFAULT_RESOLUTION_LADDER, JobRecord, ResolutionProfile


class ResolutionModel(BaseModel):
  """One requested output rendition."""

  name: StrictStr = Field(min_length=1)
  width: StrictInt = Field(gt=0)
  height: StrictInt = Field(gt=0)
  bitrate: StrictInt = Field(gt=0)
  max_bitrate: StrictInt = Field(gt=0)
  model_config = ConfigDict(extra="forbid")

  @model_validator(mode="after")
  def check_bitrate_ceiling(self) -> ResolutionModel:
    if self.max_bitrate < self.bitrate:
      raise ValueError("max_bitrate must not be lower than bitrate.")
    return self


class TranscodeJobRequest(BaseModel):
  """Caller-supplied job data, validated once before admission to the queue."""

  asset_id: StrictStr = Field(min_length=1, description="Asset being transcoded.")
  source_location: StrictStr = Field(min_length=1, description="Opaque location of the source media.")
  output_prefix: StrictStr = Field(min_length=1, description="Opaque prefix under which renditions are written.")
  requested_by: StrictStr = Field(min_length=1, description="User that uploaded the source media.")
  original_file_name: StrictStr = Field(min_length=1)
  file_size: StrictInt = Field(gt=0, description="Source size in bytes.")
  job_name: StrictStr | None = Field(default=None, min_length=1)
  resolution_profile: list[ResolutionModel] | None = Field(default=None, min_length=1)
  segment_duration_seconds: StrictInt | None = Field(default=None, gt=0)
  generate_thumbnail: StrictBool | None = None
  metadata: dict[str, Any] = Field(default_factory=dict)
  model_config = ConfigDict(extra="forbid")

  @field_validator("asset_id", "source_location", "output_prefix", "requested_by", "original_file_name", "job_name")
  @classmethod
  def reject_blank(cls, value: str | None) -> str | None:
    # Whitespace-only descriptors are as useless as empty ones.
    if value is not None and not value.strip():
      raise ValueError("must not be blank")
    return value.strip() if value is not None else None

  @field_validator("resolution_profile")
  @classmethod
  def unique_rung_names(cls, value: list[ResolutionModel] | None) -> list[ResolutionModel] | None:
    if value is None:
      return value
    names = [rung.name for rung in value]
    if len(names) != len(set(names)):
      raise ValueError("resolution names must be unique")
    return value


def _format_errors(exc: ValidationError) -> list[dict[str, str]]:
  """Flatten pydantic errors into field/message pairs without raw input values."""
  fields: list[dict[str, str]] = []
  for error in exc.errors():
    location = ".".join(str(part) for part in error.get("loc", ())) or "__root__"
    fields.append({"field": location, "message": str(error.get("msg", "invalid value"))})
  return fields


def _as_mapping(job_data: Mapping[str, Any] | JobRecord) -> dict[str, Any]:
  if isinstance(job_data, JobRecord):
    data = dataclasses.asdict(job_data)
    # The record's id is not part of the validated payload; `validate_job_data` carries it over.
    data.pop("job_id", None)
    return data
  if not isinstance(job_data, Mapping):
    raise JobValidationError("Job data must be a mapping.", [{"field": "__root__", "message": "expected a mapping"}])
  return dict(job_data)


def validate_job_data(job_data: Mapping[str, Any] | JobRecord, *, job_id: str, default_segment_duration: int = 6, default_generate_thumbnail: bool = True) -> JobRecord:
  """Validate raw job data and build the immutable record stored by the queue.

  An explicit `job_id` wins over the id of a caller-built `JobRecord`. An empty
  result leaves id assignment to the queue.
  """
  if not job_id and isinstance(job_data, JobRecord):
    job_id = job_data.job_id
  try:
    request = TranscodeJobRequest.model_validate(_as_mapping(job_data))
  except ValidationError as exc:
    fields = _format_errors(exc)
    summary = "; ".join(f"{item['field']}: {item['message']}" for item in fields)
    raise JobValidationError(f"Invalid transcode job data: {summary}", fields) from exc

  if request.resolution_profile is None:
    ladder = DEFAULT_RESOLUTION_LADDER
  else:
    ladder = tuple(ResolutionProfile(name=rung.name, width=rung.width, height=rung.height, bitrate=rung.bitrate, max_bitrate=rung.max_bitrate) for rung in request.resolution_profile)

  return JobRecord(
    job_id=job_id,
    asset_id=request.asset_id,
    source_location=request.source_location,
    output_prefix=request.output_prefix,
    job_name=request.job_name or f"transcode-{request.asset_id}",
    requested_by=request.requested_by,
    original_file_name=request.original_file_name,
    file_size=request.file_size,
    resolution_profile=ladder,
    segment_duration_seconds=request.segment_duration_seconds or default_segment_duration,
    generate_thumbnail=default_generate_thumbnail if request.generate_thumbnail is None else request.generate_thumbnail,
    metadata=dict(request.metadata),
  )
