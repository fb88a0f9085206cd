from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CURRENT_SCHEMA_VERSION = 7


class _PayloadModel(BaseModel):
    """Base for persisted payload: camelCase on the wire, unknown fields kept."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ScriptCut(_PayloadModel):
    id: int | str
    final_image_url: str | None = None
    draft_image_url: str | None = None
    audio_url: str | None = None
    sfx_url: str | None = None
    video_url: str | None = None


class AssetDefinition(_PayloadModel):
    id: str
    name: str = ""
    reference_image: str | None = None
    master_image: str | None = None
    draft_image: str | None = None


class MasterStyle(_PayloadModel):
    description: str = ""
    reference_image: str | None = None


class StyleAnchor(_PayloadModel):
    reference_image: str | None = None
    prompts: dict[str, str] = Field(default_factory=dict)


class ThumbnailSettings(_PayloadModel):
    frame_image: str | None = ""


class ProjectDocument(_PayloadModel):
    id: str
    last_modified: int = 0
    version: int = CURRENT_SCHEMA_VERSION
    series_name: str = ""
    episode_name: str = ""
    episode_number: int = 1
    script: list[ScriptCut] = Field(default_factory=list)
    asset_definitions: dict[str, AssetDefinition] = Field(default_factory=dict)
    master_style: MasterStyle = Field(default_factory=MasterStyle)
    style_anchor: StyleAnchor = Field(default_factory=StyleAnchor)
    thumbnail_url: str | None = None
    thumbnail_settings: ThumbnailSettings = Field(default_factory=ThumbnailSettings)
    characters: list[dict[str, Any]] = Field(default_factory=list)
    series_locations: list[dict[str, Any]] = Field(default_factory=list)
    current_step: int = 1


class ProgressSummary(_PayloadModel):
    total_cuts: int = 0
    cuts_with_image: int = 0
    cuts_with_audio: int = 0
    cuts_with_video: int = 0
    current_step: int = 1

    @classmethod
    def from_document(cls, doc: ProjectDocument) -> "ProgressSummary":
        return cls(
            total_cuts=len(doc.script),
            cuts_with_image=sum(1 for cut in doc.script if cut.final_image_url),
            cuts_with_audio=sum(1 for cut in doc.script if cut.audio_url),
            cuts_with_video=sum(1 for cut in doc.script if cut.video_url),
            current_step=doc.current_step,
        )


class MetadataEntry(_PayloadModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    series_name: str = ""
    episode_name: str = ""
    episode_number: int = 1
    last_modified: int = 0
    thumbnail_url: str | None = None
    progress: ProgressSummary = Field(default_factory=ProgressSummary)

    @classmethod
    def from_document(cls, doc: ProjectDocument) -> "MetadataEntry":
        return cls(
            id=doc.id,
            series_name=doc.series_name,
            episode_name=doc.episode_name,
            episode_number=doc.episode_number,
            last_modified=doc.last_modified,
            thumbnail_url=doc.thumbnail_url,
            progress=ProgressSummary.from_document(doc),
        )


class ProjectCreateRequest(BaseModel):
    source_series: str | None = Field(default=None, max_length=256)


class MirrorRequest(BaseModel):
    path: str | None = Field(default=None, max_length=4096)


class ExportRequest(BaseModel):
    project_ids: list[str] = Field(default_factory=list)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
