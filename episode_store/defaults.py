from __future__ import annotations

import copy
import time
import uuid
from typing import Any

from episode_store.schemas import ProjectDocument

DEFAULT_SERIES_NAME = "New Series"
DEFAULT_EPISODE_NAME = "New Episode"

# Fields a new episode inherits from the latest episode of its series.
SERIES_FIELDS = (
    "seriesName",
    "seriesStory",
    "characters",
    "seriesLocations",
    "aspectRatio",
    "masterStyle",
    "assetDefinitions",
)


def generate_project_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


def default_project(project_id: str | None = None) -> ProjectDocument:
    return ProjectDocument.model_validate(
        {
            "id": project_id or generate_project_id(),
            "lastModified": now_ms(),
            "seriesName": DEFAULT_SERIES_NAME,
            "episodeName": DEFAULT_EPISODE_NAME,
            "episodeNumber": 1,
            "seriesStory": "",
            "characters": [],
            "seriesLocations": [],
            "episodePlot": "",
            "targetDuration": 60,
            "aspectRatio": "16:9",
            "thumbnailUrl": None,
            "thumbnailSettings": {"frameImage": ""},
            "masterStyle": {"description": "", "referenceImage": None},
            "styleAnchor": {
                "referenceImage": None,
                "prompts": {
                    "font": "Inter, sans-serif",
                    "layout": "Cinematic wide shot",
                    "color": "Dark, high contrast, sand orange accents",
                },
            },
            "assetDefinitions": {},
            "script": [],
            "currentStep": 1,
        }
    )


def extract_series_data(source: ProjectDocument) -> dict[str, Any]:
    """Series-level fields of ``source`` in wire format; episode data is left out."""
    wire = source.to_wire()
    data = {name: copy.deepcopy(wire[name]) for name in SERIES_FIELDS if name in wire}
    frame = (wire.get("thumbnailSettings") or {}).get("frameImage") or ""
    data["thumbnailSettings"] = {"frameImage": frame}
    return data


def new_episode_from_series(source: ProjectDocument, episode_number: int) -> ProjectDocument:
    wire = default_project().to_wire()
    wire.update(extract_series_data(source))
    wire.update(
        {
            "episodeNumber": episode_number,
            "episodeName": f"Episode {episode_number}",
            "episodePlot": "",
            "script": [],
            "thumbnailUrl": None,
        }
    )
    return ProjectDocument.model_validate(wire)


async def _iter_documents(documents: Any):
    for project_id in sorted(await documents.list_keys()):
        doc = await documents.load(project_id)
        if doc is not None:
            yield doc


async def latest_project_by_series(documents: Any, series_name: str) -> ProjectDocument | None:
    latest: ProjectDocument | None = None
    async for doc in _iter_documents(documents):
        if doc.series_name != series_name:
            continue
        if latest is None or doc.last_modified > latest.last_modified:
            latest = doc
    return latest


async def next_episode_number(documents: Any, series_name: str) -> int:
    highest = 0
    async for doc in _iter_documents(documents):
        if doc.series_name == series_name and doc.episode_number > highest:
            highest = doc.episode_number
    return highest + 1


async def series_names(documents: Any) -> list[str]:
    names = {doc.series_name async for doc in _iter_documents(documents) if doc.series_name}
    return sorted(names)
