from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


STAGE_DEVELOPMENTAL = "developmental"
STAGE_LINE = "line"
STAGE_COPY = "copy"
# Execution order; a stage only runs once every stage before it has a stored result.
STAGES: tuple[str, ...] = (STAGE_DEVELOPMENTAL, STAGE_LINE, STAGE_COPY)

ASSET_KINDS: tuple[str, ...] = (
    "book_description",
    "keywords",
    "categories",
    "author_bio",
    "back_matter",
    "cover_brief",
    "series_description",
)


@dataclass(frozen=True)
class AnalysisRequest:
    report_id: str
    text: str
    genre: str | None
    structure: dict[str, Any]
    # Results of the stages that already ran, keyed by stage name.
    prior: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssetRequest:
    report_id: str
    kind: str
    text: str
    analyses: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssetResult:
    kind: str
    result: Any
    tokens_in: int = 0
    tokens_out: int = 0


class AnalysisAgent(Protocol):
    stage: str

    async def analyze(self, request: AnalysisRequest) -> dict[str, Any]:
        ...


class AssetAgent(Protocol):
    kind: str

    async def generate(self, request: AssetRequest) -> AssetResult:
        ...


@dataclass
class AgentSet:
    analysis: dict[str, AnalysisAgent]
    assets: dict[str, AssetAgent]

    def analysis_agent(self, stage: str) -> AnalysisAgent:
        return self.analysis[stage]

    def asset_agent(self, kind: str) -> AssetAgent:
        return self.assets[kind]
