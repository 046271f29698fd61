from __future__ import annotations

import asyncio
import re
from typing import Any

from scriptorium.providers.agents.base import (
    ASSET_KINDS,
    STAGE_COPY,
    STAGE_DEVELOPMENTAL,
    STAGE_LINE,
    STAGES,
    AgentSet,
    AnalysisRequest,
    AssetRequest,
    AssetResult,
)


_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]")


def _sentences(text: str, limit: int = 3) -> list[str]:
    found = [match.group(0).strip() for match in _SENTENCE_RE.finditer(text)]
    return [sentence for sentence in found if sentence][:limit]


def _leading_words(sentence: str, count: int = 6) -> str:
    return " ".join(sentence.split()[:count])


class _ScriptedAgent:
    # Shared call counting and scripted failures for deterministic tests.
    def __init__(
        self,
        *,
        fail_with: Exception | None = None,
        fail_times: int | None = None,
        delay_s: float = 0.0,
    ) -> None:
        self.calls = 0
        self.fail_with = fail_with
        self.fail_times = fail_times
        self.delay_s = delay_s

    async def _before(self) -> None:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is None:
            return
        if self.fail_times is None or self.calls <= self.fail_times:
            raise self.fail_with


class FakeAnalysisAgent(_ScriptedAgent):
    """Deterministic stage agent returning fixed-shape JSON derived from the text."""

    def __init__(self, stage: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.stage = stage

    async def analyze(self, request: AnalysisRequest) -> dict[str, Any]:
        await self._before()
        sentences = _sentences(request.text)
        if self.stage == STAGE_DEVELOPMENTAL:
            return {
                "overallScore": 7,
                "summary": "Solid premise with room to tighten pacing.",
                "genre": request.genre,
                "structure": {
                    "chapterCount": request.structure.get("chapterCount", 0),
                    "totalWords": request.structure.get("totalWords", 0),
                },
                "topPriorities": ["Tighten the opening chapter", "Clarify the antagonist's motive"],
            }
        if self.stage == STAGE_LINE:
            issues = [
                {
                    "type": "sentence_variety",
                    "severity": "medium",
                    "original": _leading_words(sentence),
                    "suggestion": "Vary the sentence opening.",
                    "explanation": "Several sentences start the same way.",
                }
                for sentence in sentences[:2]
            ]
            return {"overallScore": 8, "issues": issues, "strengths": ["Clear prose"]}
        if self.stage == STAGE_COPY:
            errors = [
                {
                    "type": "punctuation",
                    "original": _leading_words(sentence, 4),
                    "correction": _leading_words(sentence, 4),
                    "explanation": "Check comma usage.",
                }
                for sentence in sentences[2:3]
            ]
            return {
                "overallScore": 9,
                "errors": errors,
                "errorsByType": {"punctuation": len(errors)},
            }
        raise ValueError(f"Unknown analysis stage {self.stage!r}")


class FakeAssetAgent(_ScriptedAgent):
    def __init__(self, kind: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.kind = kind

    async def generate(self, request: AssetRequest) -> AssetResult:
        await self._before()
        title = request.metadata.get("title") or "Untitled"
        results: dict[str, Any] = {
            "book_description": {"short": f"{title}: a gripping read.", "long": f"{title} follows an unlikely hero."},
            "keywords": ["small town", "secrets", request.metadata.get("genre") or "fiction"],
            "categories": [f"FICTION / {(request.metadata.get('genre') or 'general').title()}"],
            "author_bio": {"short": "The author writes late at night."},
            "back_matter": {"cta": "Read the next book in the series."},
            "cover_brief": {"mood": "moody", "palette": ["navy", "amber"]},
            "series_description": {"text": f"The {title} series."},
        }
        return AssetResult(kind=self.kind, result=results.get(self.kind, {}), tokens_in=100, tokens_out=50)


def build_fake_agents() -> AgentSet:
    return AgentSet(
        analysis={stage: FakeAnalysisAgent(stage) for stage in STAGES},
        assets={kind: FakeAssetAgent(kind) for kind in ASSET_KINDS},
    )
