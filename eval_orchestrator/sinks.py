"""Result sinks.

A sink receives one record per run outcome and one per group summary.
Records are plain dicts (``to_dict()``), safe to serialize.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import SinkConfig
from .errors import ConfigError
from .models import RunGroupSummary, RunOutcome

logger = logging.getLogger(__name__)


@runtime_checkable
class ResultSink(Protocol):
    """Durable destination for run records and group summaries."""

    async def write_outcome(self, outcome: RunOutcome) -> None:
        ...

    async def write_summary(self, summary: RunGroupSummary) -> None:
        ...

    async def close(self) -> None:
        ...


class MemoryResultSink:
    """Keeps records in memory."""

    def __init__(self) -> None:
        self.outcomes: list[RunOutcome] = []
        self.summaries: list[RunGroupSummary] = []

    async def write_outcome(self, outcome: RunOutcome) -> None:
        self.outcomes.append(outcome)

    async def write_summary(self, summary: RunGroupSummary) -> None:
        self.summaries.append(summary)

    async def close(self) -> None:
        pass


class FanoutSink:
    """Writes every record to several sinks, in order."""

    def __init__(self, sinks: list[ResultSink]) -> None:
        self._sinks = list(sinks)

    async def write_outcome(self, outcome: RunOutcome) -> None:
        for sink in self._sinks:
            await sink.write_outcome(outcome)

    async def write_summary(self, summary: RunGroupSummary) -> None:
        for sink in self._sinks:
            await sink.write_summary(summary)

    async def close(self) -> None:
        for sink in self._sinks:
            await sink.close()


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "_"


class JsonlResultSink:
    """Appends records to ``runs.jsonl`` / ``summaries.jsonl``.

    Transcripts are written to separate files and referenced by path from
    the run record.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._lock = asyncio.Lock()

    @property
    def runs_path(self) -> Path:
        return self._dir / "runs.jsonl"

    @property
    def summaries_path(self) -> Path:
        return self._dir / "summaries.jsonl"

    def transcript_path(self, outcome: RunOutcome) -> Path:
        return (
            self._dir
            / "transcripts"
            / _slug(outcome.task_name)
            / f"{_slug(outcome.variant_name)}-{outcome.repetition}.txt"
        )

    async def write_outcome(self, outcome: RunOutcome) -> None:
        record = outcome.to_dict()
        transcript = record.pop("transcript")
        record["transcript_path"] = None
        if transcript:
            path = self.transcript_path(outcome)
            record["transcript_path"] = str(path.relative_to(self._dir))
        async with self._lock:
            await asyncio.to_thread(self._write, record, transcript)

    def _write(self, record: dict[str, Any], transcript: str | None) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        if transcript and record["transcript_path"]:
            path = self._dir / record["transcript_path"]
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(transcript)
        with open(self.runs_path, "a") as f:
            f.write(json.dumps(record) + "\n")

    async def write_summary(self, summary: RunGroupSummary) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append, self.summaries_path, summary.to_dict())

    def _append(self, path: Path, record: dict[str, Any]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(record) + "\n")

    async def close(self) -> None:
        pass


class HttpResultSink:
    """POSTs records as JSON to ``{base_url}/runs`` and ``{base_url}/summaries``."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._timeout = timeout_seconds
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
            )
        return self._client

    async def write_outcome(self, outcome: RunOutcome) -> None:
        response = await self.client.post("/runs", json=outcome.to_dict())
        response.raise_for_status()

    async def write_summary(self, summary: RunGroupSummary) -> None:
        response = await self.client.post("/summaries", json=summary.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_sink(config: SinkConfig, directory: str | Path) -> ResultSink:
    """Factory: build the sink described by *config*."""
    if config.kind == "jsonl":
        return JsonlResultSink(directory)
    if config.kind == "memory":
        return MemoryResultSink()
    if config.kind == "http":
        if not config.url:
            raise ConfigError("HTTP result sink requires 'url'")
        return HttpResultSink(
            config.url, headers=config.headers, timeout_seconds=config.timeout_seconds
        )
    raise ConfigError(f"Unknown result sink: {config.kind}")
