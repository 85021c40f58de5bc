"""
FHIR Transform Pipeline

Turns a bulk export (newline-delimited FHIR JSON) into NormalizedRecords:
- Streams the download in chunks with incremental UTF-8 decoding
- Parses every line on its own; malformed lines are skipped and logged
- Stages records in fixed-size batches to bound the working set
- Commits to the record store only after the whole payload parsed
"""

from contextlib import nullcontext
from typing import Any, AsyncIterator, Optional, Protocol
import codecs
import json

import structlog
from pydantic import BaseModel, Field

from healthrelay.ingestion.store import PREVIEW_CHARS, RecordStore
from healthrelay.models.connections import utcnow
from healthrelay.models.records import IngestionBatch, NormalizedRecord
from healthrelay.observability.metrics import MetricsCollector
from healthrelay.retry import RetryPolicy, is_transient_error, run_with_retry

logger = structlog.get_logger(__name__)


class Downloader(Protocol):
    def stream(self, reference: str) -> AsyncIterator[bytes]:
        ...


class ParsedExport(BaseModel):
    """Everything read from one download, before commit."""
    records: list[NormalizedRecord] = Field(default_factory=list)
    lines: int = 0
    malformed_lines: int = 0
    batches: int = 0
    preview: str = ""


class ProcessResult(BaseModel):
    records: list[NormalizedRecord]
    batch: IngestionBatch
    malformed_lines: int = 0


class FHIRTransformPipeline:
    """
    Download, parse and commit one export.

    Usage:
        pipeline = FHIRTransformPipeline(downloader, store, batch_size=100)
        records = await pipeline.process("c1", "u1", download_link)
    """

    def __init__(
        self,
        downloader: Downloader,
        store: RecordStore,
        batch_size: int = 100,
        source_tag: str = "fasten-connect",
        policy: RetryPolicy | None = None,
        metrics: MetricsCollector | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.downloader = downloader
        self.store = store
        self.batch_size = batch_size
        self.source_tag = source_tag
        self.policy = policy or RetryPolicy()
        self.metrics = metrics

    async def process(
        self,
        connection_id: str,
        user_id: str,
        download_reference: str,
    ) -> list[NormalizedRecord]:
        result = await self.run(connection_id, user_id, download_reference)
        return result.records

    async def run(
        self,
        connection_id: str,
        user_id: str,
        download_reference: str,
    ) -> ProcessResult:
        """
        Process an export and return the committed records with the
        ingestion snapshot.

        A transport failure that outlasts the retry policy propagates and
        leaves the record store untouched.
        """
        logger.info(
            "Processing export",
            connection_id=connection_id,
            user_id=user_id,
            batch_size=self.batch_size,
        )
        timed = (
            self.metrics.timer.time("process_export", connection_id=connection_id)
            if self.metrics else nullcontext()
        )

        async def download() -> ParsedExport:
            return await self._download(connection_id, user_id, download_reference)

        with timed:
            parsed = await run_with_retry(
                download,
                self.policy,
                is_retryable=is_transient_error,
                operation_name="export_download",
                connection_id=connection_id,
            )
            batch = self.store.append(
                user_id,
                connection_id,
                parsed.records,
                raw_preview=parsed.preview,
            )

        if self.metrics:
            self.metrics.records_ingested.inc(len(parsed.records))
            if parsed.malformed_lines:
                self.metrics.malformed_lines.inc(parsed.malformed_lines)

        logger.info(
            "Export processed",
            connection_id=connection_id,
            user_id=user_id,
            records=len(parsed.records),
            lines=parsed.lines,
            malformed_lines=parsed.malformed_lines,
            batches=parsed.batches,
            resource_types=batch.resource_types,
        )
        return ProcessResult(records=parsed.records, batch=batch, malformed_lines=parsed.malformed_lines)

    async def _download(self, connection_id: str, user_id: str, reference: str) -> ParsedExport:
        parsed = ParsedExport()
        staged: list[list[NormalizedRecord]] = []
        current: list[NormalizedRecord] = []
        ingested_at = utcnow()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""

        def consume(line: str) -> None:
            nonlocal current
            parsed.lines += 1
            resource = self._parse_line(line, parsed.lines, connection_id)
            if resource is None:
                if line.strip():
                    parsed.malformed_lines += 1
                return
            current.append(
                NormalizedRecord.from_resource(
                    resource,
                    user_id=user_id,
                    connection_id=connection_id,
                    ingested_at=ingested_at,
                    source=self.source_tag,
                )
            )
            if len(current) >= self.batch_size:
                staged.append(current)
                current = []

        async for chunk in self.downloader.stream(reference):
            text = decoder.decode(chunk)
            if len(parsed.preview) < PREVIEW_CHARS:
                parsed.preview += text[: PREVIEW_CHARS - len(parsed.preview)]
            buffer += text
            *lines, buffer = buffer.split("\n")
            for line in lines:
                consume(line)

        buffer += decoder.decode(b"", final=True)
        if buffer:
            consume(buffer)
        if current:
            staged.append(current)

        parsed.batches = len(staged)
        parsed.records = [record for batch in staged for record in batch]
        return parsed

    def _parse_line(self, line: str, line_number: int, connection_id: str) -> Optional[dict[str, Any]]:
        text = line.strip()
        if not text:
            return None
        try:
            resource = json.loads(text)
        except ValueError as e:
            logger.warning(
                "Skipping unparseable export line",
                connection_id=connection_id,
                line_number=line_number,
                error=str(e),
                line_preview=text[:100],
            )
            return None
        if not isinstance(resource, dict):
            logger.warning(
                "Skipping export line that is not a JSON object",
                connection_id=connection_id,
                line_number=line_number,
                line_preview=text[:100],
            )
            return None
        return resource
