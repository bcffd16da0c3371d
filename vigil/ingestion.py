"""Bulk ingestion of reference photos into the embedding store.

Photos come from local files or remote URLs. Each one runs through
align -> embed -> dedup-checked save. Downloads run concurrently in a thread
pool; face processing and saving stay on the calling thread, one photo at a
time.
"""

from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import requests

from vigil.logging_config import get_logger
from vigil.pipeline import FacePipeline
from vigil.store import SaveStatus
from vigil.utils import ImageSource, load_image, write_json_atomic

logger = get_logger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}
USER_AGENT = "Mozilla/5.0 (compatible; vigil-ingest)"


class IngestOutcome(str, Enum):
    """What happened to one ingested photo."""

    SAVED = "saved"
    DUPLICATE = "duplicate"
    NO_FACE = "no_face"
    LOAD_FAILED = "load_failed"
    FAILED = "failed"


@dataclass
class IngestionReport:
    """Per-source outcomes of an ingestion run.

    Attributes:
        category: Target category
        outcomes: Source (path or URL) -> outcome, in completion order
        skipped: URLs left out because they were visited recently
    """

    category: str
    outcomes: Dict[str, IngestOutcome] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def count(self, outcome: IngestOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)

    @property
    def saved(self) -> int:
        return self.count(IngestOutcome.SAVED)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def summary(self) -> str:
        parts = [f"{outcome.value}={self.count(outcome)}" for outcome in IngestOutcome]
        if self.skipped:
            parts.append(f"skipped={len(self.skipped)}")
        return f"'{self.category}': " + ", ".join(parts)


class VisitedUrlLedger:
    """Remembers which URLs were processed and when.

    Stored as JSON ``url -> {"timestamp": float, "hasFace": bool}`` and
    rewritten after every mark.
    """

    def __init__(
        self,
        path: str | Path,
        ignore_days: float = 14,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.ignore_days = ignore_days
        self._clock = clock
        self._lock = threading.Lock()
        self._visited: Dict[str, dict] = self._load()

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read visited URLs from {self.path}: {e}")
            return {}

        if not isinstance(data, dict):
            return {}
        return {
            url: info
            for url, info in data.items()
            if isinstance(info, dict) and isinstance(info.get("timestamp"), (int, float))
        }

    def was_visited_recently(self, url: str) -> bool:
        """True if ``url`` was marked less than ``ignore_days`` ago."""
        with self._lock:
            info = self._visited.get(url)
        if info is None:
            return False
        return self._clock() - float(info["timestamp"]) < self.ignore_days * 24 * 60 * 60

    def has_face(self, url: str) -> Optional[bool]:
        """Whether a face was found the last time, or None if never visited."""
        with self._lock:
            info = self._visited.get(url)
        return None if info is None else bool(info.get("hasFace"))

    def mark(self, url: str, has_face: bool) -> None:
        """Record a visit and persist the ledger (failures are logged).

        The file is rewritten while the lock is held, so concurrent marks
        land on disk in the order they were recorded.
        """
        with self._lock:
            self._visited[url] = {"timestamp": self._clock(), "hasFace": bool(has_face)}
            try:
                write_json_atomic(self.path, self._visited)
            except (OSError, TypeError) as e:
                logger.error(f"Failed to save visited URLs: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._visited)


class IngestionService:
    """Feeds reference photos through the pipeline into one category.

    Attributes:
        pipeline: Face pipeline (aligner, embedder, store)
        ledger: Optional visited-URL ledger used by ingest_urls
        max_workers: Parallel downloads
        timeout: Per-request timeout in seconds

    Example:
        >>> service = IngestionService(pipeline, max_workers=8)
        >>> report = service.ingest_urls(image_urls, "regular")
        >>> print(report.summary())
    """

    def __init__(
        self,
        pipeline: FacePipeline,
        ledger: Optional[VisitedUrlLedger] = None,
        max_workers: int = 8,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.pipeline = pipeline
        self.ledger = ledger
        self.max_workers = max_workers
        self.timeout = timeout
        self._get = session.get if session is not None else requests.get

        logger.info(
            f"Initialized IngestionService: max_workers={max_workers}, "
            f"timeout={timeout}s, ledger={'yes' if ledger is not None else 'no'}"
        )

    def ingest_image(self, image: ImageSource, category: str) -> IngestOutcome:
        """Align, embed and store one photo.

        Raises:
            KeyError: If the category is not configured.
        """
        self.pipeline.store.category_config(category)

        frame = load_image(image)
        if frame is None:
            return IngestOutcome.LOAD_FAILED

        try:
            result = self.pipeline.enroll(frame, category)
        except KeyError:
            raise
        except Exception as e:
            logger.error(f"Failed to process photo for '{category}': {e}")
            return IngestOutcome.FAILED

        if result is None:
            return IngestOutcome.NO_FACE
        if result.status is SaveStatus.SAVED:
            return IngestOutcome.SAVED
        if result.status is SaveStatus.DUPLICATE:
            return IngestOutcome.DUPLICATE
        return IngestOutcome.FAILED

    def ingest_paths(self, paths: Iterable[str | Path], category: str) -> IngestionReport:
        """Ingest local image files."""
        report = IngestionReport(category=category)

        for path in paths:
            outcome = self.ingest_image(Path(path), category)
            report.outcomes[str(path)] = outcome
            logger.debug(f"{path}: {outcome.value}")

        logger.info(f"Ingested files into {report.summary()}")
        return report

    def ingest_directory(self, directory: str | Path, category: str) -> IngestionReport:
        """Ingest every image file directly inside a directory, sorted by name."""
        directory = Path(directory)
        paths = sorted(
            p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
        )
        logger.info(f"Found {len(paths)} image(s) in {directory}")
        return self.ingest_paths(paths, category)

    def download(self, url: str) -> Optional[bytes]:
        """Fetch an image, returning None on any HTTP or network error."""
        try:
            response = self._get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to download image {url}: {e}")
            return None

        return response.content or None

    def ingest_urls(self, urls: Iterable[str], category: str) -> IngestionReport:
        """Download and ingest remote images.

        URLs are de-duplicated. With a ledger, URLs visited within its
        ``ignore_days`` are skipped and every fetched URL is marked with
        whether it held a usable face.

        Raises:
            KeyError: If the category is not configured.
        """
        self.pipeline.store.category_config(category)
        report = IngestionReport(category=category)

        pending = []
        for url in dict.fromkeys(urls):
            if self.ledger is not None and self.ledger.was_visited_recently(url):
                report.skipped.append(url)
            else:
                pending.append(url)

        logger.info(
            f"Ingesting {len(pending)} URL(s) into '{category}' "
            f"({len(report.skipped)} visited recently)"
        )

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self.download, url): url for url in pending}

            for future in as_completed(futures):
                url = futures[future]
                data = future.result()

                if data is None:
                    report.outcomes[url] = IngestOutcome.LOAD_FAILED
                    continue

                outcome = self.ingest_image(data, category)
                report.outcomes[url] = outcome
                logger.debug(f"{url}: {outcome.value}")

                if self.ledger is not None and outcome is not IngestOutcome.FAILED:
                    has_face = outcome in (IngestOutcome.SAVED, IngestOutcome.DUPLICATE)
                    self.ledger.mark(url, has_face=has_face)

        logger.info(f"Ingested URLs into {report.summary()}")
        return report

    def __repr__(self) -> str:
        return f"IngestionService(max_workers={self.max_workers}, store={self.pipeline.store})"
