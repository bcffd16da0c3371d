"""Unit tests for bulk ingestion and the visited-URL ledger."""

from __future__ import annotations

import json
import tempfile
import threading
from pathlib import Path
from unittest.mock import Mock

import cv2
import numpy as np
import pytest
import requests

from vigil.ingestion import IngestionService, IngestOutcome, VisitedUrlLedger
from vigil.store import SaveResult, SaveStatus

DAY = 24 * 60 * 60


class FakeClock:
    """Settable time source."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def tmp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def png_bytes():
    """Encoded test photo."""
    np.random.seed(41)
    image = np.random.randint(0, 255, (60, 60, 3), dtype=np.uint8)
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def mock_pipeline():
    """Create a mock pipeline whose enroll always saves."""
    pipeline = Mock()
    pipeline.enroll.return_value = SaveResult(SaveStatus.SAVED, key="k1")

    def category_config(name):
        if name not in ("regular", "retail"):
            raise KeyError(name)
        return Mock()

    pipeline.store.category_config.side_effect = category_config
    return pipeline


@pytest.fixture
def mock_session(png_bytes):
    """Create a mock HTTP session serving the test photo."""

    def fake_get(url, headers=None, timeout=None):
        if "broken" in url:
            raise requests.ConnectionError("connection refused")
        response = Mock()
        if "missing" in url:
            response.raise_for_status.side_effect = requests.HTTPError("404")
        response.content = png_bytes
        return response

    session = Mock()
    session.get.side_effect = fake_get
    return session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_dir, clock):
    """Create an empty ledger."""
    return VisitedUrlLedger(tmp_dir / "visited.json", ignore_days=14, clock=clock)


def test_ingest_image_saved(mock_pipeline, png_bytes):
    """Test a photo that is stored."""
    service = IngestionService(mock_pipeline)

    assert service.ingest_image(png_bytes, "regular") is IngestOutcome.SAVED
    mock_pipeline.enroll.assert_called_once()


@pytest.mark.parametrize(
    "enroll_result, expected",
    [
        (None, IngestOutcome.NO_FACE),
        (SaveResult(SaveStatus.DUPLICATE, similarity=0.995), IngestOutcome.DUPLICATE),
        (SaveResult(SaveStatus.FAILED), IngestOutcome.FAILED),
    ],
)
def test_ingest_image_outcomes(mock_pipeline, png_bytes, enroll_result, expected):
    """Test mapping of enroll results to outcomes."""
    mock_pipeline.enroll.return_value = enroll_result
    service = IngestionService(mock_pipeline)

    assert service.ingest_image(png_bytes, "regular") is expected


def test_ingest_image_load_failed(mock_pipeline):
    """Test that undecodable data never reaches the pipeline."""
    service = IngestionService(mock_pipeline)

    assert service.ingest_image(b"garbage", "regular") is IngestOutcome.LOAD_FAILED
    mock_pipeline.enroll.assert_not_called()


def test_ingest_image_pipeline_error(mock_pipeline, png_bytes):
    """Test that a crashing pipeline marks the photo as failed."""
    mock_pipeline.enroll.side_effect = RuntimeError("model crashed")
    service = IngestionService(mock_pipeline)

    assert service.ingest_image(png_bytes, "regular") is IngestOutcome.FAILED


def test_ingest_image_unknown_category(mock_pipeline, png_bytes):
    """Test that unknown categories raise KeyError."""
    service = IngestionService(mock_pipeline)

    with pytest.raises(KeyError):
        service.ingest_image(png_bytes, "nope")


def test_ingest_directory(mock_pipeline, png_bytes, tmp_dir):
    """Test that only image files are ingested, in name order."""
    (tmp_dir / "b.png").write_bytes(png_bytes)
    (tmp_dir / "a.PNG").write_bytes(png_bytes)
    (tmp_dir / "notes.txt").write_text("not an image")
    (tmp_dir / "sub").mkdir()

    service = IngestionService(mock_pipeline)
    report = service.ingest_directory(tmp_dir, "regular")

    assert list(report.outcomes) == [str(tmp_dir / "a.PNG"), str(tmp_dir / "b.png")]
    assert report.saved == 2
    assert report.total == 2


def test_ingest_urls(mock_pipeline, mock_session, ledger):
    """Test concurrent URL ingestion with download failures."""
    urls = [
        "https://example.com/1.jpg",
        "https://example.com/broken.jpg",
        "https://example.com/missing.jpg",
        "https://example.com/1.jpg",
    ]
    service = IngestionService(mock_pipeline, ledger=ledger, max_workers=4, session=mock_session)

    report = service.ingest_urls(urls, "regular")

    assert report.total == 3
    assert report.outcomes["https://example.com/1.jpg"] is IngestOutcome.SAVED
    assert report.outcomes["https://example.com/broken.jpg"] is IngestOutcome.LOAD_FAILED
    assert report.outcomes["https://example.com/missing.jpg"] is IngestOutcome.LOAD_FAILED
    assert mock_session.get.call_count == 3

    assert ledger.has_face("https://example.com/1.jpg") is True
    assert ledger.has_face("https://example.com/broken.jpg") is None


def test_ingest_urls_marks_faceless(mock_pipeline, mock_session, ledger):
    """Test that URLs without a face are remembered as such."""
    mock_pipeline.enroll.return_value = None
    service = IngestionService(mock_pipeline, ledger=ledger, session=mock_session)

    report = service.ingest_urls(["https://example.com/x.jpg"], "retail")

    assert report.count(IngestOutcome.NO_FACE) == 1
    assert ledger.has_face("https://example.com/x.jpg") is False


def test_ingest_urls_skips_recent(mock_pipeline, mock_session, ledger, clock):
    """Test that recently visited URLs are not fetched again."""
    ledger.mark("https://example.com/old.jpg", has_face=True)
    clock.now += 3 * DAY

    service = IngestionService(mock_pipeline, ledger=ledger, session=mock_session)
    report = service.ingest_urls(
        ["https://example.com/old.jpg", "https://example.com/new.jpg"], "regular"
    )

    assert report.skipped == ["https://example.com/old.jpg"]
    assert list(report.outcomes) == ["https://example.com/new.jpg"]
    assert mock_session.get.call_count == 1


def test_ingest_urls_unknown_category(mock_pipeline, mock_session):
    """Test that the category is checked before downloading."""
    service = IngestionService(mock_pipeline, session=mock_session)

    with pytest.raises(KeyError):
        service.ingest_urls(["https://example.com/1.jpg"], "nope")

    mock_session.get.assert_not_called()


def test_invalid_worker_count(mock_pipeline):
    """Test that at least one download worker is required."""
    with pytest.raises(ValueError, match="max_workers"):
        IngestionService(mock_pipeline, max_workers=0)


def test_ledger_expiry(ledger, clock):
    """Test that visits older than ignore_days no longer count."""
    ledger.mark("https://example.com/a.jpg", has_face=False)

    assert ledger.was_visited_recently("https://example.com/a.jpg")
    clock.now += 15 * DAY
    assert not ledger.was_visited_recently("https://example.com/a.jpg")
    assert not ledger.was_visited_recently("https://example.com/never.jpg")


def test_ledger_persists(ledger, tmp_dir, clock):
    """Test that marks survive a reload."""
    ledger.mark("https://example.com/a.jpg", has_face=True)

    with open(tmp_dir / "visited.json", "r", encoding="utf-8") as f:
        data = json.load(f)
    assert data["https://example.com/a.jpg"] == {"timestamp": clock.now, "hasFace": True}

    reloaded = VisitedUrlLedger(tmp_dir / "visited.json", clock=clock)
    assert len(reloaded) == 1
    assert reloaded.has_face("https://example.com/a.jpg") is True


def test_ledger_concurrent_marks_all_persisted(ledger, tmp_dir, clock):
    """Test that marks from many threads all reach the file."""
    urls = [f"https://example.com/{i}.jpg" for i in range(16)]
    barrier = threading.Barrier(len(urls))

    def worker(url):
        barrier.wait()
        ledger.mark(url, has_face=True)

    threads = [threading.Thread(target=worker, args=(url,)) for url in urls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    reloaded = VisitedUrlLedger(tmp_dir / "visited.json", clock=clock)
    assert len(reloaded) == len(urls)
    assert all(reloaded.has_face(url) for url in urls)


def test_ledger_corrupt_file(tmp_dir):
    """Test that an unreadable ledger starts empty."""
    path = tmp_dir / "visited.json"
    path.write_text("{oops", encoding="utf-8")

    assert len(VisitedUrlLedger(path)) == 0
